"""Configuration loader for the channel discovery service.

Reads config.yaml and returns typed configuration objects that the job
manager, the collector, the enrichment pool and the API consume.

Every tunable that was picked empirically against the live listing
(convergence threshold, worker count, politeness spacing) lives here
rather than in the code that uses it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"


@dataclass
class ListingConfig:
    """How the collector walks the paginated search listing."""

    max_pages: int = 50
    max_empty_fetches: int = 3  # consecutive fetches with no new identity
    fetch_retries: int = 3
    retry_backoff_seconds: float = 1.0
    page_timeout_seconds: float = 30.0


@dataclass
class EnrichmentConfig:
    """Worker pool sizing and politeness toward the detail pages."""

    workers: int = 3
    min_delay_seconds: float = 1.0
    jitter_seconds: float = 2.0
    max_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    fetch_timeout_seconds: float = 30.0
    drain_timeout_seconds: float = 120.0
    max_channels: int = 0  # 0 = enrich every collected channel


@dataclass
class ExtractionConfig:
    """Tunables for the about-page field extractor."""

    max_anchor_distance: int = 3


@dataclass
class SessionConfig:
    inactivity_minutes: int = 60


@dataclass
class JobRetentionConfig:
    retention_minutes: int = 30


@dataclass
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class PipelineConfig:
    """Top-level service configuration."""

    output_dir: str = "output"
    data_dir: str = "data"
    log_level: str = "INFO"
    request_timeout_seconds: float = 30.0
    user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    accept_language: str = "en-US,en;q=0.9"

    listing: ListingConfig = field(default_factory=ListingConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    jobs: JobRetentionConfig = field(default_factory=JobRetentionConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def _section(cls, raw: dict[str, Any] | None):
    """Build a config section dataclass, ignoring unknown keys."""
    raw = raw or {}
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    unknown = set(raw) - set(known)
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return cls(**known)


def load_config(path: Path | str | None = None) -> PipelineConfig:
    """Load and validate the service configuration from a YAML file."""
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.warning("Config file not found at %s - using defaults", config_path)
        return PipelineConfig()

    with open(config_path, "r") as f:
        raw = yaml.safe_load(f)

    if not raw:
        return PipelineConfig()

    config = PipelineConfig(
        output_dir=raw.get("output_dir", "output"),
        data_dir=raw.get("data_dir", "data"),
        log_level=raw.get("log_level", "INFO"),
        request_timeout_seconds=raw.get("request_timeout_seconds", 30.0),
        user_agent=raw.get("user_agent", PipelineConfig.user_agent),
        accept_language=raw.get("accept_language", PipelineConfig.accept_language),
        listing=_section(ListingConfig, raw.get("listing")),
        enrichment=_section(EnrichmentConfig, raw.get("enrichment")),
        extraction=_section(ExtractionConfig, raw.get("extraction")),
        sessions=_section(SessionConfig, raw.get("sessions")),
        jobs=_section(JobRetentionConfig, raw.get("jobs")),
        api=_section(ApiConfig, raw.get("api")),
    )

    if config.listing.max_empty_fetches < 1:
        raise ValueError("listing.max_empty_fetches must be at least 1")
    if config.enrichment.workers < 1:
        raise ValueError("enrichment.workers must be at least 1")

    return config
