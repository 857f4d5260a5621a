"""Page-fetch capability shared by the listing source and the enrichment pool.

A thin wrapper around a ``requests.Session``: one attempt per call, a hard
timeout, and every failure surfaced as ``FetchError``. Retries and
politeness spacing belong to the callers, which know whether a failure
costs a page or a single channel.

The async entry point runs the blocking request in a worker thread and
puts an ``asyncio.wait_for`` watchdog around it, so a stuck socket is a
retryable timeout rather than a hung worker.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import requests

from channel_discovery.config import PipelineConfig
from channel_discovery.models import RenderedPage

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """A page could not be fetched (network error, HTTP error or timeout)."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class PageFetcher:
    """HTTP + HTML-parse implementation of "fetch rendered page for URL"."""

    def __init__(
        self,
        config: PipelineConfig,
        session: Optional[requests.Session] = None,
    ):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": config.user_agent,
            "Accept-Language": config.accept_language,
        })
        # Skips the EU consent interstitial, which has no channel data on it.
        self.session.cookies.set("CONSENT", "YES+1", domain=".youtube.com")

    # ------------------------------------------------------------------
    # Blocking helpers
    # ------------------------------------------------------------------

    def fetch(self, url: str, **kwargs) -> RenderedPage:
        """GET a page and return its markup and visible text."""
        kwargs.setdefault("timeout", self.config.request_timeout_seconds)
        try:
            resp = self.session.get(url, **kwargs)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise FetchError(url, str(exc)) from exc
        return RenderedPage.from_html(resp.url or url, resp.text)

    def get_text(self, url: str, **kwargs) -> str:
        """GET a page and return the raw body without parsing it."""
        kwargs.setdefault("timeout", self.config.request_timeout_seconds)
        try:
            resp = self.session.get(url, **kwargs)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise FetchError(url, str(exc)) from exc
        return resp.text

    def post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """POST a JSON body and decode the JSON response."""
        try:
            resp = self.session.post(
                url,
                json=payload,
                headers=headers,
                timeout=self.config.request_timeout_seconds,
            )
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as exc:
            raise FetchError(url, str(exc)) from exc
        except ValueError as exc:
            raise FetchError(url, f"invalid JSON response: {exc}") from exc

    # ------------------------------------------------------------------
    # Async entry point
    # ------------------------------------------------------------------

    async def fetch_rendered_page(
        self, url: str, timeout: Optional[float] = None
    ) -> RenderedPage:
        """Fetch ``url`` off the event loop, bounded by a watchdog timeout."""
        limit = timeout if timeout is not None else self.config.request_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.fetch, url), limit)
        except asyncio.TimeoutError as exc:
            raise FetchError(url, f"timed out after {limit:.0f}s") from exc

    def close(self) -> None:
        self.session.close()
