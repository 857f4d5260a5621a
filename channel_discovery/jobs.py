"""Job orchestration: the job record, its state machine, and the manager.

One job = one search run:

    pending -> collecting -> streaming -> completed
    collecting | streaming -> failed        (job-fatal error)
    any non-terminal       -> cancelled     (client request)

``collecting`` means the listing is still being walked (enrichment
already runs on every batch as it arrives); ``streaming`` means
collection is over and the pool is working through what's left. A job
only becomes ``completed`` once in-flight enrichment has settled, so a
completed job never changes again. Channels still pending at that point
stay pending with no fields; that isn't an error.

Every mutation of a job goes through the methods of ``Job``, which hold
a single lock. Readers get snapshots taken under the same lock, so a
channel is never seen as ``enriched`` with its fields missing.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from channel_discovery import storage
from channel_discovery.collector import Collector, SourceUnavailableError
from channel_discovery.config import PipelineConfig
from channel_discovery.enrichment import EnrichmentPool
from channel_discovery.fetch import PageFetcher
from channel_discovery.filters import FilterCriteria
from channel_discovery.models import (
    Channel,
    ChannelCandidate,
    EnrichedFields,
    EnrichmentState,
    JobState,
    JobStats,
    TERMINAL_STATES,
)
from channel_discovery.scrapers import BaseListingSource, YouTubeSearchSource
from channel_discovery.sessions import Session, SessionManager, SessionNotFoundError

logger = logging.getLogger(__name__)

ARCHIVE_COLLECTION = "jobs"

_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.PENDING: {JobState.COLLECTING, JobState.FAILED, JobState.CANCELLED},
    JobState.COLLECTING: {JobState.STREAMING, JobState.FAILED, JobState.CANCELLED},
    JobState.STREAMING: {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED},
}

SourceFactory = Callable[[str, PageFetcher, PipelineConfig], BaseListingSource]


class JobNotFoundError(Exception):
    """No job with that id (never existed, or already garbage-collected)."""


class InvalidTransitionError(Exception):
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Job:
    """One discovery-and-enrichment run and its growing channel list."""

    def __init__(
        self,
        keyword: str,
        target_count: int,
        filters: Optional[dict[str, Any]] = None,
        session_id: Optional[str] = None,
        rank_offset: int = 0,
        max_enriched: int = 0,
        job_id: Optional[str] = None,
    ):
        self.job_id = job_id or uuid.uuid4().hex
        self.keyword = keyword
        self.target_count = target_count
        self.filters = dict(filters or {})
        self.session_id = session_id
        self.rank_offset = rank_offset
        self.max_enriched = max_enriched

        self.state = JobState.PENDING
        self.channels: list[Channel] = []
        self.stats = JobStats()
        self.error: Optional[str] = None
        self.stop_reason: Optional[str] = None
        self.created_at = _now()
        self.updated_at = self.created_at
        self.finished_at: Optional[str] = None
        self.finished_monotonic: Optional[float] = None

        self._lock = threading.Lock()
        self._identities: set[str] = set()
        self._claim_cursor = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_cancelled(self) -> bool:
        return self.state is JobState.CANCELLED

    @property
    def collected_count(self) -> int:
        return len(self.channels)

    def transition(self, new_state: JobState, error: Optional[str] = None) -> bool:
        """Move to ``new_state``. A no-op returning False once terminal."""
        with self._lock:
            if self.is_terminal:
                logger.debug("[%s] Ignoring %s: already %s",
                              self.job_id, new_state.value, self.state.value)
                return False
            if new_state not in _TRANSITIONS[self.state]:
                raise InvalidTransitionError(
                    f"{self.state.value} -> {new_state.value} is not allowed"
                )
            self._set_state(new_state, error)
        logger.info("[%s] -> %s", self.job_id, new_state.value)
        return True

    def cancel(self) -> bool:
        """Cancel unless already terminal. Returns whether anything changed."""
        with self._lock:
            if self.is_terminal:
                return False
            self._set_state(JobState.CANCELLED)
        logger.info("[%s] Cancelled", self.job_id)
        return True

    def fail(self, error: str) -> bool:
        with self._lock:
            if self.is_terminal:
                return False
            self._set_state(JobState.FAILED, error)
        logger.error("[%s] Failed: %s", self.job_id, error)
        return True

    def _set_state(self, new_state: JobState, error: Optional[str] = None) -> None:
        self.state = new_state
        if error:
            self.error = error
        self.updated_at = _now()
        if new_state in TERMINAL_STATES:
            self.finished_at = self.updated_at
            self.finished_monotonic = time.monotonic()

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    def record_discovered(self, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self.stats.discovered += count
            self.updated_at = _now()

    def append_channels(self, candidates: Iterable[ChannelCandidate]) -> list[Channel]:
        """Append candidates with the next ranks, stopping at the target.

        Identities already in the job are skipped. Nothing is appended
        to a terminal job.
        """
        appended: list[Channel] = []
        with self._lock:
            if self.is_terminal:
                return appended
            for candidate in candidates:
                if len(self.channels) >= self.target_count:
                    break
                if candidate.identity in self._identities:
                    continue
                rank = self.rank_offset + len(self.channels)
                channel = Channel.from_candidate(candidate, rank)
                self.channels.append(channel)
                self._identities.add(candidate.identity)
                appended.append(channel)
            if appended:
                self.stats.passing_filter += len(appended)
                self.updated_at = _now()
        return appended

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    def claim_next_pending(self, limit: int = 0) -> Optional[Channel]:
        """Mark the lowest-rank pending channel ``enriching`` and return it.

        ``limit`` caps how many channels (from the front) are ever
        enriched; 0 means no cap. Returns None when there is nothing to
        claim right now.
        """
        with self._lock:
            if self.is_terminal:
                return None
            while self._claim_cursor < len(self.channels):
                if limit and self._claim_cursor >= limit:
                    return None
                channel = self.channels[self._claim_cursor]
                self._claim_cursor += 1
                if channel.enrichment_state is EnrichmentState.PENDING:
                    channel.enrichment_state = EnrichmentState.ENRICHING
                    self.updated_at = _now()
                    return channel
        return None

    def record_attempt(self, rank: int) -> None:
        with self._lock:
            self._channel(rank).attempts += 1

    def complete_enrichment(self, rank: int, fields: EnrichedFields) -> bool:
        """Attach the finished field set and flip the state, as one write."""
        with self._lock:
            channel = self._channel(rank)
            if channel.enrichment_state is not EnrichmentState.ENRICHING:
                logger.warning("[%s] #%d is %s, not enriching - result dropped",
                               self.job_id, rank, channel.enrichment_state.value)
                return False
            channel.enriched = fields
            channel.enrichment_state = EnrichmentState.ENRICHED
            self.stats.enriched += 1
            self.updated_at = _now()
        return True

    def fail_enrichment(self, rank: int, error: str) -> bool:
        with self._lock:
            channel = self._channel(rank)
            if channel.enrichment_state is not EnrichmentState.ENRICHING:
                return False
            channel.enrichment_state = EnrichmentState.FAILED
            channel.enrichment_error = error
            self.stats.failed += 1
            self.updated_at = _now()
        logger.warning("[%s] #%d %s enrichment failed: %s",
                       self.job_id, rank, channel.identity, error)
        return True

    def _channel(self, rank: int) -> Channel:
        index = rank - self.rank_offset
        if index < 0 or index >= len(self.channels):
            raise KeyError(f"rank {rank} not in job {self.job_id}")
        return self.channels[index]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def issued_ranks(self) -> dict[int, str]:
        with self._lock:
            return {c.rank: c.identity for c in self.channels}

    def progress_percent(self) -> int:
        """Half for collection, half for enrichment; 100 once completed."""
        with self._lock:
            return self._progress_locked()

    def _progress_locked(self) -> int:
        if self.state is JobState.COMPLETED:
            return 100
        collected = len(self.channels)
        collect_part = min(collected / self.target_count, 1.0) * 50 if self.target_count else 0
        to_enrich = min(collected, self.max_enriched) if self.max_enriched else collected
        settled = self.stats.enriched + self.stats.failed
        enrich_part = min(settled / to_enrich, 1.0) * 50 if to_enrich else 0
        return int(collect_part + enrich_part)

    def snapshot(self, offset: int = 0) -> dict[str, Any]:
        """Consistent status view; ``entities`` starts at list index ``offset``."""
        offset = max(offset, 0)
        with self._lock:
            entities = [c.to_dict() for c in self.channels[offset:]]
            return {
                "job_id": self.job_id,
                "session_id": self.session_id,
                "keyword": self.keyword,
                "filters": dict(self.filters),
                "target_count": self.target_count,
                "rank_offset": self.rank_offset,
                "state": self.state.value,
                "stats": self.stats.to_dict(),
                "progress_percent": self._progress_locked(),
                "total_entities": len(self.channels),
                "offset": offset,
                "next_offset": offset + len(entities),
                "entities": entities,
                "stop_reason": self.stop_reason,
                "error": self.error,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
                "finished_at": self.finished_at,
            }

    def __repr__(self) -> str:
        return (
            f"Job(job_id={self.job_id!r}, keyword={self.keyword!r}, "
            f"state={self.state.value}, channels={len(self.channels)}/{self.target_count})"
        )


def _default_source(keyword: str, fetcher: PageFetcher, config: PipelineConfig) -> BaseListingSource:
    return YouTubeSearchSource(keyword, fetcher, config)


class JobManager:
    """Creates jobs, runs them as asyncio tasks, and answers status queries."""

    def __init__(
        self,
        config: PipelineConfig,
        fetcher: Optional[PageFetcher] = None,
        sessions: Optional[SessionManager] = None,
        source_factory: Optional[SourceFactory] = None,
        data_dir: str | Path | None = None,
    ):
        self.config = config
        self.data_dir = Path(data_dir or config.data_dir)
        storage.init_store(self.data_dir)
        self.fetcher = fetcher or PageFetcher(config)
        self.sessions = sessions or SessionManager(config, self.data_dir)
        self.source_factory = source_factory or _default_source

        self._jobs: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._pools: dict[str, EnrichmentPool] = {}

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_job(
        self,
        keyword: str,
        target_count: int,
        filters: Optional[dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> Job:
        """Start a search. Passing ``session_id`` continues that session."""
        keyword = (keyword or "").strip()
        if not keyword:
            raise ValueError("keyword is required")
        if isinstance(target_count, bool) or not isinstance(target_count, int) or target_count <= 0:
            raise ValueError("target_count must be a positive integer")
        FilterCriteria.from_dict(filters)

        if session_id:
            session = self.sessions.get_session(session_id)
        else:
            session = self.sessions.open_session(keyword, filters)
        return self._start(session, keyword, target_count, filters)

    async def continue_session(
        self,
        additional_count: int,
        session_id: Optional[str] = None,
        keyword: Optional[str] = None,
        filters: Optional[dict[str, Any]] = None,
    ) -> Job:
        """Load more: a new job that resumes after what the client saw."""
        if isinstance(additional_count, bool) or not isinstance(additional_count, int) \
                or additional_count <= 0:
            raise ValueError("additional_count must be a positive integer")

        if session_id:
            session = self.sessions.get_session(session_id)
        elif keyword and keyword.strip():
            session = self.sessions.find_session(keyword, filters)
            if session is None:
                raise SessionNotFoundError(f"no live session for {keyword!r}")
        else:
            raise ValueError("session_id or keyword is required")
        FilterCriteria.from_dict(session.filters)

        return self._start(session, session.keyword, additional_count, session.filters)

    def cancel(self, job_id: str) -> bool:
        """Cancel a job. Idempotent: False (and no change) when already terminal.

        Jobs already dropped from memory are answered from the archive.
        """
        self.collect_garbage()
        job = self._jobs.get(job_id)
        if job is None:
            if storage.get_record(ARCHIVE_COLLECTION, job_id, self.data_dir) is None:
                raise JobNotFoundError(job_id)
            return False
        changed = job.cancel()
        if changed:
            pool = self._pools.get(job_id)
            if pool:
                pool.notify()
        return changed

    def job_state(self, job_id: str) -> str:
        """Current state of a live job, or the archived state of a finished one."""
        job = self._jobs.get(job_id)
        if job is not None:
            return job.state.value
        record = storage.get_record(ARCHIVE_COLLECTION, job_id, self.data_dir)
        if record is None:
            raise JobNotFoundError(job_id)
        return record["state"]

    def acknowledge(self, session_id: str, job_id: str, rank: int) -> Session:
        """Client has displayed everything up to ``rank`` of ``job_id``."""
        job = self._jobs.get(job_id)
        if job is not None:
            if job.session_id != session_id:
                raise ValueError(f"job {job_id} does not belong to session {session_id}")
            issued = job.issued_ranks()
        else:
            record = storage.get_record(ARCHIVE_COLLECTION, job_id, self.data_dir)
            if record is None:
                raise JobNotFoundError(job_id)
            issued = {e["rank"]: e["identity"] for e in record.get("entities", [])}
        return self.sessions.acknowledge(session_id, job_id, rank, issued)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Job:
        self.collect_garbage()
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_status(self, job_id: str, offset: int = 0) -> dict[str, Any]:
        """Snapshot of a live job, or the archived record of a finished one."""
        self.collect_garbage()
        job = self._jobs.get(job_id)
        if job is not None:
            return job.snapshot(offset)

        record = storage.get_record(ARCHIVE_COLLECTION, job_id, self.data_dir)
        if record is None:
            raise JobNotFoundError(job_id)
        entities = record.get("entities", [])[max(offset, 0):]
        return {
            **record,
            "offset": max(offset, 0),
            "next_offset": max(offset, 0) + len(entities),
            "entities": entities,
        }

    def list_history(self, offset: int = 0, limit: int = 20) -> list[dict[str, Any]]:
        """Finished jobs, newest first, without their entity lists."""
        records = storage.list_records(
            ARCHIVE_COLLECTION, self.data_dir, offset=offset, limit=limit, sort_by="finished_at"
        )
        return [{k: v for k, v in r.items() if k != "entities"} for r in records]

    async def wait(self, job_id: str) -> Job:
        """Wait for a job's run task to finish (CLI and tests)."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_job(job_id)

    async def shutdown(self) -> None:
        """Cancel every running job and wait for their tasks."""
        for job_id in list(self._tasks):
            self.cancel(job_id)
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    def collect_garbage(self) -> int:
        """Forget terminal jobs older than the retention window."""
        retention = self.config.jobs.retention_minutes * 60
        now = time.monotonic()
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.is_terminal
            and job_id not in self._tasks
            and job.finished_monotonic is not None
            and now - job.finished_monotonic > retention
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug("Garbage-collected %d finished jobs", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def _start(
        self,
        session: Session,
        keyword: str,
        target_count: int,
        filters: Optional[dict[str, Any]],
    ) -> Job:
        job = Job(
            keyword=keyword,
            target_count=target_count,
            filters=filters,
            session_id=session.session_id,
            rank_offset=session.next_rank,
            max_enriched=self.config.enrichment.max_channels,
        )
        self.sessions.record_job(session.session_id, job.job_id, target_count)
        self._jobs[job.job_id] = job

        task = asyncio.get_running_loop().create_task(
            self._run(job, list(session.known_identities)), name=f"job-{job.job_id}"
        )
        self._tasks[job.job_id] = task
        task.add_done_callback(lambda _t, jid=job.job_id: self._tasks.pop(jid, None))

        logger.info(
            "[%s] Created job for %r (target %d, session %s, ranks from %d)",
            job.job_id, keyword, target_count, session.session_id, job.rank_offset,
        )
        return job

    async def _run(self, job: Job, exclude: list[str]) -> None:
        pool: Optional[EnrichmentPool] = None
        try:
            criteria = FilterCriteria.from_dict(job.filters)
            source = self.source_factory(job.keyword, self.fetcher, self.config)
            pool = EnrichmentPool(job, self.fetcher, self.config, criteria=criteria)
            collector = Collector(
                source,
                self.config,
                criteria=criteria,
                data_dir=self.data_dir,
                on_batch=lambda _batch: pool.notify(),
            )
            self._pools[job.job_id] = pool

            job.transition(JobState.COLLECTING)
            pool.start()
            result = await collector.collect(job, exclude)
            job.stop_reason = result.stop_reason

            if job.transition(JobState.STREAMING):
                await pool.drain(self.config.enrichment.drain_timeout_seconds)
                await pool.stop()
                job.transition(JobState.COMPLETED)
        except SourceUnavailableError as exc:
            job.fail(str(exc))
        except asyncio.CancelledError:
            job.cancel()
            raise
        except Exception as exc:
            logger.exception("[%s] Unexpected error", job.job_id)
            job.fail(f"unexpected error: {exc}")
        finally:
            if pool is not None:
                await pool.stop()
            self._pools.pop(job.job_id, None)
            self._archive(job)
            logger.info(
                "[%s] Finished %s: %d channels, %d enriched, %d failed",
                job.job_id, job.state.value, job.collected_count,
                job.stats.enriched, job.stats.failed,
            )

    def _archive(self, job: Job) -> None:
        try:
            storage.upsert_record(ARCHIVE_COLLECTION, job.job_id, job.snapshot(), self.data_dir)
        except OSError as exc:
            logger.error("[%s] Could not archive job: %s", job.job_id, exc)
