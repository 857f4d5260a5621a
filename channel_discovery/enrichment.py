"""Enrichment worker pool: visits each channel's about page.

A fixed number of asyncio workers share one job. Each worker repeatedly
claims the lowest-rank channel still pending, so the top of the result
list fills in first while the client is watching it. Per channel:

  fetch /about -> field extractor -> contact resolver -> filters
    -> one atomic write of the finished field set

A fetch or extraction failure is retried with backoff; after the last
attempt the channel is marked ``failed``. That is a per-channel outcome
the client sees, never a job failure.

Politeness: dispatches are spaced at least ``min_delay_seconds`` plus a
random jitter apart, across all workers of the pool.

Cancellation is checked before claiming a channel, never in the middle
of a fetch. A claimed channel always ends up ``enriched`` or ``failed``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Optional

from channel_discovery.config import PipelineConfig
from channel_discovery.contacts import resolve_contacts
from channel_discovery.extractor import DetailPage, FieldExtractor
from channel_discovery.fetch import FetchError, PageFetcher
from channel_discovery.filters import FilterCriteria, check_enriched, relevance_score
from channel_discovery.models import Channel, EnrichedFields, RenderedPage

if TYPE_CHECKING:
    from channel_discovery.jobs import Job

logger = logging.getLogger(__name__)


class EnrichmentPool:
    """Bounded set of workers enriching one job's channels in rank order."""

    def __init__(
        self,
        job: "Job",
        fetcher: PageFetcher,
        config: PipelineConfig,
        criteria: Optional[FilterCriteria] = None,
        extractor: Optional[FieldExtractor] = None,
    ):
        self.job = job
        self.fetcher = fetcher
        self.settings = config.enrichment
        self.criteria = criteria or FilterCriteria()
        self.extractor = extractor or FieldExtractor(config.extraction.max_anchor_distance)

        self._tasks: list[asyncio.Task] = []
        self._wakeup = asyncio.Event()
        self._gate = asyncio.Lock()
        self._next_dispatch = 0.0
        self._closed = False  # no more channels will be appended
        self._stopping = False  # stop claiming, finish in-flight work

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._tasks:
            return
        for i in range(self.settings.workers):
            task = asyncio.create_task(self._worker(i), name=f"enrich-{self.job.job_id}-{i}")
            self._tasks.append(task)
        logger.info("[%s] Started %d enrichment workers", self.job.job_id, len(self._tasks))

    def notify(self) -> None:
        """Wake idle workers: new channels were appended, or the job ended."""
        self._wakeup.set()

    def close(self) -> None:
        """No more channels are coming; workers exit once nothing is pending."""
        self._closed = True
        self.notify()

    async def drain(self, timeout: float) -> bool:
        """Close the pool and wait up to ``timeout`` for pending work.

        Returns True if every worker finished in time.
        """
        self.close()
        if not self._tasks:
            return True
        _, still_running = await asyncio.wait(self._tasks, timeout=timeout)
        if still_running:
            logger.warning(
                "[%s] Enrichment drain timed out after %.0fs with %d workers busy",
                self.job.job_id, timeout, len(still_running),
            )
        return not still_running

    async def stop(self) -> None:
        """Stop claiming new channels and wait for in-flight ones to settle."""
        self._stopping = True
        self._closed = True
        self.notify()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, worker_id: int) -> None:
        while True:
            if self._stopping or self.job.is_terminal:
                break

            channel = self.job.claim_next_pending(self.settings.max_channels)
            if channel is None:
                if self._closed:
                    break
                # No await between the failed claim and the wait, so a
                # notify() can't slip in unseen.
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            await self._enrich(channel, worker_id)

        logger.debug("[%s] Enrichment worker %d exiting", self.job.job_id, worker_id)

    async def _enrich(self, channel: Channel, worker_id: int) -> None:
        settings = self.settings
        last_error = "not attempted"

        for attempt in range(1, settings.max_attempts + 1):
            self.job.record_attempt(channel.rank)
            await self._pace()
            try:
                page = await self.fetcher.fetch_rendered_page(
                    channel.about_url, timeout=settings.fetch_timeout_seconds
                )
                fields = await asyncio.to_thread(self.build_fields, channel, page)
            except FetchError as exc:
                last_error = str(exc)
                logger.warning(
                    "[%s] #%d %s attempt %d/%d failed: %s",
                    self.job.job_id, channel.rank, channel.identity, attempt,
                    settings.max_attempts, exc,
                )
            except Exception as exc:
                last_error = f"extraction error: {exc}"
                logger.warning(
                    "[%s] #%d %s extraction failed on attempt %d/%d: %s",
                    self.job.job_id, channel.rank, channel.identity, attempt,
                    settings.max_attempts, exc,
                )
            else:
                self.job.complete_enrichment(channel.rank, fields)
                logger.debug("[%s] worker %d enriched #%d %s",
                             self.job.job_id, worker_id, channel.rank, channel.identity)
                return

            if attempt == settings.max_attempts:
                break
            if self.job.is_cancelled:
                last_error = "job cancelled before retry"
                break
            await asyncio.sleep(settings.retry_backoff_seconds * 2 ** (attempt - 1))

        self.job.fail_enrichment(channel.rank, last_error)

    async def _pace(self) -> None:
        """Enforce minimum spacing (plus jitter) between fetch dispatches."""
        loop = asyncio.get_running_loop()
        async with self._gate:
            wait = self._next_dispatch - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
            spacing = self.settings.min_delay_seconds + random.uniform(0, self.settings.jitter_seconds)
            self._next_dispatch = loop.time() + spacing

    # ------------------------------------------------------------------
    # Field assembly
    # ------------------------------------------------------------------

    def build_fields(self, channel: Channel, page: RenderedPage) -> EnrichedFields:
        """Run extraction, contact resolution and filters over one about page."""
        detail = DetailPage(page)
        about = self.extractor.extract(detail)
        description = about.description or channel.description

        contacts = resolve_contacts(
            page.text,
            page.html,
            description=description,
            extra_links=detail.embedded_links(),
        )
        verdict = check_enriched(channel.name, description, about.subscriber_count, self.criteria)

        return EnrichedFields(
            subscriber_count=about.subscriber_count,
            video_count=about.video_count,
            view_count=about.view_count,
            joined_date=about.joined_date,
            country=about.country,
            description=about.description,
            emails=tuple(contacts.emails),
            email_sources=contacts.email_sources,
            social_links=contacts.social_links,
            within_filters=verdict.passed,
            rejection_reason=verdict.reason.value if verdict.reason else None,
            relevance_score=relevance_score(
                self.job.keyword,
                channel.name,
                description,
                about.subscriber_count,
                about.video_count,
            ),
        )
