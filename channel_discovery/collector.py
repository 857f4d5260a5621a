"""Collector: walks the search listing and feeds new channels into a job.

Per page:
  1. Check for cancellation / target reached / listing exhausted
  2. Fetch the next page (watchdog timeout, retried with backoff)
  3. Log every candidate to the discovery log (before any filtering)
  4. Drop identities repeated within the page or seen earlier this run
  5. Drop identities the session already showed the client
  6. Apply the discovery-time filters
  7. Append the survivors to the job with sequential ranks, truncating
     at the target

Stopping: the listing's incremental loading isn't guaranteed to be
complete or stable, so instead of retrying forever the collector stops
after ``max_empty_fetches`` consecutive fetches that produced no identity
it hadn't already seen this run. A fetch that still fails after all its
retries counts as one of those. Only the very first page failing is fatal.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from channel_discovery.config import PipelineConfig
from channel_discovery.fetch import FetchError
from channel_discovery.filters import (
    FilterCriteria,
    RejectionReason,
    check_discovery,
    get_rejection_summary,
)
from channel_discovery.models import Channel, ChannelCandidate
from channel_discovery.scrapers.base import BaseListingSource
from channel_discovery.storage import log_discovered_channels

if TYPE_CHECKING:
    from channel_discovery.jobs import Job

logger = logging.getLogger(__name__)


class SourceUnavailableError(Exception):
    """The listing could not be reached at all (first page failed)."""


@dataclass
class CollectResult:
    collected: int  # channels appended to the job by this run
    discovered: int  # candidates new to the session, before filtering
    pages: int  # logical page fetches, failed ones included
    converged: bool
    stop_reason: str


class Collector:
    """Drives one listing source for one job."""

    def __init__(
        self,
        source: BaseListingSource,
        config: PipelineConfig,
        criteria: Optional[FilterCriteria] = None,
        data_dir: str | Path | None = None,
        on_batch: Optional[Callable[[list[Channel]], None]] = None,
    ):
        self.source = source
        self.config = config
        self.criteria = criteria or FilterCriteria()
        self.data_dir = Path(data_dir) if data_dir else None
        self.on_batch = on_batch

    async def collect(self, job: "Job", exclude: Iterable[str] = ()) -> CollectResult:
        listing = self.config.listing
        excluded = set(exclude)
        seen_this_run: set[str] = set()
        rejected: list[RejectionReason] = []

        pages = 0
        successful_pages = 0
        empty_streak = 0
        collected = 0
        discovered = 0
        converged = False

        logger.info(
            "[%s] Collecting up to %d channels for %r (%d excluded, ranks from %d)",
            job.job_id, job.target_count, job.keyword, len(excluded), job.rank_offset,
        )

        while True:
            if job.is_terminal:
                stop_reason = "cancelled" if job.is_cancelled else job.state.value
                break
            if job.collected_count >= job.target_count:
                stop_reason = "target_reached"
                break
            if self.source.exhausted:
                stop_reason = "exhausted"
                converged = True
                break
            if pages >= listing.max_pages:
                stop_reason = "max_pages"
                break

            pages += 1
            candidates = await self._fetch_with_retry(job, pages)

            if candidates is None:
                if job.is_terminal:
                    continue
                if successful_pages == 0:
                    raise SourceUnavailableError(
                        f"search listing unavailable for {job.keyword!r}"
                    )
                empty_streak += 1
            else:
                successful_pages += 1
                if self.data_dir and candidates:
                    log_discovered_channels(candidates, job.job_id, job.keyword, self.data_dir)

                new_this_run = _dedupe(candidates, seen_this_run)
                empty_streak = 0 if new_this_run else empty_streak + 1

                fresh = [c for c in new_this_run if c.identity not in excluded]
                discovered += len(fresh)
                job.record_discovered(len(fresh))

                passed = []
                for candidate in fresh:
                    result = check_discovery(candidate.name, candidate.description, self.criteria)
                    if result.passed:
                        passed.append(candidate)
                    else:
                        rejected.append(result.reason)

                appended = job.append_channels(passed)
                collected += len(appended)
                logger.info(
                    "[%s] Page %d: %d candidates, %d new, %d appended (total %d/%d)",
                    job.job_id, pages, len(candidates), len(fresh), len(appended),
                    job.collected_count, job.target_count,
                )
                if appended and self.on_batch:
                    self.on_batch(appended)

            if empty_streak >= listing.max_empty_fetches:
                stop_reason = "converged"
                converged = True
                logger.info(
                    "[%s] No new channels in %d consecutive fetches - stopping",
                    job.job_id, empty_streak,
                )
                break

        if rejected:
            logger.info("[%s] Filter rejections: %s", job.job_id, get_rejection_summary(rejected))
        logger.info(
            "[%s] Collection stopped (%s): %d channels from %d pages",
            job.job_id, stop_reason, collected, pages,
        )
        return CollectResult(
            collected=collected,
            discovered=discovered,
            pages=pages,
            converged=converged,
            stop_reason=stop_reason,
        )

    async def _fetch_with_retry(self, job: "Job", page_number: int) -> Optional[list[ChannelCandidate]]:
        """Fetch one page, retrying with exponential backoff.

        Returns None once every attempt has failed, or straight away when
        the page arrived but could not be parsed.
        """
        listing = self.config.listing
        for attempt in range(1, listing.fetch_retries + 1):
            try:
                return await self.source.next_page(listing.page_timeout_seconds)
            except (FetchError, asyncio.TimeoutError) as exc:
                logger.warning(
                    "[%s] Page %d attempt %d/%d failed: %s",
                    job.job_id, page_number, attempt, listing.fetch_retries,
                    str(exc) or "timed out",
                )
            except Exception as exc:
                logger.warning(
                    "[%s] Page %d could not be parsed (%s: %s)",
                    job.job_id, page_number, type(exc).__name__, exc,
                )
                return None
            if attempt == listing.fetch_retries or job.is_terminal:
                break
            await asyncio.sleep(listing.retry_backoff_seconds * 2 ** (attempt - 1))
        return None


def _dedupe(candidates: list[ChannelCandidate], seen: set[str]) -> list[ChannelCandidate]:
    """Candidates whose identity isn't in ``seen``; adds them to ``seen``."""
    new = []
    for candidate in candidates:
        if not candidate.identity or candidate.identity in seen:
            continue
        seen.add(candidate.identity)
        new.append(candidate)
    return new
