"""Abstract base class for search listing sources."""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod

from channel_discovery.config import PipelineConfig
from channel_discovery.fetch import PageFetcher
from channel_discovery.models import ChannelCandidate

logger = logging.getLogger(__name__)


class BaseListingSource(ABC):
    """Base class for a paginated listing of channels for one keyword.

    A source is a cursor: each successful ``fetch_page()`` returns the next
    page and moves the cursor forward. A failed call raises ``FetchError``
    and leaves the cursor where it was, so the caller can simply retry.
    Once there is nothing further to load, ``exhausted`` becomes True.

    Sources don't dedupe, filter or retry. The collector does all three.
    """

    name = "base"

    def __init__(self, keyword: str, fetcher: PageFetcher, config: PipelineConfig):
        self.keyword = keyword
        self.fetcher = fetcher
        self.config = config
        self.pages_fetched = 0
        self._exhausted = False
        # A page that outlived its watchdog may still be running in a thread
        self._cursor_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @abstractmethod
    def fetch_page(self) -> list[ChannelCandidate]:
        """Fetch and return the next page of candidates (blocking).

        Must be implemented by every subclass.
        """
        ...

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    async def next_page(self, timeout: float) -> list[ChannelCandidate]:
        """Fetch the next page off the event loop, bounded by ``timeout``.

        A timeout surfaces as ``asyncio.TimeoutError``.
        """
        return await asyncio.wait_for(asyncio.to_thread(self._locked_fetch), timeout)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _locked_fetch(self) -> list[ChannelCandidate]:
        with self._cursor_lock:
            if self._exhausted:
                return []
            candidates = self.fetch_page()
            self.pages_fetched += 1
            logger.debug(
                "[%s] page %d: %d candidates", self.name, self.pages_fetched, len(candidates)
            )
            return candidates

    def _mark_exhausted(self, reason: str) -> None:
        if not self._exhausted:
            logger.info("[%s] Listing exhausted after %d pages: %s",
                        self.name, self.pages_fetched + 1, reason)
        self._exhausted = True
