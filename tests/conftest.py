"""Shared fixtures: fast config, scripted listing sources and a fake fetcher."""

import asyncio

import pytest

from channel_discovery.config import PipelineConfig
from channel_discovery.fetch import FetchError
from channel_discovery.models import ChannelCandidate, RenderedPage
from channel_discovery.scrapers.base import BaseListingSource


def candidate(handle: str, name: str | None = None, description: str = "") -> ChannelCandidate:
    return ChannelCandidate(
        identity=f"@{handle}",
        name=name or handle.title(),
        url=f"https://www.youtube.com/@{handle}",
        description=description,
    )


def about_html(subscribers: str = "1.25M subscribers", extra: str = "") -> str:
    return f"""
    <html><head><meta name="description" content="Fallback description"></head>
    <body>
      <div id="channel-header">
        <div>Home Barista</div>
        <div>{subscribers}</div>
        <div>688 videos</div>
      </div>
      <div id="description-container">Espresso reviews every week. Business: biz@homebarista.coffee</div>
      <div id="details">
        <div>123,456,789 views</div>
        <div>United States</div>
        <div>Joined Mar 5, 2015</div>
      </div>
      <a href="https://www.youtube.com/redirect?event=channel_description&amp;q=https%3A%2F%2Fwww.instagram.com%2Fhomebarista%2F">Instagram</a>
      {extra}
    </body></html>
    """


class ScriptedSource(BaseListingSource):
    """Listing source that plays back a fixed list of pages.

    Each entry is a list of candidates or an exception to raise. With
    ``repeat_last`` the final entry is replayed forever; otherwise the
    listing is exhausted once the script runs out.
    """

    name = "scripted"

    def __init__(self, pages, repeat_last=False, on_fetch=None):
        super().__init__("test", None, PipelineConfig())
        self.pages = list(pages)
        self.repeat_last = repeat_last
        self.on_fetch = on_fetch
        self.calls = 0

    def fetch_page(self):
        index = self.calls
        self.calls += 1
        if self.on_fetch:
            self.on_fetch(self.calls)
        if index >= len(self.pages):
            if not self.repeat_last:
                self._mark_exhausted("script finished")
                return []
            index = len(self.pages) - 1
        item = self.pages[index]
        if isinstance(item, Exception):
            raise item
        return list(item)


class FakeFetcher:
    """Stands in for PageFetcher in enrichment: serves canned about pages."""

    def __init__(self, pages=None, default_html=None, fail_urls=(), on_fetch=None):
        self.pages = pages or {}
        self.default_html = default_html if default_html is not None else about_html()
        self.fail_urls = set(fail_urls)
        self.on_fetch = on_fetch
        self.requested: list[str] = []

    async def fetch_rendered_page(self, url, timeout=None):
        self.requested.append(url)
        if self.on_fetch:
            self.on_fetch(url)
        await asyncio.sleep(0)
        if url in self.fail_urls:
            raise FetchError(url, "HTTP 503")
        return RenderedPage.from_html(url, self.pages.get(url, self.default_html))

    def close(self):
        pass


@pytest.fixture
def fast_config(tmp_path):
    """Default config with every delay and backoff set to zero."""
    config = PipelineConfig(data_dir=str(tmp_path / "data"), output_dir=str(tmp_path / "output"))
    config.listing.retry_backoff_seconds = 0
    config.listing.fetch_retries = 2
    config.listing.page_timeout_seconds = 5
    config.enrichment.min_delay_seconds = 0
    config.enrichment.jitter_seconds = 0
    config.enrichment.retry_backoff_seconds = 0
    config.enrichment.fetch_timeout_seconds = 5
    config.enrichment.drain_timeout_seconds = 5
    return config


@pytest.fixture
def make_candidate():
    return candidate


@pytest.fixture
def make_about_html():
    return about_html


@pytest.fixture
def scripted_source():
    return ScriptedSource


@pytest.fixture
def fake_fetcher():
    return FakeFetcher
