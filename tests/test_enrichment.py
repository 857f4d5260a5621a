"""Tests for the enrichment worker pool."""

import asyncio

from channel_discovery.enrichment import EnrichmentPool
from channel_discovery.filters import FilterCriteria
from channel_discovery.jobs import Job
from channel_discovery.models import EnrichmentState, RenderedPage


def _job(make_candidate, handles="abc", **kwargs):
    job = Job("espresso", target_count=len(handles), **kwargs)
    job.append_channels([make_candidate(h) for h in handles])
    return job


def _run_pool(job, fetcher, config, criteria=None):
    async def run():
        pool = EnrichmentPool(job, fetcher, config, criteria=criteria)
        pool.start()
        finished = await pool.drain(config.enrichment.drain_timeout_seconds)
        await pool.stop()
        return finished

    return asyncio.run(run())


def test_enriches_every_channel(fast_config, make_candidate, fake_fetcher):
    job = _job(make_candidate)

    assert _run_pool(job, fake_fetcher(), fast_config) is True

    assert job.stats.enriched == 3
    for channel in job.channels:
        assert channel.enrichment_state is EnrichmentState.ENRICHED
        assert channel.enriched.subscriber_count == 1_250_000
        assert channel.enriched.view_count == 123_456_789
        assert channel.enriched.emails == ("biz@homebarista.coffee",)
        assert channel.enriched.social_links == {"instagram": "https://instagram.com/homebarista"}


def test_lowest_rank_first(fast_config, make_candidate, fake_fetcher):
    fast_config.enrichment.workers = 1
    job = _job(make_candidate, handles="cab")
    fetcher = fake_fetcher()

    _run_pool(job, fetcher, fast_config)

    assert fetcher.requested == [ch.about_url for ch in sorted(job.channels, key=lambda c: c.rank)]


def test_failure_after_retries(fast_config, make_candidate, fake_fetcher):
    fast_config.enrichment.max_attempts = 3
    job = _job(make_candidate)
    broken = job.channels[1]
    fetcher = fake_fetcher(fail_urls={broken.about_url})

    _run_pool(job, fetcher, fast_config)

    assert broken.enrichment_state is EnrichmentState.FAILED
    assert broken.attempts == 3
    assert "503" in broken.enrichment_error
    assert broken.enriched is None
    assert fetcher.requested.count(broken.about_url) == 3
    assert job.stats.failed == 1
    assert job.stats.enriched == 2
    # A channel failing is not a job failure
    assert job.error is None


def test_extraction_error_is_a_channel_failure(fast_config, make_candidate, fake_fetcher):
    fast_config.enrichment.max_attempts = 2
    job = _job(make_candidate, handles="a")

    async def run():
        pool = EnrichmentPool(job, fake_fetcher(), fast_config)

        def explode(channel, page):
            raise RuntimeError("unexpected layout")

        pool.build_fields = explode
        pool.start()
        await pool.drain(5)

    asyncio.run(run())

    channel = job.channels[0]
    assert channel.enrichment_state is EnrichmentState.FAILED
    assert channel.enrichment_error.startswith("extraction error")


def test_max_channels_limit(fast_config, make_candidate, fake_fetcher):
    fast_config.enrichment.max_channels = 2
    job = _job(make_candidate, handles="abcd", max_enriched=2)

    _run_pool(job, fake_fetcher(), fast_config)

    states = [ch.enrichment_state for ch in job.channels]
    assert states == [
        EnrichmentState.ENRICHED,
        EnrichmentState.ENRICHED,
        EnrichmentState.PENDING,
        EnrichmentState.PENDING,
    ]


def test_cancel_stops_claiming_but_lets_in_flight_finish(fast_config, make_candidate, fake_fetcher):
    fast_config.enrichment.workers = 1
    job = _job(make_candidate)
    fetcher = fake_fetcher(on_fetch=lambda url: job.cancel())

    _run_pool(job, fetcher, fast_config)

    assert len(fetcher.requested) == 1
    assert job.channels[0].enrichment_state is EnrichmentState.ENRICHED
    assert job.channels[1].enrichment_state is EnrichmentState.PENDING
    assert job.channels[2].enrichment_state is EnrichmentState.PENDING


def test_workers_wait_for_new_channels(fast_config, make_candidate, fake_fetcher):
    job = Job("espresso", target_count=4)

    async def run():
        pool = EnrichmentPool(job, fake_fetcher(), fast_config)
        pool.start()
        job.append_channels([make_candidate("a"), make_candidate("b")])
        pool.notify()
        await asyncio.sleep(0.05)
        job.append_channels([make_candidate("c"), make_candidate("d")])
        pool.notify()
        return await pool.drain(5)

    assert asyncio.run(run()) is True
    assert job.stats.enriched == 4


def test_build_fields_flags_out_of_range(fast_config, make_candidate, make_about_html, fake_fetcher):
    job = _job(make_candidate, handles="a")
    channel = job.channels[0]
    pool_criteria = FilterCriteria(min_subscribers=2_000_000)

    async def build():
        pool = EnrichmentPool(job, fake_fetcher(), fast_config, criteria=pool_criteria)
        page = RenderedPage.from_html(channel.about_url, make_about_html())
        return pool.build_fields(channel, page)

    fields = asyncio.run(build())

    assert fields.within_filters is False
    assert fields.rejection_reason == "REJECTED_BELOW_MIN_SUBSCRIBERS"
    assert fields.email_sources == {"biz@homebarista.coffee": "description"}
    assert fields.relevance_score is not None


def test_readers_never_see_a_partial_enrichment(fast_config, make_candidate, fake_fetcher):
    """Polling while workers finish channels: enriched means the whole field set."""
    fast_config.enrichment.workers = 3
    job = _job(make_candidate, handles=[f"ch{i}" for i in range(12)])
    seen_states = set()

    async def run():
        pool = EnrichmentPool(job, fake_fetcher(), fast_config)
        pool.start()
        drained = asyncio.ensure_future(pool.drain(5))
        polls = 0
        while not drained.done():
            for entity in job.snapshot()["entities"]:
                seen_states.add(entity["enrichment_state"])
                if entity["enrichment_state"] == "enriched":
                    fields = entity["enriched"]
                    assert fields["subscriber_count"] == 1_250_000
                    assert fields["view_count"] == 123_456_789
                    assert fields["emails"] == ["biz@homebarista.coffee"]
                    assert fields["social_links"] == {"instagram": "https://instagram.com/homebarista"}
                else:
                    assert "enriched" not in entity
            polls += 1
            await asyncio.sleep(0)
        await pool.stop()
        return polls, drained.result()

    polls, finished = asyncio.run(run())

    assert finished is True
    assert polls > 1
    assert "enriched" in seen_states
    assert seen_states - {"enriched"}
    assert job.stats.enriched == 12
