"""Tests for the HTTP API using FastAPI's TestClient."""

import time

import pytest
from fastapi.testclient import TestClient

from channel_discovery.api import create_app
from channel_discovery.jobs import JobManager

TERMINAL = {"completed", "failed", "cancelled"}


@pytest.fixture
def client(fast_config, fake_fetcher, scripted_source, make_candidate):
    listing = [[make_candidate(h) for h in "abc"], [make_candidate(h) for h in "cde"]]

    def factory(keyword, fetcher, config):
        return scripted_source(listing)

    manager = JobManager(
        fast_config,
        fetcher=fake_fetcher(),
        source_factory=factory,
        data_dir=fast_config.data_dir,
    )
    with TestClient(create_app(fast_config, manager)) as test_client:
        yield test_client


def _wait_for(client, job_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = client.get(f"/api/search/{job_id}").json()
        if status["state"] in TERMINAL:
            return status
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


def _start(client, **payload):
    payload.setdefault("keyword", "home espresso")
    payload.setdefault("target_count", 3)
    resp = client.post("/api/search", json=payload)
    assert resp.status_code == 200, resp.text
    return resp.json()


# ── Search ──────────────────────────────────────────────────────────────────


def test_root(client):
    assert client.get("/").json()["message"] == "Channel Discovery API"


@pytest.mark.parametrize("payload", [
    {"target_count": 3},
    {"keyword": "   ", "target_count": 3},
    {"keyword": "espresso"},
    {"keyword": "espresso", "target_count": 0},
    {"keyword": "espresso", "target_count": -2},
    {"keyword": "espresso", "target_count": "many"},
    {"keyword": "espresso", "target_count": 2.5},
    {"keyword": "espresso", "target_count": True},
    {"keyword": "espresso", "target_count": 3, "filters": ["not", "an", "object"]},
    {"keyword": "espresso", "target_count": 3, "filters": {"minSubscribers": "lots"}},
    {"keyword": "espresso", "target_count": 3, "filters": {"maxSubscribers": -1}},
])
def test_create_search_validation(client, payload):
    assert client.post("/api/search", json=payload).status_code == 400


def test_search_runs_to_completion(client):
    created = _start(client)
    assert created["state"] == "pending"

    status = _wait_for(client, created["job_id"])

    assert status["state"] == "completed"
    assert status["session_id"] == created["session_id"]
    assert [e["rank"] for e in status["entities"]] == [0, 1, 2]
    assert all(e["enrichment_state"] == "enriched" for e in status["entities"])
    assert status["entities"][0]["enriched"]["subscriber_count"] == 1_250_000
    assert status["progress_percent"] == 100


def test_camel_case_payload(client):
    resp = client.post("/api/search", json={"keyword": "espresso", "targetCount": 2})
    assert resp.status_code == 200
    assert len(_wait_for(client, resp.json()["job_id"])["entities"]) == 2


def test_poll_with_offset(client):
    created = _start(client)
    _wait_for(client, created["job_id"])

    page = client.get(f"/api/search/{created['job_id']}", params={"offset": 2}).json()
    assert [e["identity"] for e in page["entities"]] == ["@c"]
    assert page["offset"] == 2
    assert page["next_offset"] == 3


def test_unknown_job(client):
    assert client.get("/api/search/nope").status_code == 404
    assert client.post("/api/search/cancel", json={"job_id": "nope"}).status_code == 404


def test_cancel_finished_job_is_a_no_op(client):
    created = _start(client)
    _wait_for(client, created["job_id"])

    resp = client.post("/api/search/cancel", json={"job_id": created["job_id"]})
    assert resp.status_code == 200
    assert resp.json() == {"job_id": created["job_id"], "cancelled": False, "state": "completed"}


def test_cancel_requires_job_id(client):
    assert client.post("/api/search/cancel", json={}).status_code == 400


def test_cancel_archived_job_is_a_no_op(client):
    created = _start(client)
    _wait_for(client, created["job_id"])
    manager = client.app.state.manager
    manager.config.jobs.retention_minutes = 0
    manager.collect_garbage()

    resp = client.post("/api/search/cancel", json={"job_id": created["job_id"]})
    assert resp.status_code == 200
    assert resp.json() == {"job_id": created["job_id"], "cancelled": False, "state": "completed"}


def test_history(client):
    created = _start(client)
    _wait_for(client, created["job_id"])

    history = client.get("/api/search/history").json()
    assert [item["job_id"] for item in history["items"]] == [created["job_id"]]
    assert "entities" not in history["items"][0]


# ── Sessions ────────────────────────────────────────────────────────────────


def test_acknowledge_and_continue(client):
    created = _start(client, target_count=2)
    _wait_for(client, created["job_id"])
    session_id = created["session_id"]

    ack = client.post(f"/api/sessions/{session_id}/ack", json={"job_id": created["job_id"], "rank": 1})
    assert ack.status_code == 200
    assert ack.json()["last_emitted_rank"] == 1
    assert ack.json()["known_identities"] == ["@a", "@b"]

    more = client.post(f"/api/search/continue/{session_id}", json={"additional_count": 2})
    assert more.status_code == 200
    assert more.json()["rank_offset"] == 2

    status = _wait_for(client, more.json()["job_id"])
    assert [(e["rank"], e["identity"]) for e in status["entities"]] == [(2, "@c"), (3, "@d")]


def test_continue_by_keyword(client):
    created = _start(client, keyword="Home Espresso", target_count=1)
    _wait_for(client, created["job_id"])
    client.post(f"/api/sessions/{created['session_id']}/ack", json={"job_id": created["job_id"], "rank": 0})

    more = client.post("/api/search/continue", json={"keyword": "home espresso", "additional_count": 1})
    assert more.status_code == 200
    assert more.json()["session_id"] == created["session_id"]


def test_continue_errors(client):
    assert client.post("/api/search/continue/nope", json={"additional_count": 2}).status_code == 404
    assert client.post("/api/search/continue", json={"additional_count": 2}).status_code == 400
    assert client.post("/api/search/continue", json={"keyword": "never searched", "additional_count": 2}).status_code == 404


def test_acknowledge_errors(client):
    created = _start(client, target_count=2)
    _wait_for(client, created["job_id"])
    url = f"/api/sessions/{created['session_id']}/ack"

    assert client.post(url, json={"job_id": created["job_id"], "rank": 9}).status_code == 400
    assert client.post(url, json={"job_id": created["job_id"], "rank": -1}).status_code == 400
    assert client.post(url, json={"rank": 0}).status_code == 400
    assert client.post(url, json={"job_id": "nope", "rank": 0}).status_code == 404
    assert client.post("/api/sessions/nope/ack", json={"job_id": created["job_id"], "rank": 0}).status_code in (400, 404)


def test_get_session(client):
    created = _start(client)
    resp = client.get(f"/api/sessions/{created['session_id']}")
    assert resp.status_code == 200
    assert resp.json()["keyword"] == "home espresso"
    assert client.get("/api/sessions/nope").status_code == 404
