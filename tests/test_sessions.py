"""Tests for search sessions and acknowledgements."""

from datetime import datetime, timedelta, timezone

import pytest

from channel_discovery import storage
from channel_discovery.config import PipelineConfig
from channel_discovery.sessions import (
    SessionManager,
    SessionNotFoundError,
    normalize_keyword,
)

ISSUED = {0: "@a", 1: "@b", 2: "@c"}


@pytest.fixture
def manager(tmp_path):
    return SessionManager(PipelineConfig(), data_dir=tmp_path)


@pytest.fixture
def session(manager):
    s = manager.open_session("Home Espresso", {"minSubscribers": 1000})
    manager.record_job(s.session_id, "job1", requested=3)
    return s


def test_normalize_keyword():
    assert normalize_keyword("  Home   ESPRESSO ") == "home espresso"


def test_open_session_starts_empty(manager):
    s = manager.open_session("espresso")
    assert s.last_emitted_rank == -1
    assert s.next_rank == 0
    assert s.known_identities == []
    assert manager.get_session(s.session_id).keyword == "espresso"


def test_open_session_always_fresh(manager):
    a = manager.open_session("espresso")
    b = manager.open_session("espresso")
    assert a.session_id != b.session_id


def test_find_session_matches_keyword_and_filters(manager, session):
    found = manager.find_session(" home  espresso", {"minSubscribers": 1000})
    assert found.session_id == session.session_id
    assert manager.find_session("home espresso", {"minSubscribers": 5000}) is None
    assert manager.find_session("latte", {"minSubscribers": 1000}) is None


def test_record_job_is_idempotent(manager, session):
    manager.record_job(session.session_id, "job1", requested=3)
    s = manager.record_job(session.session_id, "job2", requested=5)
    assert s.job_ids == ["job1", "job2"]
    assert s.target_total == 8


def test_acknowledge_moves_rank_and_identities(manager, session):
    s = manager.acknowledge(session.session_id, "job1", 1, ISSUED)
    assert s.last_emitted_rank == 1
    assert s.known_identities == ["@a", "@b"]
    assert s.next_rank == 2


def test_acknowledge_never_moves_backwards(manager, session):
    manager.acknowledge(session.session_id, "job1", 2, ISSUED)
    s = manager.acknowledge(session.session_id, "job1", 0, ISSUED)
    assert s.last_emitted_rank == 2
    assert s.known_identities == ["@a", "@b", "@c"]


def test_acknowledge_rejects_unissued_rank(manager, session):
    with pytest.raises(ValueError):
        manager.acknowledge(session.session_id, "job1", 7, ISSUED)
    assert manager.get_session(session.session_id).last_emitted_rank == -1


def test_acknowledge_rejects_foreign_job(manager, session):
    with pytest.raises(ValueError):
        manager.acknowledge(session.session_id, "other-job", 0, ISSUED)


def test_unknown_session(manager):
    with pytest.raises(SessionNotFoundError):
        manager.get_session("nope")


def _age(manager, session_id, minutes):
    record = storage.get_record("sessions", session_id, manager.data_dir)
    old = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    record["updated_at"] = old.isoformat()
    storage.upsert_record("sessions", session_id, record, manager.data_dir)


def test_expired_session_is_gone(manager, session):
    _age(manager, session.session_id, minutes=120)
    with pytest.raises(SessionNotFoundError):
        manager.get_session(session.session_id)
    assert storage.get_record("sessions", session.session_id, manager.data_dir) is None


def test_expire_sessions(manager):
    stale = manager.open_session("espresso")
    fresh = manager.open_session("latte")
    _age(manager, stale.session_id, minutes=120)

    assert manager.expire_sessions() == 1
    assert manager.find_session("espresso") is None
    assert manager.get_session(fresh.session_id).keyword == "latte"
