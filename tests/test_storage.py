"""Tests for the JSON record store and the discovery log."""

import json

import pytest

from channel_discovery import storage
from channel_discovery.models import ChannelCandidate


@pytest.fixture
def data_dir(tmp_path):
    storage.init_store(tmp_path)
    return tmp_path


def test_init_creates_files(data_dir):
    assert (data_dir / "sessions.json").exists()
    assert (data_dir / "jobs.json").exists()
    assert (data_dir / "discovery_log.jsonl").exists()
    # Safe to call twice
    storage.init_store(data_dir)
    assert json.loads((data_dir / "sessions.json").read_text()) == {}


def test_upsert_and_get(data_dir):
    storage.upsert_record("sessions", "s1", {"session_id": "s1", "keyword": "espresso"}, data_dir)
    assert storage.get_record("sessions", "s1", data_dir)["keyword"] == "espresso"

    storage.upsert_record("sessions", "s1", {"session_id": "s1", "keyword": "latte"}, data_dir)
    assert storage.get_record("sessions", "s1", data_dir)["keyword"] == "latte"
    assert storage.get_record("sessions", "missing", data_dir) is None


def test_list_records_newest_first(data_dir):
    for i, ts in enumerate(["2026-01-01", "2026-03-01", "2026-02-01"]):
        storage.upsert_record("jobs", f"j{i}", {"job_id": f"j{i}", "finished_at": ts}, data_dir)

    records = storage.list_records("jobs", data_dir, sort_by="finished_at")
    assert [r["job_id"] for r in records] == ["j1", "j2", "j0"]

    page = storage.list_records("jobs", data_dir, offset=1, limit=1, sort_by="finished_at")
    assert [r["job_id"] for r in page] == ["j2"]


def test_find_records(data_dir):
    storage.upsert_record("sessions", "a", {"keyword": "espresso", "fp": "x"}, data_dir)
    storage.upsert_record("sessions", "b", {"keyword": "espresso", "fp": "y"}, data_dir)
    storage.upsert_record("sessions", "c", {"keyword": "latte", "fp": "x"}, data_dir)

    found = storage.find_records("sessions", data_dir, keyword="espresso", fp="x")
    assert found == [{"keyword": "espresso", "fp": "x"}]


def test_delete_record(data_dir):
    storage.upsert_record("jobs", "j1", {"job_id": "j1"}, data_dir)
    assert storage.delete_record("jobs", "j1", data_dir) is True
    assert storage.delete_record("jobs", "j1", data_dir) is False
    assert storage.get_record("jobs", "j1", data_dir) is None


def test_unknown_collection_rejected(data_dir):
    with pytest.raises(ValueError):
        storage.upsert_record("channels", "x", {}, data_dir)


def test_corrupted_file_restored_from_backup(data_dir):
    storage.upsert_record("sessions", "s1", {"keyword": "espresso"}, data_dir)
    storage.upsert_record("sessions", "s2", {"keyword": "latte"}, data_dir)

    # The backup holds the state before the last write
    (data_dir / "sessions.json").write_text("{not json")

    assert storage.get_record("sessions", "s1", data_dir) == {"keyword": "espresso"}
    assert storage.get_record("sessions", "s2", data_dir) is None
    # The primary file was rewritten from the backup
    assert json.loads((data_dir / "sessions.json").read_text()) == {"s1": {"keyword": "espresso"}}


def test_log_discovered_channels_appends_everything(data_dir):
    candidates = [
        ChannelCandidate(identity="@a", name="A", url="https://www.youtube.com/@a"),
        ChannelCandidate(identity="@a", name="A", url="https://www.youtube.com/@a"),
        ChannelCandidate(identity="@b", name="B", url="https://www.youtube.com/@b", description="x" * 500),
    ]
    assert storage.log_discovered_channels(candidates, "job1", "espresso", data_dir) == 3
    assert storage.log_discovered_channels(candidates[:1], "job2", "espresso", data_dir) == 1

    lines = (data_dir / "discovery_log.jsonl").read_text().splitlines()
    entries = [json.loads(line) for line in lines]
    assert len(entries) == 4
    assert [e["identity"] for e in entries] == ["@a", "@a", "@b", "@a"]
    assert entries[2]["description_snippet"] == "x" * 200
    assert entries[3]["job_id"] == "job2"
    assert entries[0]["fingerprint"] == candidates[0].fingerprint
