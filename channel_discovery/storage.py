"""Storage module for the channel discovery service.

A small record store on top of plain JSON files in the data directory:

1. **Collections** (`data/<collection>.json`)
   - JSON object {key: record}, one file per collection
   - Used for search sessions (`sessions`) and finished jobs (`jobs`)
   - Supports upsert-by-key, point reads, deletes and range reads

2. **Discovery log** (`data/discovery_log.jsonl`)
   - Append-only log of every channel candidate any job saw, before
     filtering and before dedup against the session
   - JSON Lines format (one JSON object per line)
   - Never deduplicated or pruned

All collection writes use the atomic write pattern:
  1. Write to .tmp file
  2. fsync
  3. Rename to target (atomic on POSIX)

Before each write, a .bak backup is created. If the primary file is
corrupted, it's restored from .bak automatically.

None of this is needed for a single in-memory job to be correct; it is
what lets "load more" survive a restart and what backs the history view.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from channel_discovery.models import ChannelCandidate

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data"

COLLECTIONS = ("sessions", "jobs")

# Serializes read-modify-write cycles on collection files
_lock = threading.RLock()


# ── Initialization ─────────────────────────────────────────────────────────

def init_store(data_dir: str | Path = DEFAULT_DATA_DIR) -> None:
    """Ensure the data directory and files exist.

    Creates one {} file per collection and discovery_log.jsonl if
    missing. Safe to call multiple times.
    """
    d = Path(data_dir)
    d.mkdir(parents=True, exist_ok=True)

    for name in COLLECTIONS:
        path = _collection_path(name, d)
        if not path.exists():
            _atomic_write_json(path, {})
            logger.info("Created %s", path)

    log_path = d / "discovery_log.jsonl"
    if not log_path.exists():
        log_path.touch()
        logger.info("Created %s", log_path)


# ── Records ────────────────────────────────────────────────────────────────

def upsert_record(
    collection: str,
    key: str,
    record: dict[str, Any],
    data_dir: str | Path = DEFAULT_DATA_DIR,
) -> None:
    """Insert or replace the record stored under ``key``."""
    path = _collection_path(collection, data_dir)
    with _lock:
        records = _safe_read_json(path, default={})
        records[key] = record
        _backup_and_write(path, records)
    logger.debug("Upserted %s/%s", collection, key)


def get_record(
    collection: str,
    key: str,
    data_dir: str | Path = DEFAULT_DATA_DIR,
) -> Optional[dict[str, Any]]:
    """Return the record stored under ``key``, or None."""
    path = _collection_path(collection, data_dir)
    with _lock:
        return _safe_read_json(path, default={}).get(key)


def list_records(
    collection: str,
    data_dir: str | Path = DEFAULT_DATA_DIR,
    offset: int = 0,
    limit: Optional[int] = None,
    sort_by: str = "updated_at",
    newest_first: bool = True,
) -> list[dict[str, Any]]:
    """Range read over a collection, ordered by ``sort_by``."""
    path = _collection_path(collection, data_dir)
    with _lock:
        records = list(_safe_read_json(path, default={}).values())

    records.sort(key=lambda r: str(r.get(sort_by) or ""), reverse=newest_first)
    end = None if limit is None else offset + limit
    return records[offset:end]


def find_records(
    collection: str,
    data_dir: str | Path = DEFAULT_DATA_DIR,
    **match: Any,
) -> list[dict[str, Any]]:
    """All records whose fields equal every ``match`` value."""
    path = _collection_path(collection, data_dir)
    with _lock:
        records = _safe_read_json(path, default={}).values()
    return [r for r in records if all(r.get(k) == v for k, v in match.items())]


def delete_record(
    collection: str,
    key: str,
    data_dir: str | Path = DEFAULT_DATA_DIR,
) -> bool:
    """Remove ``key`` from the collection. Returns whether it existed."""
    path = _collection_path(collection, data_dir)
    with _lock:
        records = _safe_read_json(path, default={})
        if key not in records:
            return False
        del records[key]
        _backup_and_write(path, records)
    logger.debug("Deleted %s/%s", collection, key)
    return True


# ── Discovery Log ──────────────────────────────────────────────────────────

def log_discovered_channels(
    candidates: Iterable[ChannelCandidate],
    job_id: str,
    keyword: str,
    data_dir: str | Path = DEFAULT_DATA_DIR,
) -> int:
    """Append listing candidates to discovery_log.jsonl.

    Called before any filtering or dedup: every candidate of every page
    gets logged here, duplicates included. Returns the number written.
    """
    log_path = Path(data_dir) / "discovery_log.jsonl"
    now = datetime.now(timezone.utc).isoformat()

    count = 0
    with _lock, open(log_path, "a") as f:
        for candidate in candidates:
            entry = {
                "job_id": job_id,
                "keyword": keyword,
                "scraped_at": now,
                "identity": candidate.identity,
                "fingerprint": candidate.fingerprint,
                "name": candidate.name,
                "url": candidate.url,
                "description_snippet": (candidate.description or "")[:200],
            }
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")
            count += 1

    logger.debug("Appended %d entries to discovery log (job_id=%s)", count, job_id)
    return count


# ── Internal Helpers ───────────────────────────────────────────────────────

def _collection_path(collection: str, data_dir: str | Path) -> Path:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection!r}")
    return Path(data_dir) / f"{collection}.json"


def _safe_read_json(path: Path, default: Any = None) -> Any:
    """Read a JSON file, restoring from .bak if corrupted.

    If the primary file can't be parsed, tries .bak. If both fail,
    returns the default value and logs an error.
    """
    if not path.exists():
        return default if default is not None else {}

    try:
        with open(path, "r") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s: %s - trying backup", path, exc)

    bak_path = path.with_suffix(path.suffix + ".bak")
    if bak_path.exists():
        try:
            with open(bak_path, "r") as f:
                data = json.load(f)
            logger.info("Restored %s from backup", path)
            _atomic_write_json(path, data)
            return data
        except (json.JSONDecodeError, OSError) as exc:
            logger.error("Backup %s also corrupted: %s", bak_path, exc)

    logger.error("Could not read %s or its backup - using default", path)
    return default if default is not None else {}


def _backup_and_write(path: Path, data: Any) -> None:
    """Create a .bak backup of the current file, then atomically write new data."""
    if path.exists():
        bak_path = path.with_suffix(path.suffix + ".bak")
        try:
            shutil.copy2(path, bak_path)
        except OSError as exc:
            logger.warning("Failed to create backup of %s: %s", path, exc)

    _atomic_write_json(path, data)


def _atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON data atomically using temp file + rename.

    1. Write to .tmp file in the same directory
    2. fsync the temp file
    3. Rename temp to target (atomic on POSIX)
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")

    try:
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())

        tmp_path.replace(path)
    except OSError as exc:
        logger.error("Failed to write %s: %s", path, exc)
        if tmp_path.exists():
            tmp_path.unlink()
        raise
