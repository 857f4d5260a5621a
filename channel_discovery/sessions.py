"""Search sessions: what a client has already been shown for a search.

A session ties together every job run for one search (a keyword plus a
filter bag) so that "load more" can pick up where the client left off:

  - ``last_emitted_rank``: highest rank the client acknowledged seeing.
    Never decreases, and moves only when the client says so. Background
    enrichment finishing early must not make the server think the user
    saw something they didn't.
  - ``known_identities``: every channel the client has been shown.
    Continuation jobs skip these, even if the listing reorders.

Sessions live in the ``sessions`` collection of the record store and
expire after a period of inactivity.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from channel_discovery import storage
from channel_discovery.config import PipelineConfig
from channel_discovery.filters import filters_fingerprint

logger = logging.getLogger(__name__)

COLLECTION = "sessions"


class SessionNotFoundError(Exception):
    """No live session with that id (never existed, or expired)."""


def normalize_keyword(keyword: str) -> str:
    return " ".join(keyword.lower().split())


@dataclass
class Session:
    session_id: str
    keyword: str
    filters_fingerprint: str
    filters: dict[str, Any] = field(default_factory=dict)
    last_emitted_rank: int = -1  # -1 = nothing shown yet
    known_identities: list[str] = field(default_factory=list)
    target_total: int = 0
    job_ids: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def next_rank(self) -> int:
        return self.last_emitted_rank + 1

    def is_expired(self, inactivity: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - datetime.fromisoformat(self.updated_at) > inactivity

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Session":
        fields = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
        return cls(**fields)


class SessionManager:
    """Creates, looks up and advances sessions in the record store."""

    def __init__(self, config: PipelineConfig, data_dir: str | Path | None = None):
        self.config = config
        self.data_dir = Path(data_dir or config.data_dir)
        self.inactivity = timedelta(minutes=config.sessions.inactivity_minutes)
        self._lock = threading.Lock()
        storage.init_store(self.data_dir)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def open_session(self, keyword: str, filters: dict[str, Any] | None = None) -> Session:
        """Start a fresh session for a new search."""
        session = Session(
            session_id=uuid.uuid4().hex,
            keyword=normalize_keyword(keyword),
            filters_fingerprint=filters_fingerprint(filters),
            filters=dict(filters or {}),
        )
        self._save(session)
        logger.info("Opened session %s for %r", session.session_id, session.keyword)
        return session

    def find_session(self, keyword: str, filters: dict[str, Any] | None = None) -> Optional[Session]:
        """The most recently active live session for (keyword, filters)."""
        matches = storage.find_records(
            COLLECTION,
            self.data_dir,
            keyword=normalize_keyword(keyword),
            filters_fingerprint=filters_fingerprint(filters),
        )
        live = [Session.from_dict(r) for r in matches]
        live = [s for s in live if not s.is_expired(self.inactivity)]
        if not live:
            return None
        return max(live, key=lambda s: s.updated_at)

    def get_session(self, session_id: str) -> Session:
        raw = storage.get_record(COLLECTION, session_id, self.data_dir)
        if raw is None:
            raise SessionNotFoundError(session_id)
        session = Session.from_dict(raw)
        if session.is_expired(self.inactivity):
            storage.delete_record(COLLECTION, session_id, self.data_dir)
            logger.info("Session %s expired", session_id)
            raise SessionNotFoundError(session_id)
        return session

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def record_job(self, session_id: str, job_id: str, requested: int) -> Session:
        """Register a job against the session. Doesn't move rank or identities."""
        with self._lock:
            session = self.get_session(session_id)
            if job_id not in session.job_ids:
                session.job_ids.append(job_id)
                session.target_total += requested
            session.touch()
            self._save(session)
        return session

    def acknowledge(
        self,
        session_id: str,
        job_id: str,
        rank: int,
        issued: dict[int, str],
    ) -> Session:
        """Client confirms it has displayed everything up to ``rank``.

        ``issued`` maps each rank the job produced to its identity. The
        rank must be one the job actually issued. Identities up to and
        including ``rank`` become known; ``last_emitted_rank`` only ever
        moves forward.
        """
        if rank not in issued:
            raise ValueError(f"rank {rank} was not issued by job {job_id}")

        with self._lock:
            session = self.get_session(session_id)
            if job_id not in session.job_ids:
                raise ValueError(f"job {job_id} does not belong to session {session_id}")

            known = set(session.known_identities)
            for r in sorted(issued):
                if r > rank:
                    break
                identity = issued[r]
                if identity not in known:
                    session.known_identities.append(identity)
                    known.add(identity)

            if rank > session.last_emitted_rank:
                session.last_emitted_rank = rank
            session.touch()
            self._save(session)

        logger.debug(
            "Session %s acknowledged rank %d (%d known)",
            session_id, session.last_emitted_rank, len(session.known_identities),
        )
        return session

    def expire_sessions(self) -> int:
        """Delete every session past its inactivity window. Returns the count."""
        removed = 0
        with self._lock:
            for raw in storage.list_records(COLLECTION, self.data_dir):
                session = Session.from_dict(raw)
                if session.is_expired(self.inactivity):
                    storage.delete_record(COLLECTION, session.session_id, self.data_dir)
                    removed += 1
        if removed:
            logger.info("Expired %d inactive sessions", removed)
        return removed

    def _save(self, session: Session) -> None:
        storage.upsert_record(COLLECTION, session.session_id, session.to_dict(), self.data_dir)
