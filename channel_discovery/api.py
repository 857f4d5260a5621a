"""HTTP surface: start, poll, cancel and continue searches.

Clients poll ``GET /api/search/{job_id}?offset=N`` every few seconds
until ``state`` is terminal; ``next_offset`` from one poll is the
``offset`` of the next, so each poll only carries new channels (plus
whatever the client re-requests to pick up enrichment progress).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from channel_discovery.config import PipelineConfig, load_config
from channel_discovery.jobs import JobManager, JobNotFoundError
from channel_discovery.sessions import SessionNotFoundError

logger = logging.getLogger(__name__)

search_router = APIRouter(prefix="/search", tags=["search"])
sessions_router = APIRouter(prefix="/sessions", tags=["sessions"])


def get_manager(request: Request) -> JobManager:
    return request.app.state.manager


def _positive_int(payload: dict, *keys: str, required: bool = True) -> Optional[int]:
    for key in keys:
        if payload.get(key) is not None:
            value = payload[key]
            break
    else:
        if required:
            raise HTTPException(status_code=400, detail=f"{keys[0]} is required")
        return None
    invalid = HTTPException(status_code=400, detail=f"{keys[0]} must be a positive integer")
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise invalid
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise invalid
    if number <= 0:
        raise invalid
    return number


def _filters(payload: dict) -> dict[str, Any]:
    filters = payload.get("filters") or {}
    if not isinstance(filters, dict):
        raise HTTPException(status_code=400, detail="filters must be an object")
    return filters


# ── Search ─────────────────────────────────────────────────────────────────


@search_router.post("")
async def create_search(payload: dict, manager: JobManager = Depends(get_manager)) -> dict:
    keyword = str(payload.get("keyword") or "").strip()
    if not keyword:
        raise HTTPException(status_code=400, detail="keyword is required")
    target_count = _positive_int(payload, "target_count", "targetCount")
    session_id = payload.get("session_id") or payload.get("sessionId")

    try:
        job = await manager.create_job(keyword, target_count, _filters(payload), session_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="session not found")
    return {"job_id": job.job_id, "session_id": job.session_id, "state": job.state.value}


@search_router.get("/history")
async def search_history(
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=200),
    manager: JobManager = Depends(get_manager),
) -> dict:
    return {"items": manager.list_history(offset=offset, limit=limit), "offset": offset}


@search_router.post("/cancel")
async def cancel_search(payload: dict, manager: JobManager = Depends(get_manager)) -> dict:
    job_id = payload.get("job_id") or payload.get("jobId")
    if not job_id:
        raise HTTPException(status_code=400, detail="job_id is required")
    try:
        cancelled = manager.cancel(job_id)
        state = manager.job_state(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="job not found")
    return {"job_id": job_id, "cancelled": cancelled, "state": state}


async def _continue(manager: JobManager, payload: dict, session_id: Optional[str]) -> dict:
    additional = _positive_int(payload, "additional_count", "additionalCount", "target_count")
    keyword = payload.get("keyword")
    try:
        job = await manager.continue_session(
            additional,
            session_id=session_id,
            keyword=keyword,
            filters=_filters(payload),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="session not found")
    return {
        "job_id": job.job_id,
        "session_id": job.session_id,
        "rank_offset": job.rank_offset,
        "state": job.state.value,
    }


@search_router.post("/continue")
async def continue_search(payload: dict, manager: JobManager = Depends(get_manager)) -> dict:
    session_id = payload.get("session_id") or payload.get("sessionId")
    return await _continue(manager, payload, session_id)


@search_router.post("/continue/{session_id}")
async def continue_session(
    session_id: str, payload: dict, manager: JobManager = Depends(get_manager)
) -> dict:
    return await _continue(manager, payload, session_id)


@search_router.get("/{job_id}")
async def search_status(
    job_id: str,
    offset: int = Query(0, ge=0),
    manager: JobManager = Depends(get_manager),
) -> dict:
    try:
        return manager.get_status(job_id, offset=offset)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="job not found")


# ── Sessions ───────────────────────────────────────────────────────────────


@sessions_router.get("/{session_id}")
async def get_session(session_id: str, manager: JobManager = Depends(get_manager)) -> dict:
    try:
        return manager.sessions.get_session(session_id).to_dict()
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="session not found")


@sessions_router.post("/{session_id}/ack")
async def acknowledge(
    session_id: str, payload: dict, manager: JobManager = Depends(get_manager)
) -> dict:
    job_id = payload.get("job_id") or payload.get("jobId")
    if not job_id:
        raise HTTPException(status_code=400, detail="job_id is required")
    rank = payload.get("rank")
    if isinstance(rank, bool) or not isinstance(rank, int) or rank < 0:
        raise HTTPException(status_code=400, detail="rank must be a non-negative integer")

    try:
        session = manager.acknowledge(session_id, job_id, rank)
    except (SessionNotFoundError, JobNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=f"not found: {exc}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return session.to_dict()


# ── App ────────────────────────────────────────────────────────────────────


def create_app(
    config: Optional[PipelineConfig] = None,
    manager: Optional[JobManager] = None,
) -> FastAPI:
    config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.manager.shutdown()

    app = FastAPI(title="Channel Discovery API", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.manager = manager or JobManager(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(search_router, prefix="/api")
    app.include_router(sessions_router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Channel Discovery API",
                "docs": "/docs",
                "health": "/api/search/history",
            }
        )

    return app
