# SPDX-License-Identifier: AGPL-3.0-or-later
"""
LSS Sync API

FastAPI application exposing the live update stream, the ingest endpoint
for externally collected missions and a health check.
"""

from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import TypeAdapter, ValidationError

from lss_sync import __version__
from lss_sync.broadcast import Broadcaster
from lss_sync.config import settings
from lss_sync.schemas import MissionRecord
from lss_sync.storage.database import DatabaseStorage
from lss_sync.sync.reconciler import Reconciler, serialize_incident

_records_adapter = TypeAdapter(list[MissionRecord])

router = APIRouter()


def _validation_error(error: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation Error",
            "details": error.errors(include_url=False, include_context=False),
        },
    )


def _check_api_key(request: Request) -> JSONResponse | None:
    expected = request.app.state.ingest_api_key
    if expected and request.headers.get("X-API-Key") != expected:
        return JSONResponse(status_code=401, content={"error": "Invalid API key"})
    return None


# ========== Live Updates ==========

@router.get("/api/stream", tags=["live"])
async def stream(request: Request) -> StreamingResponse:
    """Server-sent events stream of mission and alliance updates."""
    broadcaster: Broadcaster = request.app.state.broadcaster
    sink = broadcaster.subscribe()

    async def event_stream() -> AsyncIterator[str]:
        try:
            async for frame in sink.frames():
                yield frame
        finally:
            broadcaster.unsubscribe(sink)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ========== Ingest ==========

@router.post("/ingest/incidents", tags=["ingest"])
async def ingest_incidents(request: Request) -> JSONResponse:
    """
    Create or update missions collected by an external scraper.

    Accepts a single mission object or an array. Never deletes missions.
    """
    denied = _check_api_key(request)
    if denied is not None:
        return denied

    try:
        body: Any = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    reconciler: Reconciler = request.app.state.reconciler

    if isinstance(body, list):
        if not body:
            return JSONResponse(status_code=400, content={"error": "Empty array provided"})
        try:
            records = _records_adapter.validate_python(body)
        except ValidationError as e:
            return _validation_error(e)

        changes = await reconciler.upsert_records(records, partial=True)
        return JSONResponse(
            status_code=200,
            content={
                "created": len(changes.created),
                "updated": len(changes.updated),
                "unchanged": changes.unchanged,
                "incidents": [serialize_incident(incident) for incident in changes.changed],
            },
        )

    try:
        record = MissionRecord.model_validate(body)
    except ValidationError as e:
        return _validation_error(e)

    changes = await reconciler.upsert_records([record], partial=True)
    if changes.created:
        action, incident, status_code = "created", changes.created[0], 201
    elif changes.updated:
        action, incident, status_code = "updated", changes.updated[0], 200
    else:
        storage: DatabaseStorage = request.app.state.storage
        action, incident, status_code = "unchanged", await storage.get_incident(record.external_id), 200

    return JSONResponse(
        status_code=status_code,
        content={
            "action": action,
            "incident": serialize_incident(incident) if incident is not None else None,
        },
    )


# ========== System ==========

@router.get("/api/health", tags=["system"])
async def health_check(request: Request) -> dict[str, Any]:
    """Health check endpoint."""
    scheduler = request.app.state.scheduler
    return {
        "status": "healthy",
        "version": __version__,
        "subscribers": request.app.state.broadcaster.subscriber_count,
        "scheduler": scheduler.get_status() if scheduler is not None else None,
    }


def create_app(
    storage: DatabaseStorage,
    broadcaster: Broadcaster,
    reconciler: Reconciler,
    scheduler: Any = None,
    ingest_api_key: str | None = None,
) -> FastAPI:
    """
    Build the API around running pipeline components.

    Args:
        storage: Initialized storage
        broadcaster: Live update hub
        reconciler: Reconciler used by the ingest endpoint
        scheduler: Optional scheduler reported by the health check
        ingest_api_key: Required ``X-API-Key`` for ingest. Defaults to settings.
    """
    app = FastAPI(
        title="LSS Sync API",
        description="Live mission synchronization for Leitstellenspiel alliances",
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.state.storage = storage
    app.state.broadcaster = broadcaster
    app.state.reconciler = reconciler
    app.state.scheduler = scheduler
    app.state.ingest_api_key = (
        ingest_api_key if ingest_api_key is not None else settings.ingest_api_key
    )

    app.include_router(router)
    return app
