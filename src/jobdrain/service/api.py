"""FastAPI operator API for queue inspection and scheduling."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from jobdrain.exceptions import QueueError
from jobdrain.logging import configure_logging
from jobdrain.providers.postgres import is_postgres_healthy
from jobdrain.queue import InspectsJobs, JobRecord, error_detail
from jobdrain.service.config import settings
from jobdrain.service.container import QueueSystem, get_queue_system
from jobdrain.service.db_migrations import run_queue_migrations
from jobdrain.triggers import get_redis_connection

logger = logging.getLogger(__name__)


class TerminateLifecycleMiddleware:
    """Run deferred queue callbacks once each HTTP response has been sent."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        system: QueueSystem | None = None
        if scope["type"] == "http":
            system = getattr(scope["app"].state, "queue_system", None)
        if system is None:
            await self.app(scope, receive, send)
            return

        lifecycle = system.lifecycle
        token = lifecycle.begin()
        try:
            await self.app(scope, receive, send)
        finally:
            try:
                if lifecycle.pending:
                    await asyncio.to_thread(lifecycle.terminate)
            finally:
                lifecycle.end(token)


def _is_authorized(request: Request) -> bool:
    """Validate shared API secret."""
    if not settings.api_shared_secret:
        logger.error("Rejecting request: API_SHARED_SECRET is not configured")
        return False

    provided_secret = request.headers.get("X-API-Secret", "")
    return secrets.compare_digest(provided_secret, settings.api_shared_secret)


def _record_payload(record: JobRecord) -> dict[str, Any]:
    return {
        "job_id": record.id,
        "queue": record.queue,
        "type": record.job_type,
        "status": record.status.value,
        "attempts": record.attempts,
        "available_at": record.available_at.isoformat(),
        "locked_until": (
            record.lease.locked_until.isoformat() if record.lease.locked_until else None
        ),
        "failed": record.lease.failed,
        "last_error": record.last_error,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
    }


def _inspector(request: Request) -> InspectsJobs | None:
    system: QueueSystem = request.app.state.queue_system
    provider = system.manager.get_provider()
    return provider if isinstance(provider, InspectsJobs) else None


@asynccontextmanager
async def _lifespan(app: FastAPI) -> Any:
    await asyncio.to_thread(run_queue_migrations)

    app.state.redis_conn = get_redis_connection(settings)
    app.state.queue_system = get_queue_system()

    try:
        yield
    finally:
        with contextlib.suppress(Exception):
            app.state.redis_conn.close()


async def health_handler(request: Request) -> JSONResponse:
    """Simple health endpoint."""
    redis_conn = request.app.state.redis_conn

    try:
        redis_ok = bool(await asyncio.to_thread(redis_conn.ping))
    except Exception:
        redis_ok = False

    postgres_ok = await asyncio.to_thread(is_postgres_healthy, settings)

    payload = {
        "status": "healthy" if redis_ok and postgres_ok else "degraded",
        "redis_connected": redis_ok,
        "postgres_connected": postgres_ok,
        "queues": settings.queue_names,
    }
    return JSONResponse(payload, status_code=200 if redis_ok and postgres_ok else 503)


async def queue_status_handler(request: Request, queue: str) -> JSONResponse:
    """Return backlog size and registered trigger count for one queue."""
    if not _is_authorized(request):
        return JSONResponse({"error": "unauthorized"}, status_code=401)

    system: QueueSystem = request.app.state.queue_system
    try:
        provider = system.manager.get_provider()
        pending = await asyncio.to_thread(provider.pending_count, queue)
        scheduled = await asyncio.to_thread(system.scheduler.scheduled_count, queue)
    except QueueError as exc:
        logger.error("Queue status failed queue=%s: %s", queue, error_detail(exc))
        return JSONResponse({"error": "queue_unavailable"}, status_code=503)

    return JSONResponse(
        {
            "queue": queue,
            "pending": pending,
            "scheduled_batches": scheduled,
            "batch_size": system.scheduler.option("batch_size", queue),
            "max_concurrent_batches": system.scheduler.option(
                "max_concurrent_batches", queue
            ),
        }
    )


async def schedule_queue_handler(request: Request, queue: str) -> JSONResponse:
    """Run the sizing step for one queue now."""
    if not _is_authorized(request):
        return JSONResponse({"error": "unauthorized"}, status_code=401)

    system: QueueSystem = request.app.state.queue_system
    scheduled = await asyncio.to_thread(system.scheduler.schedule_next_run, queue)
    count = await asyncio.to_thread(system.scheduler.scheduled_count, queue)
    logger.info("Manual schedule queue=%s added=%s", queue, scheduled)
    return JSONResponse(
        {"queue": queue, "scheduled": scheduled, "scheduled_batches": count},
        status_code=202,
    )


async def failed_jobs_handler(
    request: Request,
    queue: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
) -> JSONResponse:
    """List retained failed jobs."""
    if not _is_authorized(request):
        return JSONResponse({"error": "unauthorized"}, status_code=401)

    inspector = _inspector(request)
    if inspector is None:
        return JSONResponse({"error": "inspection_unsupported"}, status_code=501)

    records = await asyncio.to_thread(inspector.failed_jobs, queue, limit)
    return JSONResponse({"jobs": [_record_payload(record) for record in records]})


async def job_status_handler(request: Request, job_id: str) -> JSONResponse:
    """Return the persisted state of one job."""
    if not _is_authorized(request):
        return JSONResponse({"error": "unauthorized"}, status_code=401)

    normalized_job_id = job_id.strip()
    if not normalized_job_id:
        return JSONResponse({"error": "job_id_required"}, status_code=400)

    inspector = _inspector(request)
    if inspector is None:
        return JSONResponse({"error": "inspection_unsupported"}, status_code=501)

    record = await asyncio.to_thread(inspector.find, normalized_job_id)
    if record is None:
        return JSONResponse({"error": "job_not_found"}, status_code=404)
    return JSONResponse(_record_payload(record))


async def retry_job_handler(request: Request, job_id: str) -> JSONResponse:
    """Put a failed job back on its queue and schedule a drain."""
    if not _is_authorized(request):
        return JSONResponse({"error": "unauthorized"}, status_code=401)

    inspector = _inspector(request)
    if inspector is None:
        return JSONResponse({"error": "inspection_unsupported"}, status_code=501)

    record = await asyncio.to_thread(inspector.retry, job_id.strip())
    if record is None:
        return JSONResponse({"error": "failed_job_not_found"}, status_code=404)

    system: QueueSystem = request.app.state.queue_system
    await asyncio.to_thread(system.scheduler.schedule_next_run, record.queue)
    logger.info("Retried job_id=%s queue=%s", record.id, record.queue)
    return JSONResponse(
        {"status": "queued", "job_id": record.id, "queue": record.queue},
        status_code=202,
    )


async def forget_job_handler(request: Request, job_id: str) -> JSONResponse:
    """Delete a retained job record."""
    if not _is_authorized(request):
        return JSONResponse({"error": "unauthorized"}, status_code=401)

    inspector = _inspector(request)
    if inspector is None:
        return JSONResponse({"error": "inspection_unsupported"}, status_code=501)

    removed = await asyncio.to_thread(inspector.forget, job_id.strip())
    if not removed:
        return JSONResponse({"error": "job_not_found"}, status_code=404)
    return JSONResponse({"status": "deleted", "job_id": job_id.strip()})


def create_app(*, run_lifespan: bool = True) -> FastAPI:
    """Create configured FastAPI app."""
    app = FastAPI(
        title="jobdrain operator API",
        version="0.1.0",
        lifespan=_lifespan if run_lifespan else None,
    )
    app.add_middleware(TerminateLifecycleMiddleware)

    app.add_api_route("/", health_handler, methods=["GET"])
    app.add_api_route("/health", health_handler, methods=["GET"])

    app.add_api_route("/queues/{queue}", queue_status_handler, methods=["GET"])
    app.add_api_route(
        "/queues/{queue}/schedule", schedule_queue_handler, methods=["POST"]
    )

    app.add_api_route("/jobs/failed", failed_jobs_handler, methods=["GET"])
    app.add_api_route("/jobs/{job_id}", job_status_handler, methods=["GET"])
    app.add_api_route("/jobs/{job_id}/retry", retry_job_handler, methods=["POST"])
    app.add_api_route("/jobs/{job_id}", forget_job_handler, methods=["DELETE"])

    return app


def run() -> None:
    """Entrypoint for the operator API service."""
    configure_logging(settings.log_level)
    uvicorn.run(
        create_app(),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
