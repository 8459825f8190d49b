"""FastAPI application for IP What."""

# Configure logging FIRST before any other imports that might use structlog
from .logging import configure_logging
configure_logging()

import structlog
from fastapi import FastAPI, Query, Request, Body
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse, Response, PlainTextResponse
from pydantic import ValidationError

from .config import get_settings
from .db import get_db
from .metrics import get_metrics
from .middleware import CorrelationIDMiddleware, RequestLoggingMiddleware
from .models import HealthStatus, ComponentHealth
from .services import lifespan, AppState

log = structlog.get_logger()

settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    description="IPv4/IPv6 reachability monitor with history, change events and alerts",
    version=settings.version,
    lifespan=lifespan,
)

# Middleware (order matters - first added is outermost)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)
# Correlation ID (innermost - sets up context first)
app.add_middleware(CorrelationIDMiddleware)


def get_app_state(request: Request) -> AppState:
    """Get application state from request."""
    return request.state.state


def _validation_details(exc: ValidationError) -> list[dict]:
    return [
        {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
        for err in exc.errors(include_url=False)
    ]


# ============================================
# Health & Status Endpoints
# ============================================


@app.get("/health", response_model=HealthStatus)
async def health_check(request: Request) -> HealthStatus:
    """Health check endpoint for monitoring.

    Use /health/live for liveness probes and /health/ready for readiness probes.
    """
    state: AppState = get_app_state(request)
    db = get_db()
    stats = state.monitor.get_stats()

    components = []

    db_healthy = await db.is_connected()
    components.append(
        ComponentHealth(name="database", healthy=db_healthy, message="OK" if db_healthy else "Connection failed")
    )

    monitor_healthy = stats["is_running"]
    components.append(
        ComponentHealth(
            name="monitor",
            healthy=monitor_healthy,
            message=f"Cycles: {stats['cycle_count']}, failed: {stats['failed_cycles']}",
        )
    )

    all_healthy = all(c.healthy for c in components)
    some_healthy = any(c.healthy for c in components)

    if all_healthy:
        status = "healthy"
    elif some_healthy:
        status = "degraded"
    else:
        status = "unhealthy"

    return HealthStatus(
        status=status,
        uptime_seconds=state.uptime_seconds,
        version=settings.version,
        components=components,
        last_check=stats["last_check"],
        cycle_count=stats["cycle_count"],
        db_connected=db_healthy,
        details={"history_entries": stats["history_entries"], "events": stats["event_log_size"]},
    )


@app.get("/health/live")
async def liveness_probe() -> dict:
    """Liveness probe: 200 whenever the process answers."""
    return {"status": "alive"}


@app.get("/health/ready")
async def readiness_probe(request: Request) -> Response:
    """Readiness probe: 503 unless the database and monitor loop are up."""
    state: AppState = get_app_state(request)
    db = get_db()

    db_ready = await db.is_connected()
    monitor_ready = state.monitor.is_running()

    content = {
        "db": "connected" if db_ready else "disconnected",
        "monitor": "running" if monitor_ready else "stopped",
    }
    if db_ready and monitor_ready:
        return JSONResponse(status_code=200, content={"status": "ready", **content})
    return JSONResponse(status_code=503, content={"status": "not_ready", **content})


@app.get("/metrics")
async def metrics_endpoint(request: Request) -> PlainTextResponse:
    """Prometheus metrics in text format for scraping."""
    state: AppState = get_app_state(request)
    metrics = get_metrics()
    content = metrics.to_prometheus_format(app_state=state)
    return PlainTextResponse(content=content, media_type="text/plain; version=0.0.4; charset=utf-8")


@app.get("/api/stats")
async def get_stats(request: Request) -> dict:
    """Get monitor loop statistics."""
    state: AppState = get_app_state(request)
    return state.monitor.get_stats()


@app.get("/api/db-stats")
async def get_db_stats() -> dict:
    """Get database statistics."""
    db = get_db()
    return await db.get_stats()


# ============================================
# Connectivity Endpoints
# ============================================


@app.get("/api/status")
async def get_status(request: Request) -> dict:
    """Current reachability status of both families."""
    state: AppState = get_app_state(request)
    return state.monitor.get_status().model_dump(mode="json")


@app.get("/api/history")
async def get_history(
    request: Request,
    since: int | None = Query(None, description="Only entries at or after this epoch-ms timestamp", ge=0),
) -> dict:
    """History entries plus the connectivity event log."""
    state: AppState = get_app_state(request)
    history = state.monitor.get_history(since=since)
    entries = [e.model_dump(mode="json") for e in history["entries"]]
    return {
        "since": since,
        "count": len(entries),
        "entries": entries,
        "events": [e.model_dump(mode="json") for e in history["events"]],
    }


@app.delete("/api/history")
async def clear_history(request: Request) -> dict:
    """Empty history and events. The current status is kept."""
    state: AppState = get_app_state(request)
    await state.monitor.clear_history()
    return {"status": "cleared"}


@app.post("/api/check")
async def check_now(request: Request) -> dict:
    """Run a monitoring cycle now, or join the one in progress."""
    state: AppState = get_app_state(request)
    status = await state.monitor.check_now()
    return status.model_dump(mode="json")


# ============================================
# Settings Endpoints
# ============================================


@app.get("/api/settings")
async def get_monitor_settings(request: Request) -> dict:
    """Current monitor settings (stored values over defaults)."""
    state: AppState = get_app_state(request)
    current = await state.monitor.settings_service.get()
    return current.model_dump()


@app.put("/api/settings")
async def update_monitor_settings(request: Request, updates: dict = Body(...)) -> Response:
    """Merge-update monitor settings and trigger a cycle with them."""
    state: AppState = get_app_state(request)
    try:
        updated = await state.monitor.settings_service.update(updates)
    except ValidationError as e:
        return JSONResponse(
            status_code=422,
            content={"error": "Invalid settings", "detail": _validation_details(e)},
        )
    except ValueError as e:
        return JSONResponse(status_code=422, content={"error": "Invalid settings", "detail": str(e)})

    state.monitor.request_cycle()
    return JSONResponse(content=updated.model_dump())


# ============================================
# Error Handlers
# ============================================


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    log.error("unhandled_exception", error=str(exc), path=request.url.path)

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc) if settings.debug else None},
    )


# ============================================
# Alerts Endpoints
# ============================================


@app.get("/api/alerts")
async def get_alerts(
    request: Request,
    limit: int = Query(100, description="Number of alerts to return", ge=1, le=1000),
) -> dict:
    """Recent aggregate connectivity alerts, newest first."""
    state: AppState = get_app_state(request)
    alerts = state.monitor.notifier.get_history(limit=limit)
    return {"count": len(alerts), "alerts": [a.model_dump(mode="json") for a in alerts]}


@app.get("/api/alerts/stream")
async def alert_stream(request: Request) -> StreamingResponse:
    """Server-Sent Events stream for real-time connectivity alerts."""
    state: AppState = get_app_state(request)
    notifier = state.monitor.notifier
    subscriber = notifier.subscribe_sse()

    async def event_generator():
        try:
            yield "event: connected\ndata: {}\n\n"
            while True:
                message = await subscriber.get_message(timeout=15.0)
                if message is None:
                    yield ": keepalive\n\n"
                else:
                    yield message
        finally:
            notifier.unsubscribe_sse(subscriber)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
