import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kars.db import Base, SessionLocal, engine
from kars.errors import ApiError, error_response
from kars.logging_utils import request_id_var, setup_json_logging
from kars.routers import admin, assets, attestation, audit, auth, companies, reports
from kars.services.assets import seed_asset_types
from kars.services.attestation_scheduler import run_scheduled_tasks
from kars.services.email_templates import seed_email_templates
from kars.services.rate_limit import RequestRateLimiter, load_rate_limit_config
from kars.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from kars.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("kars.request")
scheduler_logger = logging.getLogger("kars.scheduler")


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "anonymous")
    request.state.actor_id = getattr(request.state, "actor_id", None)
    token = request_id_var.set(request_id)

    start = time.perf_counter()
    status_code = 500
    try:
        limiter: RequestRateLimiter | None = getattr(request.app.state, "rate_limiter", None)
        rejection = limiter.check(request) if limiter is not None else None
        if rejection is not None:
            response = error_response(
                request,
                status_code=429,
                code="TOO_MANY_REQUESTS",
                message=rejection["message"],
            )
            response.headers["Retry-After"] = str(rejection["retry_after"])
        else:
            response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "anonymous"),
                "actor_id": getattr(request.state, "actor_id", None),
            },
        )
        request_id_var.reset(token)


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        409: "CONFLICT",
        429: "TOO_MANY_REQUESTS",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(auth.router)
app.include_router(assets.router)
app.include_router(companies.router)
app.include_router(attestation.router)
app.include_router(audit.router)
app.include_router(reports.router)
app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


def _prepare_database() -> SchemaGuardResult:
    if settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)
    result = verify_runtime_schema(engine, require_alembic=not settings.auto_create_schema)
    if result.ok:
        with SessionLocal() as db:
            seed_email_templates(db)
            seed_asset_types(db)
    return result


def _build_rate_limiter() -> RequestRateLimiter:
    with SessionLocal() as db:
        return RequestRateLimiter(load_rate_limit_config(db))


async def _attestation_scheduler_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(60, int(settings.attestation_scheduler_interval_seconds))
    while not stop_event.is_set():
        try:
            summary = await asyncio.to_thread(run_scheduled_tasks)
        except Exception:
            scheduler_logger.exception("attestation_scheduler_tick_failed")
        else:
            if any(summary.values()):
                scheduler_logger.info("attestation_scheduler_tick", extra=summary)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(_prepare_database)
    app.state.schema_guard_result = result
    if result.ok:
        logger.info("schema_guard_ok", extra=result.to_dict())
        app.state.rate_limiter = await asyncio.to_thread(_build_rate_limiter)
        return

    logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_attestation_scheduler() -> None:
    if not settings.attestation_scheduler_enabled:
        return
    if getattr(app.state, "attestation_scheduler_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_attestation_scheduler_loop(stop_event))
    app.state.attestation_scheduler_stop_event = stop_event
    app.state.attestation_scheduler_task = task
    scheduler_logger.info(
        "attestation_scheduler_started",
        extra={"interval_seconds": max(60, int(settings.attestation_scheduler_interval_seconds))},
    )


@app.on_event("shutdown")
async def stop_attestation_scheduler() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "attestation_scheduler_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "attestation_scheduler_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.attestation_scheduler_stop_event = None
    app.state.attestation_scheduler_task = None


@app.get("/api/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    return {
        "status": "ok",
        "version": app.version,
        "schema_guard": schema_guard_result.to_dict(),
        "scheduler_enabled": settings.attestation_scheduler_enabled,
    }
