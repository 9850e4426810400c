"""FastAPI application entrypoint for SocialFlow."""

from __future__ import annotations

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from socialflow.approvals.router import router as approvals_router
from socialflow.approvals.router import workflows_router
from socialflow.auth.middleware import AUTH_CONTEXT_KEY, resolve_request_auth_context
from socialflow.auth.router import router as auth_router
from socialflow.core.config import get_settings
from socialflow.core.errors import RateLimitedError, ServiceError
from socialflow.core.logger import bind_request_context, clear_request_context, get_logger
from socialflow.core.metrics import record_http_request, record_rate_limit_block, render_prometheus_metrics
from socialflow.core.observability import capture_exception, init_sentry, sentry_scope
from socialflow.core.rate_limit import RateLimitDecision, get_ip_rate_limiter
from socialflow.permissions.router import custom_roles_router, role_defaults_router
from socialflow.permissions.router import router as permissions_router
from socialflow.posts.router import router as posts_router
from socialflow.storage.db import load_models
from socialflow.storage.db import test_connection as test_db_connection
from socialflow.storage.redis_client import test_connection as test_redis_connection
from socialflow.teams.router import invitations_router
from socialflow.teams.router import router as teams_router


settings = get_settings()
logger = get_logger("socialflow.api")

app = FastAPI(title=settings.app_name, version=settings.app_version)


def _resolve_client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _apply_rate_limit_headers(response: Response, decision: RateLimitDecision) -> None:
    response.headers["x-rate-limit-limit"] = str(decision.limit)
    response.headers["x-rate-limit-remaining"] = str(decision.remaining)
    response.headers["x-rate-limit-reset"] = str(decision.reset_seconds)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        capture_exception(exc)
        logger.error("service_error", code=exc.code, path=request.url.path, error=exc.message)
    else:
        logger.info("request_rejected", code=exc.code, path=request.url.path, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started_at = perf_counter()
    request_id = request.headers.get("x-request-id", str(uuid4()))
    auth_context = resolve_request_auth_context(request)
    setattr(request.state, AUTH_CONTEXT_KEY, auth_context)

    team_id = auth_context.team_id if auth_context is not None else None
    user_id = auth_context.user_id if auth_context is not None else None
    bind_request_context(request_id=request_id, team_id=team_id, user_id=user_id)

    response = None
    decision = None
    status_code = 500
    try:
        with sentry_scope(team_id=team_id, request_id=request_id):
            if settings.ip_rate_limit_enabled:
                decision = get_ip_rate_limiter().check(ip=_resolve_client_ip(request))
            if decision is not None and not decision.allowed:
                record_rate_limit_block(kind="ip")
                logger.warning("rate_limit_exceeded", path=request.url.path, limit=decision.limit)
                error = RateLimitedError(
                    "Rate limit exceeded",
                    details={
                        "limit": decision.limit,
                        "remaining": decision.remaining,
                        "reset_seconds": decision.reset_seconds,
                    },
                )
                response = JSONResponse(status_code=error.status_code, content=error.to_payload())
            else:
                response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        duration = perf_counter() - started_at
        if settings.metrics_enabled:
            record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=duration,
            )
        clear_request_context()

    if decision is not None:
        _apply_rate_limit_headers(response, decision)
    response.headers["x-request-id"] = request_id
    return response


@app.on_event("startup")
def on_startup() -> None:
    load_models()
    sentry_enabled = init_sentry()
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        sentry_enabled=sentry_enabled,
        metrics_enabled=settings.metrics_enabled,
        ip_rate_limit_enabled=settings.ip_rate_limit_enabled,
    )


@app.get("/health")
def health() -> JSONResponse:
    db_ok, db_error = test_db_connection()
    redis_ok, redis_error = test_redis_connection()

    healthy = db_ok and redis_ok
    payload = {
        "status": "ok" if healthy else "degraded",
        "env": settings.env,
        "services": {
            "database": {"ok": db_ok, "error": db_error},
            "redis": {"ok": redis_ok, "error": redis_error},
        },
    }
    return JSONResponse(content=payload, status_code=200 if healthy else 503)


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "env": settings.env,
    }


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)

    payload = render_prometheus_metrics(
        app_name=settings.app_name,
        app_version=settings.app_version,
        env=settings.env,
    )
    return PlainTextResponse(
        payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(auth_router)
app.include_router(teams_router)
app.include_router(invitations_router)
app.include_router(permissions_router)
app.include_router(custom_roles_router)
app.include_router(role_defaults_router)
app.include_router(posts_router)
app.include_router(workflows_router)
app.include_router(approvals_router)
