from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter
from typing import AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from app.config import (
    DEFAULT_AUTH_SECRET_KEY,
    DEFAULT_CREDENTIAL_ENCRYPTION_KEY,
    get_settings,
)
from app.deploy_queue import get_deploy_queue
from app.logger import configure_logging, get_logger
from app.metrics import observe_http_request
from app.routes import (
    auth,
    credentials,
    deployments,
    domains,
    events,
    services,
    system,
    webhook,
)
from app.security import SESSION_COOKIE_NAME, decode_session_token

settings = get_settings()
configure_logging(settings.log_level, settings.log_file)
logger = get_logger("api")

_PUBLIC_PATHS = {"/health", "/version", "/metrics", "/auth/token", "/auth/logout"}
_PUBLIC_PREFIXES = ("/webhook/",)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("app.startup", "Starting app", env=settings.app_env, version=settings.app_version)
    if settings.app_env.strip().lower() not in {"prod", "production"}:
        if settings.auth_secret_key == DEFAULT_AUTH_SECRET_KEY:
            logger.warning(
                "security.defaults",
                "AUTH_SECRET_KEY is using a default placeholder; set a unique secret before production",
            )
        if settings.credential_encryption_key == DEFAULT_CREDENTIAL_ENCRYPTION_KEY:
            logger.warning(
                "security.defaults",
                "CREDENTIAL_ENCRYPTION_KEY is using a default placeholder; stored tokens are not protected",
            )
        if not settings.auth_cookie_secure:
            logger.warning(
                "security.cookies",
                "AUTH_COOKIE_SECURE is disabled; enable it when serving over HTTPS",
            )
    if not settings.server_ip:
        logger.warning("domains.server_ip", "SERVER_IP is not set; DNS verification is unavailable")

    queue = get_deploy_queue()
    await queue.start()
    if settings.autostart_enabled:
        jobs = await queue.enqueue_autostart()
        logger.info("app.autostart", "Queued autostart jobs", count=len(jobs))
    yield
    await queue.stop()
    logger.info("app.shutdown", "Shutting down app")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


def _session_token(request: Request) -> str:
    authorization = request.headers.get("authorization", "")
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return request.cookies.get(SESSION_COOKIE_NAME) or ""


@app.middleware("http")
async def auth_guard(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    path = request.url.path
    username = decode_session_token(_session_token(request), settings.auth_secret_key)
    if username:
        request.state.auth_user = username

    if path in _PUBLIC_PATHS or path.startswith(_PUBLIC_PREFIXES):
        return await call_next(request)

    if username:
        return await call_next(request)

    return JSONResponse(status_code=401, content={"detail": "Authentication required"})


@app.middleware("http")
async def request_logging(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = request.headers.get("x-request-id") or str(uuid4())
    client: Optional[str] = None
    if request.client:
        client = request.client.host

    start = perf_counter()
    with logger.context(request_id=request_id):
        logger.info(
            "request.start",
            "Started",
            method=request.method,
            path=request.url.path,
            client=client,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (perf_counter() - start) * 1000
            logger.exception(
                "request.error",
                "Failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 1),
                error_type=type(exc).__name__,
            )
            raise

        duration = perf_counter() - start
        route = request.scope.get("route")
        observe_http_request(
            method=request.method,
            path=getattr(route, "path", "unmatched"),
            status=response.status_code,
            duration_seconds=duration,
        )
        logger.info(
            "request.complete",
            "Completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 1),
        )

    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(system.router)
app.include_router(auth.router)
app.include_router(services.router)
app.include_router(domains.router)
app.include_router(credentials.router)
app.include_router(deployments.router)
app.include_router(webhook.router)
app.include_router(events.router)
