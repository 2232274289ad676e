"""FastAPI application entry point."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from katanaci import __version__
from katanaci.adapters.docker import DockerContainerEngine
from katanaci.app.api.dependencies import AppServices, build_services
from katanaci.app.api.instances import router as instances_router
from katanaci.app.config import get_settings
from katanaci.app.logging import setup_logging
from katanaci.app.metrics import get_metrics_response
from katanaci.app.metrics.collector import INSTANCES_LIVE
from katanaci.app.middleware import LoggingMiddleware
from katanaci.app.proxy.client import close_http_client
from katanaci.app.proxy.router import router as proxy_router
from katanaci.core.errors import InternalError, InvalidArgumentError, KatanaCIError
from katanaci.core.interfaces import EngineError
from katanaci.core.logging_schema import LogEvent
from katanaci.infra.database import check_db, close_db, get_session_factory, init_db
from katanaci.infra.docker import close_docker
from katanaci.services.reconciler import Reconciler
from katanaci.services.seed import seed_tenants

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()

    await init_db(
        settings.database.url,
        echo=settings.database.echo,
        busy_timeout_ms=settings.database.busy_timeout_ms,
    )

    engine = DockerContainerEngine()
    services = build_services(settings, get_session_factory(), engine)
    app.state.services = services

    if settings.tenants.seed_file:
        await seed_tenants(services.credentials, settings.tenants.seed_file)
    else:
        logger.warning("No tenant seed file configured, skipping tenant seeding")

    try:
        await engine.ping()
    except EngineError as e:
        logger.warning("Container engine not reachable at startup: %s", e)

    INSTANCES_LIVE.set(len(await services.registry.list_all()))

    reconcile_task: asyncio.Task | None = None
    if settings.reconcile.enabled:
        reconciler = Reconciler(
            services.registry,
            services.lifecycle,
            engine,
            label=settings.docker.label,
            interval=settings.reconcile.interval,
            grace_seconds=settings.reconcile.grace_seconds,
        )
        reconcile_task = asyncio.create_task(reconciler.run())

    logger.info(
        "Starting application",
        extra={"event": LogEvent.APP_STARTED, "image": settings.docker.image},
    )

    yield

    logger.info("Shutting down application", extra={"event": LogEvent.APP_STOPPED})
    if reconcile_task is not None:
        reconcile_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reconcile_task

    await close_http_client()
    await close_docker()
    await close_db()


app = FastAPI(title="katana-ci", version=__version__, lifespan=lifespan)
app.add_middleware(LoggingMiddleware)

# CORS middleware (outermost, so preflights never reach auth)
_cors = get_settings().cors
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors.allow_origins,
    allow_credentials=_cors.allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(KatanaCIError)
async def katanaci_error_handler(request: Request, exc: KatanaCIError) -> JSONResponse:
    """Handle KatanaCIError exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render malformed query parameters as INVALID_ARGUMENT (400)."""
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'][1:]) or 'request'}: {err['msg']}"
        for err in exc.errors()
    )
    return await katanaci_error_handler(request, InvalidArgumentError(details))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error on %s %s",
        request.method,
        request.url.path,
        extra={"event": LogEvent.REQUEST_FAILED, "error_type": type(exc).__name__},
    )
    return await katanaci_error_handler(request, InternalError())


@app.get("/health")
async def health(services: AppServices):
    async def check(fn) -> str:
        try:
            await fn()
            return "connected"
        except Exception as e:
            return f"error: {e}"

    database, engine = await asyncio.gather(check(check_db), check(services.engine.ping))
    checks = {"database": database, "docker": engine}
    is_degraded = any(s != "connected" for s in checks.values())

    return {
        "status": "degraded" if is_degraded else "ok",
        "version": __version__,
        "services": checks,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint."""
    if not get_settings().metrics.enabled:
        return JSONResponse(status_code=404, content={"detail": "Not Found"})
    return get_metrics_response()


# Lifecycle routes first: /{name} proxy routes would shadow them otherwise
app.include_router(instances_router)
app.include_router(proxy_router)


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "katanaci.app.main:app",
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,
    )
