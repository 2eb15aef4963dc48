import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from driftwatch.api.router import api_router
from driftwatch.core.config import get_settings
from driftwatch.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from driftwatch.services.backlog import get_backlog_engine
from driftwatch.services.models import UnknownStatusError
from driftwatch.services.repository import get_repository
from driftwatch.services.workflow import get_workflow_router

logger = logging.getLogger(__name__)

configure_logging()
settings = get_settings()


@asynccontextmanager
async def lifespan(application: FastAPI):
    logger.info("api starting app=%s environment=%s", settings.app_name, settings.environment)
    try:
        yield
    finally:
        shutdown_telemetry(application.state.telemetry)
        await get_repository().close()
        for factory in (get_workflow_router, get_backlog_engine, get_repository):
            factory.cache_clear()
        logger.info("api stopped app=%s", settings.app_name)


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.telemetry = setup_telemetry(settings, service_name=settings.app_name, app=app)


@app.exception_handler(UnknownStatusError)
async def unknown_status_handler(request: Request, exc: UnknownStatusError) -> JSONResponse:
    # raised here only when stored text no longer maps onto a closed enum
    logger.error("unreadable stored status path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "stored record has an unknown status"})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started_at) * 1000.0,
    )
    return response


app.include_router(api_router)
