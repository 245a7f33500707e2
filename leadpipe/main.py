from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from leadpipe.api.router import api_router
from leadpipe.core.config import get_settings
from leadpipe.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from leadpipe.pipeline import Pipeline
from leadpipe.services.repository import get_repository

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    current = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(current)
    pipeline = Pipeline.build(current)
    app.state.pipeline = pipeline
    if current.embedded_workers:
        await pipeline.start()
    try:
        yield
    finally:
        await pipeline.shutdown()
        app.state.pipeline = None
        get_repository.cache_clear()
        shutdown_telemetry(telemetry_runtime)


app = FastAPI(title=settings.app_name, lifespan=lifespan)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
