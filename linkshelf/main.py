from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from linkshelf.api.router import api_router
from linkshelf.core.config import get_settings
from linkshelf.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from linkshelf.services.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    settings = runtime.settings if runtime is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        telemetry_runtime = setup_telemetry(settings, service_suffix="api")
        active = runtime or build_runtime(settings)
        app.state.runtime = active
        await active.start()
        try:
            yield
        finally:
            # Stops the scheduler before the store pool goes away.
            await active.stop()
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
    return app


app = create_app()
