import asyncio
from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from stacksignal.api.router import api_router
from stacksignal.core.config import Settings, get_settings
from stacksignal.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from stacksignal.services.container import ServiceContainer, build_services
from stacksignal.worker.main import run_worker

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, services: ServiceContainer | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop_event = asyncio.Event()
        worker_task: asyncio.Task[None] | None = None
        if settings.worker_enabled:
            worker_task = asyncio.create_task(run_worker(services, settings, stop_event=stop_event))
        try:
            yield
        finally:
            if worker_task is not None:
                stop_event.set()
                services.processor.request_stop()
                await worker_task
            shutdown_telemetry(app.state.telemetry)
            await services.close()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services
    app.state.telemetry = setup_telemetry(settings, app)

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
