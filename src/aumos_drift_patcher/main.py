"""AumOS Drift Patcher service entry point.

Creates the FastAPI application with lifespan management for the database
schema, the Kafka notification sink and the monitoring scheduler.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from aumos_drift_patcher.api.router import router
from aumos_drift_patcher.container import ServiceContainer, build_container
from aumos_drift_patcher.errors import DriftPatcherError, ErrorCode
from aumos_drift_patcher.observability import configure_logging, get_logger
from aumos_drift_patcher.settings import Settings

logger = get_logger(__name__)

VERSION = "0.1.0"

_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.OPERATION_IN_PROGRESS: 409,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.COMPUTATION_FAILED: 422,
    ErrorCode.STORE_UNAVAILABLE: 503,
}


async def _handle_patcher_error(request: Request, exc: DriftPatcherError) -> JSONResponse:
    status_code = _STATUS_BY_CODE.get(exc.error_code, 500)
    if status_code >= 500:
        logger.error("Request failed", path=request.url.path, **exc.to_dict())
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(settings: Settings | None = None, container: ServiceContainer | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Service configuration; read from the environment when omitted.
        container: Prebuilt services; built from ``settings`` when omitted.

    Returns:
        The configured FastAPI application.
    """
    settings = settings or (container.settings if container is not None else Settings())
    configure_logging(settings.log_level, settings.json_logs)
    container = container or build_container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage application startup and shutdown lifecycle.

        Args:
            app: The FastAPI application instance.

        Yields:
            None
        """
        logger.info("Starting AumOS Drift Patcher", version=VERSION)
        await container.startup()
        logger.info("Drift Patcher startup complete")
        yield
        await container.shutdown()
        logger.info("Drift Patcher shutdown complete")

    app = FastAPI(title="AumOS Drift Patcher", version=VERSION, lifespan=lifespan)
    app.state.container = container
    app.add_exception_handler(DriftPatcherError, _handle_patcher_error)

    @app.get("/health", tags=["Health"])
    async def health() -> dict:
        return {
            "status": "ok",
            "service": settings.service_name,
            "scheduler_running": container.scheduler.is_running,
        }

    app.include_router(router, prefix="/api/v1")
    return app


app: FastAPI = create_app()
