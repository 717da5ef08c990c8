# main.py
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from datetime import datetime, timezone
from pydantic import BaseModel, Field
from typing import Any, Optional
from contextlib import asynccontextmanager

from common.config import AppConfig, is_configured
from common.logger import get_app_logger
from common.logger.logger_middleware import RequestLoggingMiddleware
from common.api_error import ConfigurationError, AppError
from common.retry import Clock, SystemClock
from app.db import DbManager
from app.auth import CredentialMiddleware, CredentialResolver, DbSessionLookup
from app.clients import DailyClient, StripePaymentClient
from app.services.v1 import RoomProvisioner
from app.api.v1 import appointment_router, auth_router

logger = get_app_logger(name=__name__)

_HTTP_ERROR_CODES = {
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
}


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def error_body(code: str, message: str, details: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {
        "error": code,
        "message": message,
        "timestamp": _now(),
    }
    if details is not None:
        body["details"] = details
    return body


class HealthCheckResponse(BaseModel):
    status: str = Field(..., description="Current system health status")
    timestamp: datetime = Field(..., description="Server time in ISO 8601 format")
    version: str = Field(..., description="Application version")
    environment: str = Field(..., description="Deployment environment")
    logging_configured: bool = Field(..., description="Logging configuration status")
    database: dict[str, Any] = Field(..., description="Database health check result")


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable description")
    timestamp: datetime = Field(..., description="Server time when the error occurred")


def create_app(
    config: AppConfig,
    *,
    db_manager: Optional[DbManager] = None,
    video_client: Optional[DailyClient] = None,
    payment_client: Optional[StripePaymentClient] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """
    Build the application.

    Long-lived services (database, provider clients, provisioner,
    credential resolver) are constructed in the lifespan and kept on
    ``app.state``. Anything passed in is used as-is and left open on
    shutdown; tests inject fakes this way.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_db = db_manager is None
        if owns_db:
            if not config.database:
                raise RuntimeError("Database configuration required")
            manager = DbManager.from_config(config.database)
        else:
            manager = db_manager

        await manager.verify_connection()

        if owns_db:
            # Ensure migrations are up-to-date (fail fast if not)
            try:
                await manager.verify_migrations_current()
                logger.info("All migrations applied")
            except RuntimeError as e:
                logger.error("Migration check failed", error=str(e))
                logger.error("Run 'alembic upgrade head'")
                raise

        video = video_client or DailyClient(config.video)
        payments = payment_client or StripePaymentClient(config.payment)
        app_clock = clock or SystemClock()

        if not config.video.api_key_value:
            logger.warning("DAILY_API_KEY not set; joins will fail until configured")

        app.state.db_manager = manager
        app.state.video_client = video
        app.state.payment_client = payments
        app.state.clock = app_clock
        app.state.room_provisioner = RoomProvisioner(video, config.video, app_clock)
        app.state.credential_resolver = CredentialResolver(
            config.auth, DbSessionLookup(manager)
        )

        logger.info(
            "Application started",
            environment=config.environment.value,
            version=config.app_version,
        )
        yield
        logger.info("shutting down")

        if video_client is None:
            await video.aclose()
        if payment_client is None:
            await payments.aclose()
        if owns_db:
            await manager.dispose()

    app = FastAPI(
        title=config.app_title,
        version=config.app_version,
        description=f"Running in {config.environment} environment",
        lifespan=lifespan,
    )

    # Added last = outermost: the request logger sees the resolved identity
    app.add_middleware(CredentialMiddleware)
    app.add_middleware(
        RequestLoggingMiddleware,
        expose_performance_headers=not config.environment.is_production,
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"Domain Error: {exc.code}",
            path=request.url.path,
            error_code=exc.code,
            message=exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.code, exc.message, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in error["loc"]),
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
        logger.warning("Request validation failed", path=request.url.path, errors=details)
        return JSONResponse(
            status_code=400,
            content=error_body("VALIDATION_ERROR", "Invalid request", details),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(
                _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
                str(exc.detail),
            ),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        logger.critical("Configuration error", path=request.url.path, error=str(exc))
        message = (
            str(exc) if config.environment.is_development else "Service misconfigured"
        )
        return JSONResponse(
            status_code=500,
            content=error_body("CONFIGURATION_ERROR", message),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        # exc_info=True will show full traceback with Rich formatting
        logger.critical(
            "Unhandled error",
            exc_info=exc,
            path=request.url.path,
            error_type=type(exc).__name__,
        )
        message = (
            f"{type(exc).__name__}: {exc}"
            if config.environment.is_development
            else "Internal server error"
        )
        return JSONResponse(
            status_code=500,
            content=error_body("INTERNAL_ERROR", message),
        )

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        responses={
            200: {"description": "System is healthy", "model": HealthCheckResponse},
            503: {"description": "Database unreachable", "model": ErrorResponse},
        },
    )
    async def check_health(request: Request):
        database = await request.app.state.db_manager.health_check()
        if not database.get("healthy"):
            logger.error("Health check failed", endpoint="/health", database=database)
            return JSONResponse(
                status_code=503,
                content=error_body("UNHEALTHY", "Database unreachable", database),
            )

        return HealthCheckResponse(
            status="Healthy",
            timestamp=datetime.now(tz=timezone.utc),
            version=config.app_version,
            environment=config.environment.value,
            logging_configured=is_configured(),
            database=database,
        )

    app.include_router(auth_router)
    app.include_router(appointment_router)
    return app


__all__ = ["create_app", "error_body"]
