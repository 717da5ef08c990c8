# common/logger/logger_middleware/logger_middleware.py
"""
One structured log line per HTTP request.

Each line carries method, path, status, duration, the resolved user (never
the raw credential) and the time spent in the video and payment providers.

    app.add_middleware(CredentialMiddleware)
    app.add_middleware(RequestLoggingMiddleware, expose_performance_headers=True)
"""

import time
import uuid
from typing import Awaitable, Callable, Optional

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from common.context_vars import request_timer_context_var
from ..logger import get_app_logger
from .middleware_types import (
    PerformanceBreakdown,
    RequestDetails,
    RequestLogEntry,
    RequestMetadata,
)
from .request_timer import RequestTimer

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Stateless; the per-request RequestTimer lives in a context variable.

    Register it after CredentialMiddleware so it runs outermost and can read
    ``request.state.identity``.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        expose_performance_headers: bool = False,
        log_query_params: bool = True,
        log_client_info: bool = True,
        logger_name: Optional[str] = None,
    ):
        """
        Args:
            app: ASGI application
            expose_performance_headers: Add a Server-Timing header to responses
            log_query_params: Include query parameters (may contain PII)
            log_client_info: Include client IP and User-Agent
            logger_name: Custom logger name (defaults to module name)
        """
        super().__init__(app)
        self.expose_performance_headers = expose_performance_headers
        self.log_query_params = log_query_params
        self.log_client_info = log_client_info
        self.logger = get_app_logger(name=logger_name or __name__)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)

        timer = RequestTimer()
        token = request_timer_context_var.set(timer)
        started = time.perf_counter()
        try:
            with timer.capture("app"):
                response = await call_next(request)
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            request_timer_context_var.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        if self.expose_performance_headers:
            response.headers["Server-Timing"] = (
                f"{timer.format_server_timing()}, total;dur={duration_ms:.2f}"
            )

        self._log_request(self._build_log_entry(request, response, duration_ms, timer))
        structlog.contextvars.unbind_contextvars("request_id", "user_id")
        return response

    def _build_log_entry(
        self,
        request: Request,
        response: Response,
        duration_ms: float,
        timer: RequestTimer,
    ) -> RequestLogEntry:
        identity = getattr(request.state, "identity", None)
        client_info = self.log_client_info

        return RequestLogEntry(
            metadata=RequestMetadata(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            ),
            details=RequestDetails(
                request_id=request.state.request_id,
                client_host=request.client.host if client_info and request.client else None,
                user_agent=request.headers.get("user-agent") if client_info else None,
                query_params=(
                    dict(request.query_params)
                    if self.log_query_params and request.query_params
                    else None
                ),
                path_params=request.path_params or None,
                user_id=identity.id if identity else None,
                user_role=identity.role.value if identity else None,
                content_length=int(response.headers.get("content-length", 0)) or None,
            ),
            performance=PerformanceBreakdown(
                total_ms=round(duration_ms, 2),
                app_logic_ms=round(timer.timings.get("app", 0), 2),
                video_provider_ms=round(timer.timings.get("video", 0), 2),
                payment_provider_ms=round(timer.timings.get("payment", 0), 2),
                video_provider_calls=timer.counts.get("video", 0),
                payment_provider_calls=timer.counts.get("payment", 0),
            ),
        )

    def _log_request(self, entry: RequestLogEntry) -> None:
        """5xx -> error; slow or 4xx -> warning; everything else -> info."""
        log_data = entry.model_dump(mode="json", exclude_none=True)
        status_code = entry.metadata.status_code

        if entry.is_error:  # type: ignore[truthy-function]
            self.logger.error("Request failed with server error", **log_data)
        elif entry.is_slow:  # type: ignore[truthy-function]
            self.logger.warning(
                f"Slow request detected ({entry.metadata.duration_ms}ms)", **log_data
            )
        elif status_code >= 400:
            self.logger.warning("Request failed with client error", **log_data)
        else:
            self.logger.info("Request completed", **log_data)


__all__ = ["RequestLoggingMiddleware", "REQUEST_ID_HEADER"]
