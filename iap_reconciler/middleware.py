"""FastAPI middleware for request/response logging and correlation."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from iap_reconciler.logging_config import bind_context, clear_context, get_logger
from iap_reconciler.utils.identifiers import mask_token

logger = get_logger(__name__)

# Query parameters never written to logs
SECRET_QUERY_PARAMS = frozenset({"token"})

USER_ID_HEADER = "X-User-Id"
REQUEST_ID_HEADER = "X-Request-ID"


def _loggable_query(request: Request) -> str:
    params = [
        f"{key}=***" if key in SECRET_QUERY_PARAMS else f"{key}={value}"
        for key, value in request.query_params.multi_items()
    ]
    return "&".join(params)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging HTTP requests and responses with correlation IDs.

    Features:
    - Uses the caller's X-Request-ID or generates one
    - Logs request method, path, client IP (secret query parameters redacted)
    - Logs response status code and duration
    - Binds request_id to all logs within request context
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        """Initialize middleware.

        Args:
            app: ASGI application
            include_request_details: If True, log full request details
        """
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request and add logging context.

        Args:
            request: Incoming HTTP request
            call_next: Next middleware/handler in chain

        Returns:
            HTTP response
        """
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        bind_context(request_id=request_id)

        client_host = request.client.host if request.client else "unknown"

        if self.include_request_details:
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                query_params=_loggable_query(request) if request.query_params else None,
                client_host=client_host,
                user_agent=request.headers.get("user-agent"),
            )
        else:
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
            )

        start_time = time.time()

        try:
            response = await call_next(request)

            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )

            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        except Exception as exc:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        finally:
            # Clear context to prevent leaking into the next request
            clear_context()


class ContextMiddleware(BaseHTTPMiddleware):
    """Middleware for extracting and binding business context from requests.

    Binds to the logging context:
    - user_id from the X-User-Id header
    - lineage_id, token (masked) or user from /entitlements/... paths
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Extract business context from request.

        Args:
            request: Incoming HTTP request
            call_next: Next middleware/handler in chain

        Returns:
            HTTP response
        """
        user_id = request.headers.get(USER_ID_HEADER)
        if user_id:
            bind_context(user_id=user_id)

        parts = request.url.path.strip("/").split("/")
        if len(parts) >= 3 and parts[0] == "entitlements":
            kind, value = parts[1], parts[2]
            if kind == "lineages":
                bind_context(lineage_id=value)
            elif kind == "tokens":
                bind_context(token=mask_token(value))
            elif kind == "users":
                bind_context(user_id=value)

        return await call_next(request)
