from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Callable
import time
import structlog
import uuid


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"

        return response


class AuditLogMiddleware(BaseHTTPMiddleware):
    """Log every API request; engine log events inside it carry the request id"""

    def __init__(self, app):
        super().__init__(app)
        self.logger = structlog.get_logger("audit")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start_time = time.perf_counter()

        self.logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            self.logger.info(
                "Request completed",
                status_code=response.status_code,
                process_time=round(time.perf_counter() - start_time, 4),
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            self.logger.error(
                "Request failed",
                error=str(e),
                process_time=round(time.perf_counter() - start_time, 4),
                exc_info=True,
            )
            raise

        finally:
            structlog.contextvars.unbind_contextvars("request_id")
