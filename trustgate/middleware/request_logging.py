"""
Request Logging Middleware

- Assigns a unique request_id to every request
- Sets tenant_id / user_id context from the organization headers
- Logs request start & end with timing
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from trustgate.logging_config import (
    generate_request_id,
    request_id_ctx,
    tenant_id_ctx,
    user_id_ctx,
)

logger = logging.getLogger("trustgate.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        rid = request.headers.get("x-request-id") or generate_request_id()
        request_id_ctx.set(rid)
        tenant_id_ctx.set(request.headers.get("x-organization-id", "-"))
        user_id_ctx.set(request.headers.get("x-user-id", "-"))

        method = request.method
        path = request.url.path
        client_ip = request.client.host if request.client else "-"

        logger.info("→ %s %s from %s", method, path, client_ip)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = (time.perf_counter() - start) * 1000
            logger.exception("✗ %s %s (%.1fms, unhandled exception)", method, path, elapsed)
            raise

        elapsed = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = rid

        logger.info(
            "← %s %s %d (%.1fms)",
            method, path, response.status_code, elapsed,
            extra={"duration_ms": round(elapsed, 1)},
        )
        return response
