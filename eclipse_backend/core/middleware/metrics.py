import logging

from starlette.middleware.base import BaseHTTPMiddleware

from eclipse_backend.core.metrics import http_requests_total, normalize_path

logger = logging.getLogger("eclipse")


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests by method, path (ids collapsed) and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        try:
            http_requests_total.inc(labels={
                "method": request.method.upper(),
                "path": normalize_path(request.url.path),
                "status": str(response.status_code),
            })
        except ValueError as e:
            # A metrics bug must not fail the request
            logger.warning(f"[metrics] request not counted: {e}")
        return response
