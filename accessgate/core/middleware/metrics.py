from starlette.middleware.base import BaseHTTPMiddleware

from accessgate.core.metrics import http_requests_total, normalize_path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count HTTP requests by method, normalized path and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        http_requests_total.inc(labels={
            "method": request.method.upper(),
            "path": normalize_path(request.url.path),
            "status": str(getattr(response, "status_code", 0) or 0),
        })
        return response
