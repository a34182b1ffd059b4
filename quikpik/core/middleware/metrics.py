import logging

from starlette.middleware.base import BaseHTTPMiddleware

from quikpik.core.metrics import http_requests_total, normalize_path

logger = logging.getLogger("quikpik")


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests per method, route template and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        try:
            http_requests_total.inc(labels={
                "method": request.method.upper(),
                "path": route_label(request.scope, request.url.path),
                "status": str(getattr(response, "status_code", None) or 0),
            })
        except Exception as e:
            # A metrics failure never fails the request
            logger.debug(f"[metrics] request not counted: {e}")
        return response


def route_label(scope, raw_path: str) -> str:
    """
    The matched route's template, e.g. /admin/subscriptions/{account_id}.

    Unmatched paths (404s) fall back to the raw path with id-like segments
    collapsed, so scanners cannot blow up label cardinality with ids.
    """
    route = scope.get("route")
    template = getattr(route, "path", None)
    if template:
        return template
    return normalize_path(raw_path)
