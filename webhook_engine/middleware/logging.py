"""
Request logging middleware for the operator API.

Logs every request with timing and records it in Prometheus.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from webhook_engine.routes.metrics import track_request

logger = structlog.get_logger()


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Log each operator API request.

    Adds: route, method, duration_ms and status to every log, plus
    workspace_id and subscription_id when the query string or the matched
    path carries them.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
        )
        workspace_id = request.query_params.get("workspace_id")
        if workspace_id:
            request_logger = request_logger.bind(workspace_id=workspace_id)

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            track_request(request.method, _endpoint(request), 500, duration)
            _bind_path_ids(request_logger, request).error(
                "request_failed",
                status_code=500,
                duration_ms=round(duration * 1000, 2),
                error=str(e)
            )
            raise

        duration = time.perf_counter() - start_time
        track_request(request.method, _endpoint(request), response.status_code, duration)
        _bind_path_ids(request_logger, request).info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )

        return response


def _bind_path_ids(request_logger, request: Request):
    # path params are only known once routing has matched
    path_params = request.scope.get("path_params") or {}
    ids = {key: path_params[key] for key in ("workspace_id", "subscription_id") if key in path_params}
    return request_logger.bind(**ids) if ids else request_logger


def _endpoint(request: Request) -> str:
    # route template keeps label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)
