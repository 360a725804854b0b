from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from minicrm.metrics import observe_http_request, resolve_http_path_label

logger = logging.getLogger("minicrm.request")


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One ``http.request`` line and one metrics sample per request.

    Level follows the status code: 4xx logs a warning, 5xx an error.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        path = request.url.path
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = _elapsed_ms(started)
            observe_http_request(method=method, path=resolve_http_path_label(request), status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": method, "path": path, "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        # the route is only known once routing ran
        duration_ms = _elapsed_ms(started)
        observe_http_request(method=method, path=resolve_http_path_label(request), status=response.status_code, duration=duration_ms / 1000)
        logger.log(
            _level_for(response.status_code),
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response
