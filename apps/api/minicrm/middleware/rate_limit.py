from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from minicrm.context import get_correlation_id
from minicrm.core.auth import decode_bearer
from minicrm.core.config import get_settings

WINDOW_SECONDS = 60


@dataclass
class _Bucket:
    capacity: float
    tokens: float
    updated_at: float

    def refill(self, now: float, rate: float) -> None:
        self.tokens = min(self.capacity, self.tokens + max(0.0, now - self.updated_at) * rate)
        self.updated_at = now

    def seconds_until_token(self, rate: float) -> int:
        return max(1, math.ceil((1.0 - self.tokens) / rate))


class _BucketRegistry:
    """Token buckets keyed by (user, backup operation)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, user_id: str, operation: str, capacity: int, window_seconds: int = WINDOW_SECONDS) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        rate = capacity / float(window_seconds)
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.get((user_id, operation))
            if bucket is None or bucket.capacity != capacity:
                bucket = _Bucket(capacity=float(capacity), tokens=float(capacity), updated_at=now)
                self._buckets[(user_id, operation)] = bucket
            bucket.refill(now, rate)
            if bucket.tokens < 1.0:
                return False, bucket.seconds_until_token(rate)
            bucket.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _BucketRegistry()


class BackupMutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-user token bucket in front of the destructive backup routes.

    Reads pass through untouched; only mutating methods under ``/api/backup``
    spend tokens.
    """

    prefix = "/api/backup"
    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or not path.startswith(self.prefix)
            or request.method.upper() not in self.mutating_methods
        ):
            return await call_next(request)

        allowed, retry_after = _limiter.take(
            _resolve_user_id(request),
            _operation_for(path, self.prefix),
            settings.rate_limit_backup_mutations_per_minute,
        )
        if allowed:
            return await call_next(request)
        return _limited_response(request, retry_after)


def _limited_response(request: Request, retry_after: int) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or str(uuid.uuid4())
    )
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "code": "RATE_LIMITED",
            "error": "Too many backup requests",
            "details": {"retry_after": retry_after},
            "correlation_id": correlation_id,
        },
        headers={"Retry-After": str(retry_after), "X-Correlation-Id": correlation_id},
    )


def _operation_for(path: str, prefix: str) -> str:
    return path[len(prefix):].strip("/").split("/", 1)[0] or "backup"


def _resolve_user_id(request: Request) -> str:
    payload = decode_bearer(request)
    if payload is None or payload.get("sub") is None:
        return "anonymous"
    return str(payload["sub"])


def reset_rate_limiter() -> None:
    _limiter.clear()
