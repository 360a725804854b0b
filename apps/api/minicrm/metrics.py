from __future__ import annotations

from collections.abc import Mapping

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request

# Label used for requests that never reached a route (404s, rate-limited calls).
UNMATCHED_PATH = "unmatched"

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

backup_runs_total = Counter(
    "backup_runs_total",
    "Backup export/import runs by operation and outcome",
    ["operation", "outcome"],
)

backup_run_duration_seconds = Histogram(
    "backup_run_duration_seconds",
    "Wall time of a backup export/import run",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

backup_stage_failures_total = Counter(
    "backup_stage_failures_total",
    "Backup runs that stopped at a given stage, by error code",
    ["stage", "code"],
)

backup_records_dropped_total = Counter(
    "backup_records_dropped_total",
    "Backup records discarded while normalizing an import",
    ["entity"],
)

backup_records_written_total = Counter(
    "backup_records_written_total",
    "Backup records written to the store by import",
    ["entity"],
)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if isinstance(template, str) and template:
        return template
    return UNMATCHED_PATH


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_backup_run(operation: str, outcome: str, duration: float) -> None:
    backup_runs_total.labels(operation=operation, outcome=outcome).inc()
    backup_run_duration_seconds.labels(operation=operation).observe(duration)


def observe_backup_stage_failure(stage: str, code: str) -> None:
    backup_stage_failures_total.labels(stage=stage, code=code).inc()


def _add_per_entity(counter: Counter, counts: Mapping[str, int]) -> None:
    for entity, count in counts.items():
        if count > 0:
            counter.labels(entity=entity).inc(count)


def observe_backup_records_dropped(dropped: Mapping[str, int]) -> None:
    _add_per_entity(backup_records_dropped_total, dropped)


def observe_backup_records_written(written: Mapping[str, int]) -> None:
    _add_per_entity(backup_records_written_total, written)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
