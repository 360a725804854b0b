from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from minicrm.api.routes import router as api_router
from minicrm.core.config import get_settings
from minicrm.core.context import RequestContextMiddleware
from minicrm.core.events import InternalEvent, event_bus
from minicrm.logging import configure_logging
from minicrm.middleware.correlation_id import CorrelationIdMiddleware
from minicrm.middleware.rate_limit import BackupMutationRateLimitMiddleware
from minicrm.middleware.request_logging import RequestLoggingMiddleware
from minicrm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging(get_settings().log_level)
logger = logging.getLogger("minicrm.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_backup_event(event: InternalEvent) -> None:
    level = logging.WARNING if event.name == "backup.import.failed" else logging.INFO
    logger.log(level, "backup_event", extra={"event_name": event.name, "status": event.payload.get("code")})


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe("backup.*", _on_backup_event)
    event_bus.publish("system.started", {"service": settings.otel_service_name, "version": settings.app_version})
    yield
    event_bus.unsubscribe("backup.*", _on_backup_event)
    event_bus.unsubscribe("system.started", _on_system_started)


settings = get_settings()
app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(BackupMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
