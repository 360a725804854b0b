from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

# Request-scoped values picked up by the log filter and by audit/event writers.
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
backup_stage_var: ContextVar[str | None] = ContextVar("backup_stage", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_backup_stage() -> str | None:
    return backup_stage_var.get()


@contextmanager
def backup_stage(stage: str) -> Iterator[str]:
    """Tag everything logged inside the block with the import stage name."""
    token = backup_stage_var.set(stage)
    try:
        yield stage
    finally:
        backup_stage_var.reset(token)
