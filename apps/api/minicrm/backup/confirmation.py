from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from minicrm.backup.errors import ConfirmationMissing, GuardRejection, OperatorLockActive
from minicrm.core.config import Settings

LOCAL_ENVIRONMENTS = {"local", "dev", "development", "test"}
LOCAL_HOSTS = {"", "localhost", "127.0.0.1", "::1"}


class _UsedTokenRegistry:
    """Bounded memory of import tokens this process already accepted."""

    def __init__(self, capacity: int = 1024) -> None:
        self._lock = threading.Lock()
        self._tokens: OrderedDict[str, None] = OrderedDict()
        self.capacity = capacity

    def claim(self, token: str, capacity: int | None = None) -> bool:
        limit = max(1, capacity or self.capacity)
        with self._lock:
            if token in self._tokens:
                return False
            self._tokens[token] = None
            while len(self._tokens) > limit:
                self._tokens.popitem(last=False)
            return True

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()


_used_tokens = _UsedTokenRegistry()


@dataclass(frozen=True, slots=True)
class ImportConfirmation:
    confirm_delete: Any
    confirm_delete2: Any
    token: Any
    confirm_data_loss: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ImportConfirmation:
        second = payload.get("confirmDelete2")
        if second is None:
            # older clients sent confirmDeleteAll as the second confirmation
            second = payload.get("confirmDeleteAll")
        return cls(
            confirm_delete=payload.get("confirmDelete"),
            confirm_delete2=second,
            token=payload.get("tokenSeguridad"),
            confirm_data_loss=payload.get("confirmDataLoss") is True,
        )


def store_is_local(database_url: str) -> bool:
    try:
        url = make_url(database_url)
    except ArgumentError:
        return False
    if url.get_backend_name() == "sqlite":
        return True
    return (url.host or "").lower() in LOCAL_HOSTS


def enforce_deployment_guard(settings: Settings) -> None:
    """Refuse imports the deployment policy forbids. Touches no data."""
    env_local = settings.app_env.strip().lower() in LOCAL_ENVIRONMENTS
    store_local = store_is_local(settings.database_url)
    if env_local and not store_local:
        raise GuardRejection(
            "Import from a local environment into a remote database is not allowed",
            details={"app_env": settings.app_env, "store": "remote"},
        )
    if Path(settings.backup_lock_file).exists() and not (env_local and store_local):
        raise OperatorLockActive(
            "Imports are locked by the operator on this deployment",
            details={"lock_file": settings.backup_lock_file},
        )


def check_confirmation(confirmation: ImportConfirmation, settings: Settings) -> None:
    """Validate the multi-part consent. The token is consumed only when every check passes."""
    if confirmation.confirm_delete is not True:
        raise ConfirmationMissing(
            "First delete confirmation (confirmDelete) must be literal true",
            code="backup_confirm_delete_missing",
        )
    if confirmation.confirm_delete2 is not True:
        raise ConfirmationMissing(
            "Second delete confirmation (confirmDelete2) must be literal true",
            code="backup_confirm_delete2_missing",
        )
    token = confirmation.token
    if (
        not isinstance(token, str)
        or len(token) < settings.backup_token_min_length
        or not token.startswith(settings.backup_token_prefix)
    ):
        raise ConfirmationMissing(
            "Security token (tokenSeguridad) is missing or malformed",
            code="backup_token_invalid",
            details={"prefix": settings.backup_token_prefix, "min_length": settings.backup_token_min_length},
        )
    if not _used_tokens.claim(token, settings.backup_token_memory_size):
        raise ConfirmationMissing(
            "Security token (tokenSeguridad) was already used",
            code="backup_token_replayed",
        )


def reset_used_tokens() -> None:
    _used_tokens.clear()
