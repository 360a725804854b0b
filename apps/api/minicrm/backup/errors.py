from __future__ import annotations

from typing import Any


class BackupPipelineError(Exception):
    """Base error for export/import pipeline failures.

    ``stage`` names the pipeline stage that failed. ``snapshot`` is filled by
    the import service once a safety snapshot exists so the router can hand it
    back to the operator.
    """

    code = "backup_failed"
    status_code = 500
    stage = "FAILED"

    def __init__(self, message: str, *, details: Any = None, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.snapshot: dict[str, Any] | None = None


class GuardRejection(BackupPipelineError):
    """Deployment policy forbids the import. Nothing was read or written."""

    code = "backup_guard_rejected"
    status_code = 403
    stage = "GUARD"


class OperatorLockActive(GuardRejection):
    code = "backup_operator_lock_active"
    status_code = 503


class ConcurrentImportRejection(BackupPipelineError):
    code = "backup_import_in_progress"
    status_code = 409
    stage = "SNAPSHOT"


class ConfirmationMissing(BackupPipelineError):
    code = "backup_confirmation_missing"
    status_code = 400
    stage = "CONFIRM"


class ParseFailure(BackupPipelineError):
    code = "backup_parse_failed"
    status_code = 400
    stage = "PARSE"


class ValidationEmpty(BackupPipelineError):
    code = "backup_no_usable_records"
    status_code = 400
    stage = "PARSE"


class LossForecastRejection(BackupPipelineError):
    code = "backup_data_loss_unconfirmed"
    status_code = 400
    stage = "LOSS_CHECK"


class SnapshotFailure(BackupPipelineError):
    code = "backup_snapshot_failed"
    status_code = 500
    stage = "SNAPSHOT"


class SnapshotFormatError(Exception):
    """Raised by the formatter when any collection read fails."""


class ReplacePartialFailure(BackupPipelineError):
    code = "backup_replace_failed"
    status_code = 500
    stage = "REPLACE"


class VerificationRegression(BackupPipelineError):
    code = "backup_verification_failed"
    status_code = 500
    stage = "VERIFY"


class ExportInconsistent(BackupPipelineError):
    code = "backup_export_inconsistent"
    status_code = 500
    stage = "EXPORT"
