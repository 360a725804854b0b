from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from minicrm.backup.confirmation import ImportConfirmation, check_confirmation, enforce_deployment_guard
from minicrm.backup.entities import ALL_COLLECTIONS, ENTITIES
from minicrm.backup.errors import (
    BackupPipelineError,
    ExportInconsistent,
    ParseFailure,
    ReplacePartialFailure,
    SnapshotFailure,
    SnapshotFormatError,
    VerificationRegression,
)
from minicrm.backup.executor import EntityOutcome, ReplaceExecutor, ReplaceResult, replace_executor
from minicrm.backup.forecast import LossForecaster, Shortfall
from minicrm.backup.formatter import SnapshotFormatter, snapshot_formatter
from minicrm.backup.lock import ImportLock, import_lock, lock_holder
from minicrm.backup.parser import BackupParser, UndecodableBody
from minicrm.backup.schemas import PreparedBackup
from minicrm.backup.snapshot import SafetySnapshotManager
from minicrm.backup.verification import VerificationLoop, VerificationReport
from minicrm.context import backup_stage, get_correlation_id
from minicrm.core.auth import AuthUser
from minicrm.core.config import get_settings
from minicrm.core.context import RequestContext
from minicrm.events import publish
from minicrm.metrics import (
    observe_backup_records_dropped,
    observe_backup_records_written,
    observe_backup_run,
    observe_backup_stage_failure,
)
from minicrm.otel import get_tracer
from minicrm.services.audit import write_audit_log
from minicrm.store import DocumentStore, document_store

logger = logging.getLogger("minicrm.backup")
tracer = get_tracer("minicrm.backup")


class ImportStage(str, Enum):
    GUARD = "GUARD"
    CONFIRM = "CONFIRM"
    PARSE = "PARSE"
    LOSS_CHECK = "LOSS_CHECK"
    SNAPSHOT = "SNAPSHOT"
    REPLACE = "REPLACE"
    VERIFY = "VERIFY"
    DONE = "DONE"
    FAILED = "FAILED"


# Stages that read or write the store; earlier rejections leave no audit row.
_STORE_STAGES = {ImportStage.PARSE, ImportStage.LOSS_CHECK, ImportStage.SNAPSHOT, ImportStage.REPLACE, ImportStage.VERIFY}


@dataclass(slots=True)
class _ImportRun:
    holder: str
    stage: ImportStage = ImportStage.GUARD
    snapshot: dict[str, Any] | None = None
    lock_held: bool = False
    started: float = field(default_factory=time.perf_counter)


def _actor_id(actor: AuthUser) -> str:
    return actor.email or actor.sub


def _storage_error(stage: ImportStage, exc: SQLAlchemyError) -> BackupPipelineError:
    message = f"Storage error during {stage.value}"
    details = {"error": str(exc)[:500]}
    if stage is ImportStage.SNAPSHOT:
        return SnapshotFailure(message, details=details)
    if stage is ImportStage.REPLACE:
        return ReplacePartialFailure(message, details=details)
    if stage is ImportStage.VERIFY:
        return VerificationRegression(message, details=details)
    return BackupPipelineError(message, details=details, code="backup_storage_error")


@dataclass(slots=True)
class BackupService:
    store: DocumentStore = field(default_factory=lambda: document_store)
    formatter: SnapshotFormatter = field(default_factory=lambda: snapshot_formatter)
    parser: BackupParser = field(default_factory=BackupParser)
    forecaster: LossForecaster = field(default_factory=LossForecaster)
    snapshots: SafetySnapshotManager = field(default_factory=SafetySnapshotManager)
    executor: ReplaceExecutor = field(default_factory=lambda: replace_executor)
    verifier: VerificationLoop = field(default_factory=VerificationLoop)
    lock: ImportLock = field(default_factory=lambda: import_lock)

    def export_backup(self, session: Session, *, actor: AuthUser, context: RequestContext | None = None) -> dict[str, Any]:
        started = time.perf_counter()
        with tracer.start_as_current_span("backup.export") as span:
            try:
                counts_before = self.store.count_many(session, ALL_COLLECTIONS)
                snapshot = self.formatter.format(session)
                counts_after = self.store.count_many(session, ALL_COLLECTIONS)
            except (SnapshotFormatError, SQLAlchemyError) as exc:
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                observe_backup_run("export", "failed", time.perf_counter() - started)
                observe_backup_stage_failure("EXPORT", "backup_export_failed")
                logger.error("backup.export_failed", extra={"operation": "export", "error": str(exc)})
                raise ExportInconsistent(
                    "Export failed while reading collections", details={"error": str(exc)[:500]}, code="backup_export_failed"
                ) from exc

            lost = {
                collection: {"before": counts_before[collection], "after": counts_after[collection]}
                for collection in ALL_COLLECTIONS
                if counts_after[collection] < counts_before[collection]
            }
            if lost:
                span.set_status(Status(StatusCode.ERROR, "records lost during export"))
                observe_backup_run("export", "failed", time.perf_counter() - started)
                observe_backup_stage_failure("EXPORT", ExportInconsistent.code)
                logger.error("backup.export_inconsistent", extra={"operation": "export", "shortfalls": lost})
                raise ExportInconsistent(
                    "Records disappeared while the export was running; retry the export",
                    details={"lost": lost, "countsBefore": counts_before, "countsAfter": counts_after},
                )

            total = sum(counts_after.values())
            span.set_attribute("backup.records", total)
            write_audit_log(
                session,
                context,
                actor_id=_actor_id(actor),
                action="EXPORT_SUCCESS",
                entity_type="backup",
                entity_id=get_correlation_id() or "export",
                metadata={"countsBefore": counts_before, "countsAfter": counts_after, "total": total},
            )
            publish({"event_type": "backup.exported", "actor": _actor_id(actor), "total": total, "counts": counts_after})
            observe_backup_run("export", "success", time.perf_counter() - started)
            logger.info("backup.exported", extra={"operation": "export", "count": total, "counts": counts_after})
            return {
                "success": True,
                "data": snapshot.document,
                "audit": {"countsBefore": counts_before, "countsAfter": counts_after},
            }

    def import_backup(
        self,
        session: Session,
        payload: Any,
        *,
        actor: AuthUser,
        context: RequestContext | None = None,
    ) -> dict[str, Any]:
        """Run the whole import state machine.

        GUARD -> CONFIRM -> PARSE -> LOSS_CHECK -> SNAPSHOT -> REPLACE -> VERIFY -> DONE.
        Any failure raises a ``BackupPipelineError`` carrying the safety snapshot
        once one exists. Nothing written before the failure is rolled back.
        """
        settings = get_settings()
        run = _ImportRun(holder=lock_holder(_actor_id(actor), get_correlation_id() or str(uuid.uuid4())))
        try:
            with self._stage(run, ImportStage.GUARD):
                enforce_deployment_guard(settings)

            if isinstance(payload, UndecodableBody):
                with self._stage(run, ImportStage.PARSE):
                    raise ParseFailure(
                        "Backup payload is not valid JSON",
                        code="backup_payload_unparseable",
                        details={"reason": payload.reason, "position": payload.position},
                    )

            with self._stage(run, ImportStage.CONFIRM):
                confirmation = ImportConfirmation.from_payload(payload if isinstance(payload, dict) else {})
                check_confirmation(confirmation, settings)

            with self._stage(run, ImportStage.PARSE):
                prepared = self.parser.parse(session, payload)
                observe_backup_records_dropped(prepared.dropped)

            with self._stage(run, ImportStage.LOSS_CHECK):
                shortfalls = self.forecaster.check(session, prepared, confirm_data_loss=confirmation.confirm_data_loss)
                if shortfalls:
                    logger.warning(
                        "backup.data_loss_confirmed",
                        extra={"shortfalls": [item.as_dict() for item in shortfalls]},
                    )

            with self._stage(run, ImportStage.SNAPSHOT):
                self.lock.acquire(session, run.holder, settings.backup_lock_ttl_seconds)
                run.lock_held = True
                snapshot = self.snapshots.capture(session)
                run.snapshot = snapshot.document
                self._audit(session, context, actor, "DB_STATE_BEFORE", {"counts": snapshot.counts})

            with self._stage(run, ImportStage.REPLACE):
                result = self.executor.replace(
                    session,
                    prepared,
                    on_delete=lambda outcome: self._audit_delete(session, context, actor, outcome),
                )
                observe_backup_records_written(result.written_counts())

            with self._stage(run, ImportStage.VERIFY):
                report = self.verifier.verify(
                    session,
                    result,
                    attempts=settings.backup_verify_attempts,
                    delay_seconds=settings.backup_verify_delay_seconds,
                )
                self._audit(session, context, actor, "DB_STATE_AFTER", {"counts": self.store.count_many(session, ALL_COLLECTIONS)})

            run.stage = ImportStage.DONE
            response = self._success_response(prepared, shortfalls, result, report, run)
            self._audit(
                session,
                context,
                actor,
                "IMPORT_SUCCESS",
                {"partial": response["partial"], "written": result.written_counts(), "dropped": prepared.dropped},
            )
            publish(
                {
                    "event_type": "backup.import.completed",
                    "actor": _actor_id(actor),
                    "partial": response["partial"],
                    "written": result.written_counts(),
                }
            )
            observe_backup_run("import", "partial" if response["partial"] else "success", time.perf_counter() - run.started)
            logger.info(
                "backup.import_completed",
                extra={"operation": "import", "status": "partial" if response["partial"] else "success", "counts": result.written_counts()},
            )
            return response
        except BackupPipelineError as exc:
            failed_stage = run.stage
            run.stage = ImportStage.FAILED
            exc.snapshot = run.snapshot
            observe_backup_run("import", "failed", time.perf_counter() - run.started)
            observe_backup_stage_failure(failed_stage.value, exc.code)
            logger.error(
                "backup.import_failed",
                extra={"operation": "import", "stage": failed_stage.value, "status": exc.code, "error": exc.message},
            )
            if failed_stage in _STORE_STAGES:
                self._audit_failure(session, context, actor, failed_stage, exc)
            publish(
                {
                    "event_type": "backup.import.failed",
                    "actor": _actor_id(actor),
                    "stage": failed_stage.value,
                    "code": exc.code,
                    "snapshot_taken": run.snapshot is not None,
                }
            )
            raise
        finally:
            if run.lock_held:
                self.lock.release(session, run.holder)

    def status(self, session: Session) -> dict[str, Any]:
        settings = get_settings()
        counts = self.store.count_many(session, ALL_COLLECTIONS)
        return {
            "version": settings.backup_format_version,
            "counts": counts,
            "empty": [entity.collection for entity in ENTITIES if counts[entity.collection] == 0],
            "importLock": self.lock.status(session),
            "operatorLock": Path(settings.backup_lock_file).exists(),
        }

    @contextmanager
    def _stage(self, run: _ImportRun, stage: ImportStage) -> Iterator[None]:
        run.stage = stage
        with backup_stage(stage.value), tracer.start_as_current_span(f"backup.import.{stage.value.lower()}") as span:
            span.set_attribute("backup.stage", stage.value)
            try:
                yield
            except SQLAlchemyError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise _storage_error(stage, exc) from exc
            except BackupPipelineError as exc:
                span.set_status(Status(StatusCode.ERROR, exc.message))
                raise
            logger.info("backup.stage_completed")

    def _audit(
        self,
        session: Session,
        context: RequestContext | None,
        actor: AuthUser,
        action: str,
        metadata: dict[str, Any],
        *,
        entity_type: str = "backup",
        level: str = "INFO",
    ) -> None:
        write_audit_log(
            session,
            context,
            actor_id=_actor_id(actor),
            action=action,
            entity_type=entity_type,
            entity_id=get_correlation_id() or "import",
            metadata=metadata,
            level=level,
        )

    def _audit_delete(self, session: Session, context: RequestContext | None, actor: AuthUser, outcome: EntityOutcome) -> None:
        self._audit(
            session,
            context,
            actor,
            "DELETE_OPERATION",
            {"collection": outcome.collection, "before": outcome.before, "deleted": outcome.deleted},
            entity_type=outcome.collection,
            level="WARNING",
        )

    def _audit_failure(
        self,
        session: Session,
        context: RequestContext | None,
        actor: AuthUser,
        stage: ImportStage,
        exc: BackupPipelineError,
    ) -> None:
        try:
            self._audit(
                session,
                context,
                actor,
                "IMPORT_FAILED",
                {"stage": stage.value, "code": exc.code, "message": exc.message, "snapshot_taken": exc.snapshot is not None},
                level="ERROR",
            )
        except SQLAlchemyError:
            logger.exception("backup.audit_failed", extra={"stage": stage.value})

    def _success_response(
        self,
        prepared: PreparedBackup,
        shortfalls: list[Shortfall],
        result: ReplaceResult,
        report: VerificationReport,
        run: _ImportRun,
    ) -> dict[str, Any]:
        warnings = list(prepared.warnings)
        for outcome in result.outcomes.values():
            if outcome.failed:
                warnings.append(f"{outcome.label}: {outcome.failed} of {outcome.prepared} records could not be written")
        for collection, count in prepared.dropped.items():
            if count:
                warnings.append(f"{collection}: {count} invalid records skipped")
        partial = result.failed_total() > 0
        counts = {
            collection: {
                "before": outcome.before,
                "prepared": outcome.prepared,
                "written": outcome.written,
                "verified": report.verified.get(collection, 0),
                "failed": outcome.failed,
                "dropped": prepared.dropped.get(collection, 0),
            }
            for collection, outcome in result.outcomes.items()
        }
        return {
            "success": True,
            "partial": partial,
            "message": "Import completed with warnings" if partial or warnings else "Import completed",
            "version": prepared.version,
            "counts": counts,
            "dropped": prepared.dropped,
            "dataLoss": [item.as_dict() for item in shortfalls],
            "warnings": warnings,
            "verification": {"attempts": report.attempts},
            "backupAutomatico": run.snapshot,
        }


backup_service = BackupService()
