from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from minicrm.backup.errors import SnapshotFailure, SnapshotFormatError
from minicrm.backup.formatter import FormattedSnapshot, SnapshotFormatter, snapshot_formatter

logger = logging.getLogger("minicrm.backup")


@dataclass(slots=True)
class SafetySnapshotManager:
    """Captures the live state right before an import deletes anything.

    The snapshot only lives in memory for the duration of the request and is
    handed back to the operator on any later failure.
    """

    formatter: SnapshotFormatter = field(default_factory=lambda: snapshot_formatter)

    def capture(self, session: Session) -> FormattedSnapshot:
        try:
            snapshot = self.formatter.format(session)
        except SnapshotFormatError as exc:
            raise SnapshotFailure(
                "Could not create the automatic safety backup; nothing was deleted",
                details={"error": str(exc)},
            ) from exc
        logger.info(
            "backup.safety_snapshot_taken",
            extra={"count": sum(snapshot.counts.values()), "counts": snapshot.counts},
        )
        return snapshot
