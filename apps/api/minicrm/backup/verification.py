from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from minicrm.backup.errors import VerificationRegression
from minicrm.backup.executor import ReplaceResult
from minicrm.store import DocumentStore, document_store

logger = logging.getLogger("minicrm.backup")


@dataclass(slots=True)
class VerificationReport:
    attempts: int
    verified: dict[str, int]
    expected: dict[str, int]

    def shortfalls(self) -> dict[str, dict[str, int]]:
        return {
            collection: {"written": expected, "verified": self.verified.get(collection, 0)}
            for collection, expected in self.expected.items()
            if self.verified.get(collection, 0) < expected
        }


@dataclass(slots=True)
class VerificationLoop:
    """Re-reads counts until every replaced entity holds at least what was written."""

    store: DocumentStore = field(default_factory=lambda: document_store)
    sleep: Callable[[float], None] = field(default=time.sleep)

    def verify(self, session: Session, result: ReplaceResult, *, attempts: int, delay_seconds: float) -> VerificationReport:
        expected = result.written_counts()
        attempts = max(1, attempts)
        report = VerificationReport(attempts=0, verified={}, expected=expected)
        for attempt in range(1, attempts + 1):
            session.expire_all()
            report = VerificationReport(
                attempts=attempt,
                verified=self.store.count_many(session, expected.keys()),
                expected=expected,
            )
            if not report.shortfalls():
                logger.info("backup.verified", extra={"attempt": attempt, "counts": report.verified})
                return report
            logger.warning("backup.verify_retry", extra={"attempt": attempt, "shortfalls": report.shortfalls()})
            if attempt < attempts and delay_seconds > 0:
                self.sleep(delay_seconds)

        raise VerificationRegression(
            "Post-import verification found fewer records than were written",
            details={
                "attempts": report.attempts,
                "shortfalls": report.shortfalls(),
                "outcomes": result.as_details(),
            },
        )
