from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from minicrm.backup.entities import ENTITIES
from minicrm.backup.errors import LossForecastRejection
from minicrm.backup.schemas import PreparedBackup
from minicrm.store import DocumentStore, document_store


@dataclass(frozen=True, slots=True)
class Shortfall:
    collection: str
    label: str
    current: int
    incoming: int

    @property
    def lost(self) -> int:
        return self.current - self.incoming

    def as_dict(self) -> dict[str, object]:
        return {
            "entity": self.collection,
            "label": self.label,
            "current": self.current,
            "incoming": self.incoming,
            "lost": self.lost,
        }


@dataclass(slots=True)
class LossForecaster:
    store: DocumentStore = field(default_factory=lambda: document_store)

    def forecast(self, session: Session, prepared: PreparedBackup) -> list[Shortfall]:
        """Entities whose replacement would leave fewer records than are stored now.

        Only entities that will be replaced are compared; users are merged, not replaced.
        """
        replaced = [
            entity for entity in ENTITIES if entity.replaceable and prepared.records.get(entity.collection)
        ]
        live = self.store.count_many(session, [entity.collection for entity in replaced])
        shortfalls: list[Shortfall] = []
        for entity in replaced:
            incoming = len(prepared.records[entity.collection])
            if incoming < live[entity.collection]:
                shortfalls.append(Shortfall(entity.collection, entity.label, live[entity.collection], incoming))
        return shortfalls

    def check(self, session: Session, prepared: PreparedBackup, *, confirm_data_loss: bool) -> list[Shortfall]:
        shortfalls = self.forecast(session, prepared)
        if shortfalls and not confirm_data_loss:
            summary = ", ".join(f"{item.label}: {item.current} -> {item.incoming}" for item in shortfalls)
            raise LossForecastRejection(
                f"Import would reduce stored records ({summary}); resend with confirmDataLoss=true to proceed",
                details={"shortfalls": [item.as_dict() for item in shortfalls]},
            )
        return shortfalls
