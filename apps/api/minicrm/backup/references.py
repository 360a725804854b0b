"""Cross-entity references found in backups.

A reference field (list owner, assignee, createdBy, an activity's list) can
arrive as an internal id, a business key, an e-mail, an embedded object
copied from a populated query, or nothing at all. The shape is decided once,
when the raw value is ingested, and resolution dispatches on that shape.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Union, get_args

_INTERNAL_ID_RE = re.compile(r"^(?:[0-9a-fA-F]{24}|[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12})$")


@dataclass(frozen=True, slots=True)
class InternalIdRef:
    value: str


@dataclass(frozen=True, slots=True)
class BusinessKeyRef:
    value: str


@dataclass(frozen=True, slots=True)
class EmailRef:
    value: str


@dataclass(frozen=True, slots=True)
class EmbeddedRef:
    internal_id: str | None = None
    business_key: str | None = None
    email: str | None = None
    name: str | None = None


@dataclass(frozen=True, slots=True)
class MissingRef:
    pass


Reference = Union[InternalIdRef, BusinessKeyRef, EmailRef, EmbeddedRef, MissingRef]
REFERENCE_TYPES: tuple[type, ...] = get_args(Reference)


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def classify_reference(raw: Any) -> Reference:
    if raw is None:
        return MissingRef()
    if isinstance(raw, dict):
        embedded = EmbeddedRef(
            internal_id=_clean(raw.get("_id") or raw.get("$oid")),
            business_key=_clean(raw.get("crmId") or raw.get("id")),
            email=(_clean(raw.get("email")) or "").lower() or None,
            name=_clean(raw.get("nombre") or raw.get("name")),
        )
        if embedded == EmbeddedRef():
            return MissingRef()
        return embedded
    text = _clean(raw)
    if text is None:
        return MissingRef()
    if "@" in text:
        return EmailRef(text.lower())
    if _INTERNAL_ID_RE.match(text):
        return InternalIdRef(text.lower())
    return BusinessKeyRef(text)


@dataclass
class ReferenceIndex:
    """Lookup tables mapping every known identifier of a target entity to one canonical value."""

    by_internal_id: dict[str, str] = field(default_factory=dict)
    by_business_key: dict[str, str] = field(default_factory=dict)
    by_email: dict[str, str] = field(default_factory=dict)
    by_name: dict[str, str] = field(default_factory=dict)

    def add(
        self,
        canonical: str,
        *,
        internal_ids: Iterable[str | None] = (),
        business_key: str | None = None,
        email: str | None = None,
        name: str | None = None,
    ) -> None:
        for internal_id in internal_ids:
            if internal_id:
                self.by_internal_id.setdefault(internal_id.lower(), canonical)
        if business_key:
            self.by_business_key.setdefault(business_key, canonical)
        if email:
            self.by_email.setdefault(email.lower(), canonical)
        if name:
            self.by_name.setdefault(name.strip().lower(), canonical)

    def resolve(self, reference: Reference) -> str | None:
        resolver = _RESOLVERS.get(type(reference))
        if resolver is None:
            raise TypeError(f"unsupported reference type: {type(reference).__name__}")
        return resolver(self, reference)

    def _missing(self, reference: MissingRef) -> str | None:
        return None

    def _email(self, reference: EmailRef) -> str | None:
        return self.by_email.get(reference.value)

    def _internal_id(self, reference: InternalIdRef) -> str | None:
        return self.by_internal_id.get(reference.value) or self.by_business_key.get(reference.value)

    def _business_key(self, reference: BusinessKeyRef) -> str | None:
        return (
            self.by_business_key.get(reference.value)
            or self.by_internal_id.get(reference.value.lower())
            or self.by_name.get(reference.value.lower())
        )

    def _embedded(self, reference: EmbeddedRef) -> str | None:
        candidates = (
            self.by_internal_id.get(reference.internal_id or ""),
            self.by_email.get(reference.email or ""),
            self.by_business_key.get(reference.business_key or ""),
            self.by_name.get((reference.name or "").lower()),
        )
        return next((candidate for candidate in candidates if candidate), None)


# One resolver per variant of ``Reference``; REFERENCE_TYPES must stay in step.
_RESOLVERS: dict[type, Callable[[ReferenceIndex, Any], str | None]] = {
    MissingRef: ReferenceIndex._missing,
    EmailRef: ReferenceIndex._email,
    InternalIdRef: ReferenceIndex._internal_id,
    BusinessKeyRef: ReferenceIndex._business_key,
    EmbeddedRef: ReferenceIndex._embedded,
}
