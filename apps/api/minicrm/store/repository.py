from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from minicrm.store.models import StoredDocument

USERS_COLLECTION = "users"


@dataclass(slots=True)
class DocumentStore:
    """Collection-oriented access to ``crm_document``.

    Every write commits on its own: a replace that fails half way leaves the
    records written so far in place, exactly like the document database the
    backups were designed for.
    """

    def count(self, session: Session, collection: str) -> int:
        value = session.scalar(
            select(func.count()).select_from(StoredDocument).where(StoredDocument.collection == collection)
        )
        return int(value or 0)

    def count_many(self, session: Session, collections: Iterable[str]) -> dict[str, int]:
        wanted = list(collections)
        rows = session.execute(
            select(StoredDocument.collection, func.count())
            .where(StoredDocument.collection.in_(wanted))
            .group_by(StoredDocument.collection)
        ).all()
        found = {collection: int(total) for collection, total in rows}
        return {collection: found.get(collection, 0) for collection in wanted}

    def list_documents(self, session: Session, collection: str) -> list[StoredDocument]:
        stmt = (
            select(StoredDocument)
            .where(StoredDocument.collection == collection)
            .order_by(StoredDocument.created_at, StoredDocument.business_key)
        )
        return list(session.scalars(stmt).all())

    def get_by_key(self, session: Session, collection: str, business_key: str) -> StoredDocument | None:
        return session.scalar(
            select(StoredDocument).where(
                StoredDocument.collection == collection,
                StoredDocument.business_key == business_key,
            )
        )

    def get_by_id(self, session: Session, document_id: uuid.UUID) -> StoredDocument | None:
        return session.get(StoredDocument, document_id)

    def delete_all(self, session: Session, collection: str) -> int:
        try:
            result = session.execute(delete(StoredDocument).where(StoredDocument.collection == collection))
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        return int(result.rowcount or 0)

    def upsert(self, session: Session, collection: str, business_key: str, body: dict[str, Any]) -> StoredDocument:
        try:
            document = self.get_by_key(session, collection, business_key)
            if document is None:
                document = StoredDocument(collection=collection, business_key=business_key, body=dict(body))
                session.add(document)
            else:
                document.body = dict(body)
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        return document

    def merge_user(self, session: Session, business_key: str, body: dict[str, Any]) -> StoredDocument:
        """Update the user with the same e-mail (case-insensitive) or add a new one.

        A matched user keeps its key when the incoming key already belongs to
        someone else; a new user whose key is taken gets a suffixed key.
        """
        email = normalize_email(body.get("email"))
        try:
            users = self.list_documents(session, USERS_COLLECTION)
            document = next((item for item in users if normalize_email((item.body or {}).get("email")) == email), None)
            key_owner = next((item for item in users if item.business_key == business_key), None)
            if document is None:
                if key_owner is not None:
                    business_key = f"{business_key}-{uuid.uuid4().hex[:6]}"
                document = StoredDocument(collection=USERS_COLLECTION, business_key=business_key, body=dict(body))
                session.add(document)
            else:
                if key_owner is None or key_owner is document:
                    document.business_key = business_key
                document.body = {**(document.body or {}), **body}
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        return document


def normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


document_store = DocumentStore()
