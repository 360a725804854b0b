from minicrm.store.models import BackupLock, StoredDocument
from minicrm.store.repository import USERS_COLLECTION, DocumentStore, document_store, normalize_email

__all__ = [
    "BackupLock",
    "StoredDocument",
    "DocumentStore",
    "USERS_COLLECTION",
    "document_store",
    "normalize_email",
]
