from minicrm.models.audit import AuditLog
from minicrm.store.models import BackupLock, StoredDocument

__all__ = [
	"AuditLog",
	"BackupLock",
	"StoredDocument",
]
