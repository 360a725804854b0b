from minicrm.backup.api import router
from minicrm.backup.service import BackupService, ImportStage, backup_service

__all__ = [
	"BackupService",
	"ImportStage",
	"backup_service",
	"router",
]
