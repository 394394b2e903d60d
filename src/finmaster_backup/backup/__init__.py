from .orchestrator import BackupOrchestrator, backup_file_name

__all__ = ["BackupOrchestrator", "backup_file_name"]
