"""
Backup and restore flows for PlanVault.

This module writes slots to backup files (encrypted, or plain for the
person and emergency plans) and restores them, reporting each attempt as
a success, a user cancellation or a typed failure.

Usage:
    from planvault.backup import BackupFileManager

    # Create a backup in the downloads directory
    manager = BackupFileManager(store, downloads_dir)
    result = manager.create_backup("combined", password, confirm_password)

    # Restore from backup
    result = manager.restore_backup(result.path, password)
"""

from planvault.backup.manager import (
    USER_MESSAGES,
    BackupFileManager,
    BackupResult,
    ErrorKind,
    FileAccess,
    FilePicker,
    LocalFileAccess,
    Outcome,
    RestoreResult,
    SaveDestination,
    classify_error,
)

__all__ = [
    "BackupFileManager",
    "BackupResult",
    "RestoreResult",
    "SaveDestination",
    "Outcome",
    "ErrorKind",
    "USER_MESSAGES",
    "classify_error",
    "FilePicker",
    "FileAccess",
    "LocalFileAccess",
]
