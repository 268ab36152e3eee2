"""
Backup and restore functionality for Waydroid.

This module creates backup directories of Waydroid user data, configuration
and (optionally) system images, prunes them to a retention limit, and
restores, exports and imports them. Every archive is validated before it is
extracted.

Usage:
    from waydroid_backup.backup import BackupManager

    manager = BackupManager(settings)

    # Create a backup
    result = manager.create_backup("data-only")

    # Restore from backup
    manager.restore_backup(result.name, confirmed=True)

    # Check an archive without extracting it
    validation = validate_archive(path, expected_prefix="data")
"""

from waydroid_backup.backup.manager import (
    BACKUP_NAME_PATTERN,
    BackupManager,
    BackupManifest,
    BackupResult,
    BackupSummary,
    BackupType,
    RestorePhase,
    RestoreResult,
    format_size,
    is_backup_name,
)
from waydroid_backup.backup.validator import (
    ValidationResult,
    check_member_path,
    validate_archive,
    validate_backup_name,
)

__all__ = [
    "BackupManager",
    "BackupManifest",
    "BackupResult",
    "BackupSummary",
    "BackupType",
    "RestorePhase",
    "RestoreResult",
    "BACKUP_NAME_PATTERN",
    "format_size",
    "is_backup_name",
    "ValidationResult",
    "check_member_path",
    "validate_archive",
    "validate_backup_name",
]
