"""
waydroid-backup - Backup and restore for Waydroid in Proxmox LXC

Creates, lists, prunes, restores, exports and imports backups of a Waydroid
installation: Android user data and apps, Waydroid and WayVNC configuration,
the VNC password and, for full backups, the system images.

Key Features:
    - Timestamped backup directories with a JSON manifest
    - Retention policy keeping the newest N complete backups
    - Archive validation before every extraction (path traversal,
      absolute paths, shell metacharacters)
    - Waydroid services stopped around copies and always restarted
    - Portable export/import of single backups as .tar.gz
"""

__version__ = "2.0.0"
__author__ = ""
__email__ = ""

from waydroid_backup.config.settings import Settings, load_config
from waydroid_backup.errors import (
    BackupError,
    BackupIOError,
    NotFoundError,
    OperationError,
    ValidationError,
)

__all__ = [
    "__version__",
    "Settings",
    "load_config",
    "BackupError",
    "BackupIOError",
    "NotFoundError",
    "OperationError",
    "ValidationError",
]
