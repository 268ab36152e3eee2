"""Exception hierarchy shared by the backup, validation and service layers."""


class BackupError(Exception):
    """Base class for all backup, restore and service errors."""

    pass


class ValidationError(BackupError):
    """An archive member or backup name failed a safety check."""

    pass


class NotFoundError(BackupError):
    """A backup directory or archive file does not exist."""

    pass


class OperationError(BackupError):
    """A service or copy operation failed."""

    pass


class BackupIOError(BackupError):
    """A filesystem write or read failed (disk full, permissions)."""

    pass
