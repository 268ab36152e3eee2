"""
Thin wrappers around tarfile for the gzip tar units stored in backups.

Extraction always goes through one of tarfile's extraction filters, which
refuse absolute paths and members that would land outside the destination.
Callers still run validate_archive() first; the filter is a second gate.
"""

from __future__ import annotations

import logging
import tarfile
from pathlib import Path

from waydroid_backup.errors import BackupIOError, ValidationError

logger = logging.getLogger(__name__)


def create_archive(
    source: Path,
    dest: Path,
    arcname: str | None = None,
    overwrite: bool = False,
) -> Path:
    """
    Write ``source`` (file or directory tree) into a new .tar.gz at ``dest``.

    Args:
        source: File or directory to archive.
        dest: Archive file to create.
        arcname: Name of ``source`` inside the archive (default: its basename).
        overwrite: Replace an existing file at ``dest`` instead of failing.

    Returns:
        The archive path.
    """
    source = Path(source)
    dest = Path(dest)
    try:
        with tarfile.open(dest, "w:gz" if overwrite else "x:gz") as tar:
            tar.add(source, arcname=arcname or source.name)
    except FileExistsError as e:
        raise BackupIOError(f"Archive already exists: {dest}") from e
    except OSError as e:
        raise BackupIOError(f"Cannot write archive {dest}: {e.strerror or e}") from e
    logger.debug(f"Archived {source} -> {dest}")
    return dest


def list_members(archive: Path) -> list[str]:
    """Return member names of a .tar.gz without extracting it."""
    with tarfile.open(archive, "r:gz") as tar:
        return tar.getnames()


def extract_archive(archive: Path, dest: Path, filter: str = "data") -> None:
    """
    Extract a .tar.gz into ``dest``.

    Args:
        archive: Archive to extract.
        dest: Destination directory, created if missing.
        filter: tarfile extraction filter name. "tar" keeps ownership and is
            used for Android state; "data" is stricter and the default.
    """
    dest = Path(dest)
    try:
        dest.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "r:gz") as tar:
            tar.extractall(dest, filter=filter)
    except tarfile.FilterError as e:
        raise ValidationError(f"Refused to extract {archive.name}: {e}") from e
    except tarfile.TarError as e:
        raise BackupIOError(f"Cannot extract {archive.name}: {e}") from e
    except OSError as e:
        raise BackupIOError(f"Cannot extract {archive.name}: {e.strerror or e}") from e
    logger.debug(f"Extracted {archive} -> {dest}")
