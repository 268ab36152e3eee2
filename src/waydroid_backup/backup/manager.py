"""
Backup lifecycle and restore pipeline for Waydroid.

Backups live as directories under the configured backup root:

    <backup_dir>/waydroid-backup-YYYYMMDD-HHMMSS/
        manifest.json       written first
        config/             copy of the Waydroid config directory
        wayvnc/wayvnc/      copy of the WayVNC settings (optional)
        vnc-password.txt    (optional)
        waydroid.cfg        (optional)
        userdata.tar.gz     Android user data and apps
        images.tar.gz       system images (full backups only)
        size.txt            written last, marks the backup complete

A backup directory is never modified after creation; it is only removed by
the retention policy or an explicit delete. Operations are not locked
against each other: callers must not run two of them against the same
backup root at once.
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
import shutil
import socket
import tarfile
import tempfile
from collections.abc import Callable, Iterator
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from waydroid_backup.backup.archive import create_archive, extract_archive, list_members
from waydroid_backup.backup.validator import validate_archive, validate_backup_name
from waydroid_backup.config.settings import Settings
from waydroid_backup.errors import (
    BackupError,
    BackupIOError,
    NotFoundError,
    OperationError,
    ValidationError,
)
from waydroid_backup.services.controller import (
    ManagedService,
    ServiceControl,
    ServiceController,
    quiesce,
    waydroid_version,
)

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "waydroid-backup-"
BACKUP_NAME_PATTERN = re.compile(r"waydroid-backup-\d{8}-\d{6}")

MANIFEST_FILE = "manifest.json"
SIZE_FILE = "size.txt"
CONFIG_DIR = "config"
WAYVNC_DIR = "wayvnc"
VNC_PASSWORD_FILE = "vnc-password.txt"
WAYDROID_CFG = "waydroid.cfg"
USERDATA_ARCHIVE = "userdata.tar.gz"
IMAGES_ARCHIVE = "images.tar.gz"

UNKNOWN = "unknown"

# Services held down while a backup is copied (only when Waydroid is running).
CREATE_STOP = (ManagedService.VNC, ManagedService.SESSION)
CREATE_RESTART = (ManagedService.VNC,)

# Services held down for a restore, unconditionally.
RESTORE_STOP = (
    ManagedService.VNC,
    ManagedService.API,
    ManagedService.SESSION,
    ManagedService.CONTAINER,
)
RESTORE_RESTART = (ManagedService.VNC, ManagedService.API)


class BackupType(Enum):
    """What a backup contains."""

    DATA_ONLY = "data-only"
    FULL = "full"


class RestorePhase(Enum):
    """Steps of a restore, in order. FAILED still passes through RESTARTING_SERVICES."""

    IDLE = "idle"
    CONFIRMING = "confirming"
    STOPPING_SERVICES = "stopping-services"
    VALIDATING = "validating"
    EXTRACTING = "extracting"
    RESTARTING_SERVICES = "restarting-services"
    DONE = "done"
    FAILED = "failed"


@dataclass
class BackupManifest:
    """Metadata written once into every backup."""

    backup_name: str
    timestamp: str
    type: str
    hostname: str
    waydroid_version: str

    def to_dict(self) -> dict[str, Any]:
        """Convert manifest to dictionary."""
        return asdict(self)

    def to_json(self) -> str:
        """Serialize the manifest exactly as it is stored on disk."""
        return json.dumps(self.to_dict(), indent=4) + "\n"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupManifest:
        """Create manifest from dictionary."""
        return cls(
            backup_name=data.get("backup_name", UNKNOWN),
            timestamp=data.get("timestamp", UNKNOWN),
            type=data.get("type", UNKNOWN),
            hostname=data.get("hostname", UNKNOWN),
            waydroid_version=data.get("waydroid_version", UNKNOWN),
        )


@dataclass(frozen=True)
class BackupSummary:
    """One backup directory as seen by list()."""

    name: str
    path: Path
    date: str
    type: str
    size: str
    complete: bool
    modified: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path),
            "date": self.date,
            "type": self.type,
            "size": self.size,
            "complete": self.complete,
        }


@dataclass
class BackupResult:
    """Handle for a completed backup."""

    name: str
    path: Path
    manifest: BackupManifest
    size: str
    size_bytes: int
    members: list[str] = field(default_factory=list)


@dataclass
class RestoreResult:
    """Outcome of a restore that was not aborted by an error."""

    name: str
    cancelled: bool = False
    restored: list[str] = field(default_factory=list)
    phase: RestorePhase = RestorePhase.IDLE


def is_backup_name(name: str) -> bool:
    """Return True if ``name`` follows the waydroid-backup-YYYYMMDD-HHMMSS pattern."""
    return BACKUP_NAME_PATTERN.fullmatch(name) is not None


def format_size(num_bytes: int) -> str:
    """Format a byte count the way ``du -sh`` does (4.0K, 12M, 1.5G)."""
    if num_bytes < 1024:
        return f"{num_bytes}B"

    value = float(num_bytes)
    for unit in ("K", "M", "G", "T", "P"):
        value /= 1024
        if value < 1024 or unit == "P":
            break

    if value < 10:
        return f"{math.ceil(value * 10) / 10:.1f}{unit}"
    return f"{math.ceil(value)}{unit}"


def directory_size(path: Path) -> int:
    """Total size in bytes of all files under ``path``, not following symlinks."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for filename in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, filename)).st_size
            except OSError:
                continue
    return total


class BackupManager:
    """
    Create, list, prune, restore, export and import Waydroid backups.

    Args:
        settings: Loaded configuration.
        controller: Service controller used to quiesce Waydroid. Defaults to
            a ServiceController built from the settings.
        clock: Returns the current time; used to name backups.
    """

    def __init__(
        self,
        settings: Settings,
        controller: ServiceControl | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.backup_dir = Path(settings.backup.backup_dir)
        self.paths = settings.paths
        self.controller = controller or ServiceController(
            timeout=settings.services.command_timeout,
            settle_seconds=settings.services.settle_seconds,
        )
        self._clock = clock or (lambda: datetime.now(UTC))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_backup(self, kind: BackupType | str = BackupType.DATA_ONLY) -> BackupResult:
        """
        Create a new backup.

        If the Waydroid session is running it is stopped for the copy and the
        VNC service is started again afterwards, whether or not the copy
        succeeded.

        Args:
            kind: "data-only" (config and user data) or "full" (also images).

        Returns:
            BackupResult for the completed backup.

        Raises:
            ValidationError: Unknown backup type.
            NotFoundError: The user data directory does not exist.
            BackupIOError: A required member could not be written. The
                partial directory is left on disk and is never counted as
                complete.
        """
        try:
            kind = BackupType(kind)
        except ValueError as e:
            raise ValidationError(f"Unknown backup type: {kind}") from e

        now = self._clock()
        name = f"{BACKUP_PREFIX}{now:%Y%m%d-%H%M%S}"
        backup_path = self.backup_dir / name

        manifest = BackupManifest(
            backup_name=name,
            timestamp=now.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
            type=kind.value,
            hostname=socket.gethostname(),
            waydroid_version=self._get_version(),
        )

        logger.info(f"Creating backup: {name}")

        running = self.controller.is_active(ManagedService.SESSION)
        if running:
            logger.warning("Waydroid is currently running. Stopping for backup...")

        with quiesce(
            self.controller,
            stop=CREATE_STOP if running else (),
            restart=CREATE_RESTART if running else (),
        ):
            members = self._write_backup(backup_path, manifest, kind)

        size_bytes = directory_size(backup_path)
        size = format_size(size_bytes)
        self._write_text(backup_path / SIZE_FILE, size + "\n")

        logger.info(f"Backup created: {backup_path} ({size})")

        return BackupResult(
            name=name,
            path=backup_path,
            manifest=manifest,
            size=size,
            size_bytes=size_bytes,
            members=members,
        )

    def list_backups(self) -> Iterator[BackupSummary]:
        """
        Yield every backup directory, oldest name first.

        Directories lacking a manifest are reported with date and type
        "unknown"; ``complete`` is False for anything missing its manifest
        or size marker. Each call starts a fresh scan.
        """
        if not self.backup_dir.is_dir():
            return

        paths = sorted(
            path
            for path in self.backup_dir.iterdir()
            if path.is_dir() and is_backup_name(path.name)
        )
        for path in paths:
            yield self._summarize(path)

    def get_backup(self, name: str) -> BackupSummary:
        """Return the summary for one backup by name."""
        return self._summarize(self._resolve(name))

    def clean_old_backups(
        self,
        max_keep: int | None = None,
        dry_run: bool = False,
    ) -> list[BackupSummary]:
        """
        Apply the retention policy.

        Only complete backups are counted. If there are more than
        ``max_keep``, the oldest (by modification time) are removed until
        ``max_keep`` remain.

        Args:
            max_keep: Backups to keep (default: settings max_backups).
            dry_run: Report what would be removed without removing it.

        Returns:
            The removed (or, for a dry run, removable) backups.
        """
        if max_keep is None:
            max_keep = self.settings.backup.max_backups
        if max_keep < 0:
            raise ValidationError("max_keep cannot be negative")

        complete = [summary for summary in self.list_backups() if summary.complete]
        if len(complete) <= max_keep:
            return []

        complete.sort(key=lambda summary: (summary.modified, summary.name))
        excess = complete[: len(complete) - max_keep]

        logger.info(f"Cleaning old backups (keeping last {max_keep})...")
        for summary in excess:
            if dry_run:
                logger.info(f"Would remove old backup: {summary.name}")
                continue
            logger.info(f"Removing old backup: {summary.name}")
            self._remove_tree(summary.path)

        return excess

    def delete_backup(self, name: str) -> BackupSummary:
        """Remove one backup directory entirely."""
        summary = self.get_backup(name)
        logger.info(f"Deleting backup: {name}")
        self._remove_tree(summary.path)
        return summary

    # =========================================================================
    # Restore / export / import
    # =========================================================================

    def restore_backup(self, name: str, confirmed: bool = False) -> RestoreResult:
        """
        Restore Waydroid state from a backup.

        Nothing is touched unless ``confirmed`` is True. Waydroid services
        are stopped for the duration and started again afterwards, also when
        a member fails validation. Members restored before a failure are not
        rolled back.

        Args:
            name: Backup name, e.g. waydroid-backup-20250112-143000.
            confirmed: The caller has confirmed the destructive restore.

        Returns:
            RestoreResult. ``cancelled`` is True when not confirmed.

        Raises:
            ValidationError: Unsafe name or an archive failed validation.
            NotFoundError: No such backup.
            BackupIOError: Copying or extracting failed.
        """
        backup_path = self._resolve(name)

        self._log_phase(name, RestorePhase.CONFIRMING)
        if not confirmed:
            logger.info("Restore cancelled")
            return RestoreResult(name=name, cancelled=True, phase=RestorePhase.IDLE)

        logger.info(f"Restoring from backup: {name}")
        result = RestoreResult(name=name, phase=RestorePhase.STOPPING_SERVICES)
        self._log_phase(name, RestorePhase.STOPPING_SERVICES)

        try:
            with quiesce(
                self.controller,
                stop=RESTORE_STOP,
                restart=RESTORE_RESTART,
                on_release=lambda: self._log_phase(name, RestorePhase.RESTARTING_SERVICES),
            ):
                self._restore_members(backup_path, result)
        except BackupError as e:
            self._log_phase(name, RestorePhase.FAILED)
            logger.error(f"Restore of {name} failed: {e}")
            raise

        result.phase = RestorePhase.DONE
        self._log_phase(name, RestorePhase.DONE)
        return result

    def export_backup(self, name: str, output_dir: Path | None = None) -> Path:
        """
        Package a backup directory into ``<output_dir>/<name>.tar.gz``.

        Args:
            name: Backup to export.
            output_dir: Destination directory (default: settings export_dir).

        Returns:
            Path of the written archive.
        """
        summary = self.get_backup(name)
        if not summary.complete:
            logger.warning(f"Exporting incomplete backup: {name}")

        output_dir = Path(output_dir) if output_dir else Path(self.settings.backup.export_dir)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupIOError(f"Cannot create {output_dir}: {e.strerror or e}") from e

        export_file = output_dir / f"{name}.tar.gz"
        logger.info(f"Exporting backup to: {export_file}")
        create_archive(summary.path, export_file, arcname=name, overwrite=True)
        return export_file

    def import_backup(self, archive_path: Path) -> BackupSummary:
        """
        Import a backup previously written by export_backup().

        The archive must contain a single top-level backup directory and
        pass validation before anything is written; symlinks must point
        inside it. The archive is unpacked into a hidden staging directory in
        the backup root and renamed into place only once extraction has
        finished, so a failed import leaves no backup behind. Importing a
        backup that is already present with the same manifest does nothing.

        Raises:
            NotFoundError: The archive file does not exist.
            ValidationError: The archive is unsafe or not a backup export.
            OperationError: A different backup with the same name exists.
            BackupIOError: The backup could not be unpacked or moved into place.
        """
        archive_path = Path(archive_path)
        if not archive_path.is_file():
            raise NotFoundError(f"File not found: {archive_path}")

        logger.info(f"Importing backup from: {archive_path}")

        try:
            names = list_members(archive_path)
        except (tarfile.TarError, OSError, EOFError) as e:
            raise ValidationError("unreadable archive") from e
        if not names:
            raise ValidationError("empty archive")

        top = names[0].split("/", 1)[0]
        if not is_backup_name(top):
            raise ValidationError(
                f"Archive is not a waydroid backup export: unexpected entry {names[0]!r}"
            )

        validate_archive(archive_path, expected_prefix=top, strict_links=True).raise_for_status()

        incoming_manifest = self._read_archived_manifest(archive_path, top)
        target = self.backup_dir / top
        if target.exists():
            existing = target / MANIFEST_FILE
            if existing.is_file() and existing.read_bytes() == incoming_manifest:
                logger.info(f"Backup {top} already present, nothing to import")
                return self._summarize(target)
            raise OperationError(f"Backup {top} already exists with different contents")

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=".import-", dir=self.backup_dir))
        except OSError as e:
            raise BackupIOError(f"Cannot create {self.backup_dir}: {e.strerror or e}") from e

        try:
            extract_archive(archive_path, staging, filter="data")
            (staging / top).rename(target)
        except OSError as e:
            raise BackupIOError(
                f"Cannot move {top} into {self.backup_dir}: {e.strerror or e}"
            ) from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info(f"Backup imported: {top}")
        return self._summarize(target)

    # =========================================================================
    # Internals
    # =========================================================================

    def _write_backup(
        self,
        backup_path: Path,
        manifest: BackupManifest,
        kind: BackupType,
    ) -> list[str]:
        """Write all members of a new backup. Returns the member names written."""
        try:
            backup_path.mkdir(parents=True)
        except FileExistsError as e:
            raise BackupIOError(f"Backup already exists: {backup_path.name}") from e
        except OSError as e:
            raise BackupIOError(f"Cannot create {backup_path}: {e.strerror or e}") from e

        self._write_text(backup_path / MANIFEST_FILE, manifest.to_json())
        members = [MANIFEST_FILE]

        logger.info("Backing up configuration...")
        if self.paths.waydroid_config.is_dir():
            self._copy_tree(self.paths.waydroid_config, backup_path / CONFIG_DIR)
            members.append(CONFIG_DIR)

        if (self.paths.wayvnc_dir / "config").is_file():
            self._copy_tree(self.paths.wayvnc_dir, backup_path / WAYVNC_DIR / "wayvnc")
            members.append(WAYVNC_DIR)

        if self.paths.vnc_password_file.is_file():
            self._copy_file(self.paths.vnc_password_file, backup_path / VNC_PASSWORD_FILE)
            members.append(VNC_PASSWORD_FILE)

        logger.info("Backing up Waydroid data...")
        waydroid_cfg = self.paths.waydroid_data / WAYDROID_CFG
        if waydroid_cfg.is_file():
            self._copy_file(waydroid_cfg, backup_path / WAYDROID_CFG)
            members.append(WAYDROID_CFG)

        data_dir = self.paths.waydroid_data / "data"
        if not data_dir.is_dir():
            raise NotFoundError(f"User data directory not found: {data_dir}")
        logger.info("Backing up user data and apps...")
        create_archive(data_dir, backup_path / USERDATA_ARCHIVE, arcname="data")
        members.append(USERDATA_ARCHIVE)

        if kind is BackupType.FULL:
            images_dir = self.paths.waydroid_data / "images"
            if images_dir.is_dir():
                logger.info("Backing up system images (this may take a while)...")
                create_archive(images_dir, backup_path / IMAGES_ARCHIVE, arcname="images")
                members.append(IMAGES_ARCHIVE)
            else:
                logger.warning(f"No system images found at {images_dir}")

        return members

    def _restore_members(self, backup_path: Path, result: RestoreResult) -> None:
        logger.info("Restoring configuration...")
        config_src = backup_path / CONFIG_DIR
        if config_src.is_dir():
            self._remove_tree(self.paths.waydroid_config, missing_ok=True)
            self._copy_tree(config_src, self.paths.waydroid_config)
            result.restored.append(CONFIG_DIR)

        wayvnc_src = backup_path / WAYVNC_DIR / "wayvnc"
        if wayvnc_src.is_dir():
            wayvnc_dir = self.paths.wayvnc_dir
            self._copy_tree(wayvnc_src, wayvnc_dir, dirs_exist_ok=True)
            self._chmod(wayvnc_dir / "config", 0o644)
            self._chmod(wayvnc_dir / "password", 0o600)
            result.restored.append(WAYVNC_DIR)

        password_src = backup_path / VNC_PASSWORD_FILE
        if password_src.is_file():
            self._copy_file(password_src, self.paths.vnc_password_file)
            result.restored.append(VNC_PASSWORD_FILE)

        cfg_src = backup_path / WAYDROID_CFG
        if cfg_src.is_file():
            self._copy_file(cfg_src, self.paths.waydroid_data / WAYDROID_CFG)
            result.restored.append(WAYDROID_CFG)

        for archive_name, prefix in ((USERDATA_ARCHIVE, "data"), (IMAGES_ARCHIVE, "images")):
            archive = backup_path / archive_name
            if not archive.is_file():
                continue

            result.phase = RestorePhase.VALIDATING
            self._log_phase(backup_path.name, RestorePhase.VALIDATING)
            validation = validate_archive(archive, expected_prefix=prefix)
            if not validation.ok:
                raise ValidationError(f"Validation failed for {archive_name}: {validation.reason}")

            result.phase = RestorePhase.EXTRACTING
            self._log_phase(backup_path.name, RestorePhase.EXTRACTING)
            # "tar" keeps the Android uid/gid ownership that "data" would drop.
            extract_archive(archive, self.paths.waydroid_data, filter="tar")
            result.restored.append(archive_name)

    def _resolve(self, name: str) -> Path:
        """Validate a backup name and return its existing directory."""
        validate_backup_name(name)
        backup_path = self.backup_dir / name
        if not backup_path.is_dir():
            raise NotFoundError(f"Backup not found: {name}")
        return backup_path

    def _summarize(self, path: Path) -> BackupSummary:
        date = backup_type = UNKNOWN
        manifest_path = path / MANIFEST_FILE
        has_manifest = manifest_path.is_file()
        if has_manifest:
            try:
                manifest = BackupManifest.from_dict(json.loads(manifest_path.read_text()))
                date = manifest.timestamp.split("T", 1)[0]
                backup_type = manifest.type
            except (OSError, ValueError, AttributeError) as e:
                logger.warning(f"Unreadable manifest in {path.name}: {e}")
                has_manifest = False

        size = None
        size_path = path / SIZE_FILE
        has_size = size_path.is_file()
        if has_size:
            try:
                size = size_path.read_text().strip()
            except (OSError, ValueError) as e:
                logger.warning(f"Unreadable size marker in {path.name}: {e}")
                has_size = False
        if size is None:
            size = format_size(directory_size(path))

        return BackupSummary(
            name=path.name,
            path=path,
            date=date,
            type=backup_type,
            size=size,
            complete=has_manifest and has_size,
            modified=path.stat().st_mtime,
        )

    def _read_archived_manifest(self, archive_path: Path, top: str) -> bytes:
        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                member = tar.extractfile(f"{top}/{MANIFEST_FILE}")
                if member is None:
                    raise ValidationError(f"Manifest in {archive_path.name} is not a file")
                return member.read()
        except KeyError as e:
            raise ValidationError(f"Archive has no {top}/{MANIFEST_FILE}") from e
        except (tarfile.TarError, OSError) as e:
            raise ValidationError("unreadable archive") from e

    def _get_version(self) -> str:
        return waydroid_version(timeout=self.settings.services.command_timeout)

    @staticmethod
    def _log_phase(name: str, phase: RestorePhase) -> None:
        logger.info(f"Restore {name}: {phase.value}")

    @staticmethod
    def _write_text(path: Path, text: str) -> None:
        try:
            path.write_text(text)
        except OSError as e:
            raise BackupIOError(f"Cannot write {path}: {e.strerror or e}") from e

    @staticmethod
    def _copy_file(src: Path, dest: Path) -> None:
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
        except OSError as e:
            raise BackupIOError(f"Cannot copy {src} to {dest}: {e}") from e

    @staticmethod
    def _copy_tree(src: Path, dest: Path, dirs_exist_ok: bool = False) -> None:
        try:
            shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=dirs_exist_ok)
        except OSError as e:
            raise BackupIOError(f"Cannot copy {src} to {dest}: {e}") from e

    @staticmethod
    def _remove_tree(path: Path, missing_ok: bool = False) -> None:
        if missing_ok and not path.exists():
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise BackupIOError(f"Cannot remove {path}: {e.strerror or e}") from e

    @staticmethod
    def _chmod(path: Path, mode: int) -> None:
        if not path.is_file():
            return
        try:
            path.chmod(mode)
        except OSError as e:
            raise BackupIOError(f"Cannot set permissions on {path}: {e.strerror or e}") from e
