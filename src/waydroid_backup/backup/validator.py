"""
Safety checks for backup archives and backup names.

Every gzip tar unit is inspected here before anything is extracted from it.
Member paths are split into components and checked one by one: a path is
accepted only if it is relative, has no ``..`` component, and contains no
shell metacharacters or control characters. A single bad member rejects the
whole archive.
"""

from __future__ import annotations

import logging
import posixpath
import tarfile
from dataclasses import dataclass
from pathlib import Path

from waydroid_backup.errors import ValidationError

logger = logging.getLogger(__name__)

# Characters that would change meaning if a name were interpolated into a shell command.
SHELL_METACHARACTERS = frozenset("$|;&`()<>{}")

# Backup names also forbid glob brackets.
NAME_FORBIDDEN_CHARACTERS = SHELL_METACHARACTERS | frozenset("[]")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one archive."""

    ok: bool
    reason: str | None = None
    member_count: int = 0

    def raise_for_status(self) -> None:
        """Raise ValidationError if the archive was rejected."""
        if not self.ok:
            raise ValidationError(self.reason or "archive rejected")


def check_member_path(path: str, expected_prefix: str | None = None) -> str | None:
    """
    Check a single archive member path.

    Args:
        path: Member name as stored in the archive.
        expected_prefix: If given, the first path component must equal it.

    Returns:
        A human readable reason if the path is unsafe, otherwise None.
    """
    if not path:
        return "empty member name"

    for char in path:
        if char == "\x00" or ord(char) < 0x20 or ord(char) == 0x7F:
            return f"control character in member name: {path!r}"

    if path.startswith("/"):
        return f"absolute path: {path}"

    bad = sorted(set(path) & SHELL_METACHARACTERS)
    if bad:
        return f"suspicious characters {''.join(bad)!r} in member name: {path}"

    # Tar lists directories with a trailing slash and may write "./" entries.
    components = [part for part in path.rstrip("/").split("/") if part not in ("", ".")]
    if ".." in components:
        return f"parent directory reference: {path}"
    if not components:
        return f"member resolves to archive root: {path}"

    if expected_prefix is not None and components[0] != expected_prefix:
        return f"member outside expected directory '{expected_prefix}/': {path}"

    return None


def check_symlink_target(
    member: tarfile.TarInfo,
    expected_prefix: str | None = None,
) -> str | None:
    """
    Check that a symlink points inside the archive.

    Relative targets are resolved against the link's own directory. Absolute
    targets, targets that climb above the archive root and, when a prefix is
    given, targets outside that prefix are rejected.
    """
    target = member.linkname
    if not target:
        return f"symlink with empty target: {member.name}"

    if target.startswith("/"):
        return f"symlink to absolute path: {member.name} -> {target}"

    link_dir = posixpath.dirname(member.name.rstrip("/"))
    resolved = posixpath.normpath(posixpath.join(link_dir, target))
    first = resolved.split("/", 1)[0]
    if first == "..":
        return f"symlink escapes archive: {member.name} -> {target}"

    if expected_prefix is not None and first != expected_prefix:
        return (
            f"symlink outside expected directory '{expected_prefix}/': "
            f"{member.name} -> {target}"
        )

    return None


def check_member(
    member: tarfile.TarInfo,
    expected_prefix: str | None = None,
    strict_links: bool = False,
) -> str | None:
    """
    Check a member's name, type and link target.

    Hard-link targets always get the same path checks as member names.
    Symlink targets are only resolved when ``strict_links`` is set; Android
    user data archives hold absolute symlinks.
    """
    reason = check_member_path(member.name, expected_prefix)
    if reason:
        return reason

    if member.ischr() or member.isblk() or member.isfifo():
        return f"special file not allowed: {member.name}"

    if member.islnk():
        reason = check_member_path(member.linkname, expected_prefix)
        if reason:
            return f"hard link {member.name}: {reason}"

    if member.issym():
        if "\x00" in member.linkname:
            return f"control character in link target: {member.name}"
        if strict_links:
            return check_symlink_target(member, expected_prefix)

    return None


def validate_archive(
    archive_path: Path | str,
    expected_prefix: str | None = None,
    strict_links: bool = False,
) -> ValidationResult:
    """
    Decide whether a gzip tar archive is safe to extract.

    Lists the archive without extracting anything. The archive is accepted
    only if it is readable, non-empty, and every member passes
    check_member(). The reason for the first violation found is returned.

    Args:
        archive_path: Path to the .tar.gz file.
        expected_prefix: Directory every member must live under, e.g. "data".
        strict_links: Also require symlinks to point inside the archive
            (and inside ``expected_prefix``).

    Returns:
        ValidationResult with ok=True, or ok=False and a reason.
    """
    archive_path = Path(archive_path)

    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            members = tar.getmembers()
    except (tarfile.TarError, OSError, EOFError) as e:
        logger.debug(f"Cannot read {archive_path}: {e}")
        return ValidationResult(ok=False, reason="unreadable archive")

    if not members:
        return ValidationResult(ok=False, reason="empty archive")

    for member in members:
        reason = check_member(member, expected_prefix, strict_links)
        if reason:
            logger.warning(f"Rejected {archive_path.name}: {reason}")
            return ValidationResult(ok=False, reason=reason)

    return ValidationResult(ok=True, member_count=len(members))


def validate_backup_name(name: str) -> None:
    """
    Reject backup names that could escape the backup root or reach a shell.

    The name must be a single path component that does not start with a dot
    and contains no whitespace, control characters, shell metacharacters or
    brackets.

    Raises:
        ValidationError: Naming the offending pattern.
    """
    if not name:
        raise ValidationError("Invalid backup name: name is empty")

    if "/" in name or "\\" in name:
        raise ValidationError(f"Invalid backup name {name!r}: contains a path separator")

    if name.startswith("."):
        raise ValidationError(f"Invalid backup name {name!r}: starts with '.'")

    for char in name:
        if char.isspace() or ord(char) < 0x20 or ord(char) == 0x7F:
            raise ValidationError(
                f"Invalid backup name {name!r}: contains whitespace or control characters"
            )

    bad = sorted(set(name) & NAME_FORBIDDEN_CHARACTERS)
    if bad:
        raise ValidationError(
            f"Invalid backup name {name!r}: contains dangerous characters {''.join(bad)!r}"
        )
