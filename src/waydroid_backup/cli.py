"""
Command-line interface for waydroid-backup.

Provides one subcommand per backup operation: backup, list, restore, clean,
delete, export and import, plus info to show the resolved configuration.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

from waydroid_backup import __version__
from waydroid_backup.backup import BackupManager, BackupType
from waydroid_backup.config.settings import (
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    settings_to_dict,
)
from waydroid_backup.errors import BackupError

# Set up logging
logger = logging.getLogger(__name__)

# Global output setting (set during main() based on args)
_quiet_mode = False


def set_output_mode(quiet: bool = False) -> None:
    """Suppress non-essential output when quiet is True."""
    global _quiet_mode
    _quiet_mode = quiet


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def confirm(prompt: str) -> bool:
    """Ask a yes/no question. Only an explicit "yes" counts; no input means no."""
    try:
        response = input(f"{prompt} (yes/no): ").strip().lower()
    except EOFError:
        output()
        return False
    return response == "yes"


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="waydroid-backup",
        description="Back up and restore Waydroid data, apps and configuration",
        epilog="Example: waydroid-backup restore waydroid-backup-20250112-143000",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"waydroid-backup {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: /etc/waydroid-backup/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show configuration and backup location",
        description="Display the resolved configuration and backup store statistics.",
    )
    info_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    info_parser.set_defaults(func=cmd_info)

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Create a new backup",
        description="Back up Waydroid user data and configuration (and images with --full).",
    )
    kind_group = backup_parser.add_mutually_exclusive_group()
    kind_group.add_argument(
        "--full",
        action="store_const",
        const=BackupType.FULL.value,
        dest="kind",
        help="Backup everything including images (larger)",
    )
    kind_group.add_argument(
        "--data-only",
        action="store_const",
        const=BackupType.DATA_ONLY.value,
        dest="kind",
        help="Backup only user data and apps (default)",
    )
    backup_parser.add_argument(
        "--no-clean",
        action="store_true",
        dest="no_clean",
        help="Do not remove old backups afterwards",
    )
    backup_parser.set_defaults(func=cmd_backup, kind=BackupType.DATA_ONLY.value)

    # list command
    list_parser = subparsers.add_parser(
        "list",
        help="List all available backups",
        description="List backups in the backup directory, oldest first.",
    )
    list_parser.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format (default: table)",
    )
    list_parser.set_defaults(func=cmd_list)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore from a backup",
        description="Overwrite current Waydroid data with the contents of a backup.",
    )
    restore_parser.add_argument(
        "name",
        metavar="BACKUP",
        help="Backup name (see 'list')",
    )
    restore_parser.add_argument(
        "--yes", "--force",
        action="store_true",
        dest="yes",
        help="Skip confirmation prompt",
    )
    restore_parser.set_defaults(func=cmd_restore)

    # clean command
    clean_parser = subparsers.add_parser(
        "clean",
        help="Remove old backups",
        description="Remove the oldest backups beyond the retention limit.",
    )
    clean_parser.add_argument(
        "--keep",
        type=int,
        metavar="N",
        help="Number of backups to keep, at least 1 (default: max_backups from config)",
    )
    clean_parser.add_argument(
        "--dry-run",
        action="store_true",
        dest="dry_run",
        help="Show what would be deleted without deleting",
    )
    clean_parser.set_defaults(func=cmd_clean)

    # delete command
    delete_parser = subparsers.add_parser(
        "delete",
        help="Delete one backup",
        description="Remove a single backup directory.",
    )
    delete_parser.add_argument(
        "name",
        metavar="BACKUP",
        help="Backup name (see 'list')",
    )
    delete_parser.add_argument(
        "--yes", "--force",
        action="store_true",
        dest="yes",
        help="Skip confirmation prompt",
    )
    delete_parser.set_defaults(func=cmd_delete)

    # export command
    export_parser = subparsers.add_parser(
        "export",
        help="Export backup to tar.gz for external storage",
        description="Package a backup directory into a single .tar.gz file.",
    )
    export_parser.add_argument(
        "name",
        metavar="BACKUP",
        help="Backup name (see 'list')",
    )
    export_parser.add_argument(
        "--output",
        "-o",
        metavar="DIR",
        help="Output directory (default: export_dir from config)",
    )
    export_parser.set_defaults(func=cmd_export)

    # import command
    import_parser = subparsers.add_parser(
        "import",
        help="Import backup from tar.gz file",
        description="Validate and unpack an exported backup into the backup directory.",
    )
    import_parser.add_argument(
        "file",
        metavar="FILE",
        help="Path to exported backup (.tar.gz)",
    )
    import_parser.set_defaults(func=cmd_import)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_settings(args: argparse.Namespace) -> Settings:
    """Load configuration for a command and apply its log level."""
    config_path = Path(args.config) if args.config else None
    settings = load_config(config_path)
    if not args.quiet and not args.verbose:
        logging.getLogger().setLevel(settings.log_level)
    return settings


def cmd_info(args: argparse.Namespace) -> int:
    """Show the resolved configuration."""
    settings = load_settings(args)
    manager = BackupManager(settings)
    backups = list(manager.list_backups())
    complete = sum(1 for summary in backups if summary.complete)

    if args.json:
        data = {
            "version": __version__,
            "config_file": str(Path(args.config) if args.config else get_config_path()),
            "settings": settings_to_dict(settings),
            "backups": {"total": len(backups), "complete": complete},
        }
        output(json.dumps(data, indent=2), force=True)
        return 0

    output(f"waydroid-backup {__version__}")
    output("=" * 50)
    output()
    output(f"Config file:       {args.config or get_config_path()}")
    output(f"Backup directory:  {settings.backup.backup_dir}")
    output(f"Max backups:       {settings.backup.max_backups}")
    output(f"Auto clean:        {settings.backup.auto_clean}")
    output(f"Export directory:  {settings.backup.export_dir}")
    output(f"Waydroid data:     {settings.paths.waydroid_data}")
    output(f"Waydroid config:   {settings.paths.waydroid_config}")
    output(f"WayVNC settings:   {settings.paths.wayvnc_dir}")
    output(f"VNC password file: {settings.paths.vnc_password_file}")
    output()
    output(f"Backups: {len(backups)} ({complete} complete)")
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    """Create a new backup."""
    settings = load_settings(args)
    manager = BackupManager(settings)

    try:
        result = manager.create_backup(args.kind)
    except BackupError as e:
        output_error(f"Backup failed: {e}")
        return 1

    output()
    output("Backup created successfully!")
    output(f"  Name:     {result.name}")
    output(f"  Location: {result.path}")
    output(f"  Size:     {result.size}")
    output(f"  Contents: {', '.join(result.members)}")

    if settings.backup.auto_clean and not args.no_clean:
        try:
            removed = manager.clean_old_backups()
        except BackupError as e:
            output_error(f"Cleanup failed: {e}")
            return 1
        if removed:
            output()
            output(f"Removed {len(removed)} old backup(s):")
            for summary in removed:
                output(f"  {summary.name}")

    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """List all available backups."""
    settings = load_settings(args)
    manager = BackupManager(settings)
    backups = list(manager.list_backups())

    if args.format == "json":
        output(json.dumps([summary.to_dict() for summary in backups], indent=2), force=True)
        return 0

    output("Available Backups:")
    output()

    if not backups:
        output(f"No backups found in {settings.backup.backup_dir}")
        return 0

    output(f"{'Backup Name':<35} {'Date':<15} {'Size':<15} Type")
    output("─" * 76)
    for summary in backups:
        backup_type = summary.type if summary.complete else f"{summary.type} (incomplete)"
        output(f"{summary.name:<35} {summary.date:<15} {summary.size:<15} {backup_type}")
    output()
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore from a backup."""
    settings = load_settings(args)
    manager = BackupManager(settings)

    try:
        summary = manager.get_backup(args.name)
    except BackupError as e:
        output_error(f"Error: {e}")
        return 1

    output("Waydroid Restore")
    output("=" * 50)
    output()
    output(f"Backup: {summary.name}")
    output(f"  Created: {summary.date}")
    output(f"  Type:    {summary.type}")
    output(f"  Size:    {summary.size}")
    output()

    confirmed = args.yes
    if not confirmed:
        output("WARNING: This will overwrite current Waydroid data!")
        confirmed = confirm("Are you sure you want to restore?")

    try:
        result = manager.restore_backup(args.name, confirmed=confirmed)
    except BackupError as e:
        output()
        output_error(f"Restore failed: {e}")
        return 1

    if result.cancelled:
        output("Restore cancelled.")
        return 0

    output()
    output("Restore Complete!")
    output(f"Waydroid has been restored from: {result.name}")
    output(f"  Restored: {', '.join(result.restored) or 'nothing'}")
    return 0


def cmd_clean(args: argparse.Namespace) -> int:
    """Remove old backups beyond the retention limit."""
    settings = load_settings(args)
    manager = BackupManager(settings)
    keep = args.keep if args.keep is not None else settings.backup.max_backups
    if keep < 1:
        output_error("Error: --keep must be at least 1")
        return 1

    try:
        removed = manager.clean_old_backups(max_keep=keep, dry_run=args.dry_run)
    except BackupError as e:
        output_error(f"Cleanup failed: {e}")
        return 1

    if not removed:
        output(f"Nothing to clean up (keeping last {keep}).")
        return 0

    verb = "Would remove" if args.dry_run else "Removed"
    output(f"{verb} {len(removed)} old backup(s):")
    for summary in removed:
        output(f"  {summary.name} ({summary.date}, {summary.size})")
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    """Delete one backup."""
    settings = load_settings(args)
    manager = BackupManager(settings)

    try:
        summary = manager.get_backup(args.name)
    except BackupError as e:
        output_error(f"Error: {e}")
        return 1

    if not args.yes:
        output("This action cannot be undone.")
        if not confirm(f"Delete {summary.name}?"):
            output("Delete cancelled.")
            return 0

    try:
        manager.delete_backup(args.name)
    except BackupError as e:
        output_error(f"Delete failed: {e}")
        return 1

    output(f"Deleted backup: {summary.name}")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Export a backup to a single archive."""
    settings = load_settings(args)
    manager = BackupManager(settings)
    output_dir = Path(args.output) if args.output else None

    try:
        export_file = manager.export_backup(args.name, output_dir=output_dir)
    except BackupError as e:
        output_error(f"Export failed: {e}")
        return 1

    size_bytes = export_file.stat().st_size
    output("Backup exported successfully")
    output(f"  File: {export_file}")
    output(f"  Size: {size_bytes:,} bytes ({size_bytes / 1024 / 1024:.2f} MB)")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Import a backup archive."""
    settings = load_settings(args)
    manager = BackupManager(settings)

    try:
        summary = manager.import_backup(Path(args.file))
    except BackupError as e:
        output_error(f"Import failed: {e}")
        return 1

    output("Backup imported successfully")
    output(f"  Name: {summary.name}")
    output(f"  Date: {summary.date}")
    output(f"  Type: {summary.type}")
    output(f"  Size: {summary.size}")
    return 0


def main() -> NoReturn:
    """Main entry point for the waydroid-backup CLI."""
    parser = create_parser()
    args = parser.parse_args()

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except BackupError as e:
        output_error(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
