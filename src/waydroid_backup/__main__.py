"""
Entry point for running waydroid-backup as a module.

Usage:
    python -m waydroid_backup [command] [options]
"""

from waydroid_backup.cli import main

if __name__ == "__main__":
    main()
