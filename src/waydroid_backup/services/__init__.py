"""
Service control for waydroid-backup.

Usage:
    from waydroid_backup.services import ManagedService, ServiceController, quiesce

    controller = ServiceController(timeout=60)
    with quiesce(controller, stop=[ManagedService.VNC], restart=[ManagedService.VNC]):
        ...
"""

from waydroid_backup.services.controller import (
    SERVICE_COMMANDS,
    ManagedService,
    ServiceCommands,
    ServiceControl,
    ServiceController,
    quiesce,
    waydroid_version,
)

__all__ = [
    "ManagedService",
    "ServiceCommands",
    "ServiceControl",
    "ServiceController",
    "SERVICE_COMMANDS",
    "quiesce",
    "waydroid_version",
]
