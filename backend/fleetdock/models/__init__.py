"""Database models for Fleetdock."""

from fleetdock.models.setting import Setting
from fleetdock.models.host import Host
from fleetdock.models.container import Container
from fleetdock.models.operation_log import OperationLog, OperationLogEntry

__all__ = [
    "Setting",
    "Host",
    "Container",
    "OperationLog",
    "OperationLogEntry",
]
