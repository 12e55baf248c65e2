"""Pydantic schemas for API validation and docker output parsing."""

from fleetdock.schemas.container import (
    ActionResult,
    ComposeOperationRequest,
    ContainerActionRequest,
    ContainerSchema,
    HostScopeRequest,
    RefreshRequest,
)
from fleetdock.schemas.task import (
    ConnectionTestResult,
    DiscoverTaskCreate,
    OperationEntrySchema,
    OperationSchema,
    TaskCreate,
    TaskStarted,
)

__all__ = [
    "ActionResult",
    "ComposeOperationRequest",
    "ContainerActionRequest",
    "ContainerSchema",
    "HostScopeRequest",
    "RefreshRequest",
    "ConnectionTestResult",
    "DiscoverTaskCreate",
    "OperationEntrySchema",
    "OperationSchema",
    "TaskCreate",
    "TaskStarted",
]
