"""Pydantic schemas for container records and container actions."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ContainerSchema(BaseModel):
    """Container response schema."""

    id: int
    host_id: int
    container_id: str
    name: str
    state: Optional[str] = None
    status: Optional[str] = None
    image_name: Optional[str] = None
    image_tag: Optional[str] = None
    repo_digest: Optional[str] = None
    remote_digest: Optional[str] = None
    update_available: bool = False
    update_checked_at: Optional[datetime] = None
    platform_arch: Optional[str] = None
    platform_os: Optional[str] = None
    restart_count: int = 0
    started_at: Optional[datetime] = None
    ports: Dict[str, Any] = Field(default_factory=dict)
    mounts: List[Any] = Field(default_factory=list)
    networks: Dict[str, Any] = Field(default_factory=dict)
    labels: Dict[str, Any] = Field(default_factory=dict)
    is_compose_managed: bool = False
    compose_project: Optional[str] = None
    compose_service: Optional[str] = None
    compose_working_dir: Optional[str] = None
    compose_group_key: Optional[str] = None
    run_command: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ContainerActionRequest(BaseModel):
    """Optional body of container actions."""

    image_ref: Optional[str] = Field(
        default=None, description="Image reference to update to; defaults to the recorded one"
    )
    op_id: Optional[str] = Field(default=None, description="Operation id for log correlation")


class ActionResult(BaseModel):
    """Outcome of a single action: ``ok`` plus a reason on failure."""

    ok: bool
    reason: Optional[str] = None
    code: Optional[int] = None
    op_id: Optional[str] = None


class HostScopeRequest(BaseModel):
    """Scope of fleet-wide record operations; all hosts when ``host_id`` is omitted."""

    host_id: Optional[int] = None
    op_id: Optional[str] = None


class RefreshRequest(BaseModel):
    """Targeted refresh on one host; a compose project, containers, or both."""

    host_id: int
    container_ids: List[str] = Field(default_factory=list)
    container_names: List[str] = Field(default_factory=list)
    compose_project: Optional[str] = None
    op_id: Optional[str] = None


class ComposeOperationRequest(BaseModel):
    host_id: int
    project: str
    working_dir: str
    operation: Literal["down", "pull", "up", "restart", "start", "stop"]
    op_id: Optional[str] = None
