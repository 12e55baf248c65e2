"""Pydantic schemas for task runs and operation logs."""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class TaskCreate(BaseModel):
    """Request to run a command on a set of hosts."""

    command: str = Field(min_length=1)
    host_ids: List[int] = Field(min_length=1)
    concurrency: Optional[int] = Field(default=None, ge=1, le=100)
    title: Optional[str] = None


class DiscoverTaskCreate(BaseModel):
    """Request to run container discovery through the task runner."""

    host_ids: List[int] = Field(min_length=1)
    concurrency: Optional[int] = Field(default=None, ge=1, le=100)


class TaskStarted(BaseModel):
    op_id: str


class OperationSchema(BaseModel):
    """Operation log header."""

    id: str
    title: str
    execution_type: str
    status: str
    command: Optional[str] = None
    targets: List[Any] = Field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    model_config = {"from_attributes": True}


class OperationEntrySchema(BaseModel):
    seq: int
    stream: str
    content: str
    host_id: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ConnectionTestResult(BaseModel):
    ok: bool
    output: Optional[str] = None
    reason: Optional[str] = None
