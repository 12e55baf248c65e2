"""Operation log models for tasks and container operations."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from fleetdock.db import Base


class OperationStatus:
    """Operation log status values."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"

    TERMINAL = frozenset({COMPLETED, ERROR, CANCELLED})


class OperationLog(Base):
    """One triggered task or container operation.

    Append-only apart from ``status`` and ``end_time``.
    """

    __tablename__ = "operation_logs"
    __table_args__ = (
        Index("idx_operation_log_status", "status"),
        Index("idx_operation_log_start_time", "start_time"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    # task, discover, update, lifecycle, compose, check
    execution_type: Mapped[str] = mapped_column(String, nullable=False, default="task")
    status: Mapped[str] = mapped_column(String, nullable=False, default=OperationStatus.PENDING)
    command: Mapped[str | None] = mapped_column(Text, nullable=True)
    targets: Mapped[list[Any]] = mapped_column(JSON, default=list)
    start_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OperationLogEntry(Base):
    """A single line of operation output, ordered by ``seq``."""

    __tablename__ = "operation_log_entries"
    __table_args__ = (Index("idx_operation_entry_op_seq", "operation_id", "seq"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_id: Mapped[str] = mapped_column(
        String, ForeignKey("operation_logs.id", ondelete="CASCADE"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # stdout, stderr, system
    stream: Mapped[str] = mapped_column(String, nullable=False, default="stdout")
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    host_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
