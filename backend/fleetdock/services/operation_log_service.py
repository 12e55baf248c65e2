"""Persistence for operation logs and their entries."""

import logging
import uuid
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from fleetdock.exceptions import OperationNotFoundError
from fleetdock.models.operation_log import OperationLog, OperationLogEntry, OperationStatus

logger = logging.getLogger(__name__)


class OperationLogService:
    """Create operations, transition their status and append output entries.

    Entries are append-only; only ``status`` and ``end_time`` of an operation
    are ever rewritten.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create_operation(
        self,
        title: str,
        execution_type: str = "task",
        command: Optional[str] = None,
        targets: Optional[Sequence[Any]] = None,
        op_id: Optional[str] = None,
    ) -> str:
        """Create a PENDING operation and return its id."""
        op_id = op_id or uuid.uuid4().hex
        async with self.session_factory() as db:
            db.add(
                OperationLog(
                    id=op_id,
                    title=title,
                    execution_type=execution_type,
                    status=OperationStatus.PENDING,
                    command=command,
                    targets=list(targets or []),
                    start_time=datetime.now(UTC),
                )
            )
            await db.commit()
        logger.info(f"Created operation {op_id}: {title}")
        return op_id

    async def update_status(self, op_id: str, status: str) -> None:
        """Transition an operation; terminal statuses also record the end time.

        Raises:
            OperationNotFoundError: If the operation does not exist
        """
        async with self.session_factory() as db:
            operation = await db.get(OperationLog, op_id)
            if operation is None:
                raise OperationNotFoundError(op_id)
            operation.status = status
            if status in OperationStatus.TERMINAL:
                operation.end_time = datetime.now(UTC)
            await db.commit()

    async def append_entries(self, op_id: str, entries: List[Dict[str, Any]]) -> int:
        """Append entries in one batch, continuing the operation's sequence.

        Each entry is a dict with ``stream``, ``content`` and optionally
        ``host_id`` and ``created_at``.

        Returns:
            Number of entries written
        """
        if not entries:
            return 0
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.max(OperationLogEntry.seq)).where(
                    OperationLogEntry.operation_id == op_id
                )
            )
            next_seq = (result.scalar() or 0) + 1
            for offset, entry in enumerate(entries):
                db.add(
                    OperationLogEntry(
                        operation_id=op_id,
                        seq=next_seq + offset,
                        stream=entry.get("stream", "stdout"),
                        content=entry.get("content", ""),
                        host_id=entry.get("host_id"),
                        created_at=entry.get("created_at") or datetime.now(UTC),
                    )
                )
            await db.commit()
        return len(entries)

    async def get_operation(self, op_id: str) -> OperationLog:
        async with self.session_factory() as db:
            operation = await db.get(OperationLog, op_id)
            if operation is None:
                raise OperationNotFoundError(op_id)
            return operation

    async def list_entries(self, op_id: str) -> List[OperationLogEntry]:
        """All entries of an operation in order, for late-joiner replay."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(OperationLogEntry)
                .where(OperationLogEntry.operation_id == op_id)
                .order_by(OperationLogEntry.seq)
            )
            return list(result.scalars().all())

    async def list_operations(self, limit: int = 50) -> List[OperationLog]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(OperationLog).order_by(OperationLog.start_time.desc()).limit(limit)
            )
            return list(result.scalars().all())
