"""Structured reporting of operation output.

Each core operation is handed an :class:`OperationReporter` instead of
writing to shared loggers or consoles. The reporter writes to the module
logger, publishes live events on ``task:<opId>`` and buffers entries so they
can be persisted in one batch when the operation completes.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from fleetdock.services.event_bus import (
    EVENT_DATA,
    EVENT_END,
    EVENT_ERROR,
    EVENT_STDERR,
    EventBus,
    task_channel,
)
from fleetdock.services.operation_log_service import OperationLogService
from fleetdock.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)


class OperationReporter:
    """Per-operation sink for output lines and lifecycle events.

    Without an ``op_id`` the reporter only logs; that is what operations
    triggered without log correlation (scheduler jobs, plain API calls) use.
    """

    def __init__(
        self,
        op_id: Optional[str] = None,
        event_bus: Optional[EventBus] = None,
        log_service: Optional[OperationLogService] = None,
    ):
        self.op_id = op_id
        self.event_bus = event_bus
        self.log_service = log_service
        self._entries: List[Dict[str, Any]] = []

    @classmethod
    def detached(cls) -> "OperationReporter":
        return cls()

    @property
    def entries(self) -> List[Dict[str, Any]]:
        return list(self._entries)

    def _prefix(self) -> str:
        return f"[{self.op_id}] " if self.op_id else ""

    async def _emit(
        self, stream: str, event: str, content: str, host_id: Optional[int], **extra: Any
    ) -> None:
        if self.op_id is None:
            return
        entry = {
            "stream": stream,
            "content": content,
            "host_id": host_id,
            "created_at": datetime.now(UTC),
        }
        self._entries.append(entry)
        if self.event_bus is not None:
            await self.event_bus.publish(
                task_channel(self.op_id),
                event,
                {"stream": stream, "content": content, "host_id": host_id, **extra},
            )

    async def info(self, message: str, host_id: Optional[int] = None) -> None:
        """A system line (progress, bookkeeping)."""
        logger.info(f"{self._prefix()}{sanitize_log_message(message)}")
        await self._emit("system", EVENT_DATA, message, host_id)

    async def warning(self, message: str, host_id: Optional[int] = None) -> None:
        logger.warning(f"{self._prefix()}{sanitize_log_message(message)}")
        await self._emit("system", EVENT_DATA, message, host_id)

    async def error(self, message: str, host_id: Optional[int] = None) -> None:
        logger.error(f"{self._prefix()}{sanitize_log_message(message)}")
        await self._emit("stderr", EVENT_ERROR, message, host_id)

    async def stdout(self, chunk: str, host_id: Optional[int] = None) -> None:
        """Raw remote stdout, streamed as it arrives."""
        await self._emit("stdout", EVENT_DATA, chunk, host_id)

    async def stderr(self, chunk: str, host_id: Optional[int] = None) -> None:
        await self._emit("stderr", EVENT_STDERR, chunk, host_id)

    async def end(self, status: str, **payload: Any) -> None:
        """Terminal broadcast for subscribers; not buffered."""
        logger.info(f"{self._prefix()}finished with status {status}")
        if self.op_id is not None and self.event_bus is not None:
            await self.event_bus.publish(
                task_channel(self.op_id), EVENT_END, {"status": status, **payload}
            )

    async def flush(self) -> int:
        """Persist buffered entries in one batch and clear the buffer."""
        if self.op_id is None or self.log_service is None or not self._entries:
            return 0
        entries, self._entries = self._entries, []
        return await self.log_service.append_entries(self.op_id, entries)
