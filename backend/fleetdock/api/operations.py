"""Operation log endpoints: history, entries and the live output stream."""

import asyncio
import json
import logging
from typing import AsyncGenerator, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from fleetdock.dependencies import Services, get_services
from fleetdock.exceptions import OperationNotFoundError
from fleetdock.models.operation_log import OperationLogEntry, OperationStatus
from fleetdock.schemas.task import OperationEntrySchema, OperationSchema
from fleetdock.services.event_bus import EVENT_DATA, EVENT_END, EVENT_STDERR, task_channel

logger = logging.getLogger(__name__)

router = APIRouter()

HEARTBEAT_SECONDS = 15


def _replay_message(op_id: str, entry: OperationLogEntry) -> str:
    return json.dumps(
        {
            "channel": task_channel(op_id),
            "event": EVENT_STDERR if entry.stream == "stderr" else EVENT_DATA,
            "data": {
                "stream": entry.stream,
                "content": entry.content,
                "host_id": entry.host_id,
                "replay": True,
            },
            "timestamp": entry.created_at.isoformat() if entry.created_at else None,
        }
    )


async def _get_operation_or_404(services: Services, op_id: str):
    try:
        return await services.log_service.get_operation(op_id)
    except OperationNotFoundError:
        raise HTTPException(status_code=404, detail="Operation not found")


@router.get("/", response_model=List[OperationSchema])
async def list_operations(
    limit: int = Query(default=50, ge=1, le=500),
    services: Services = Depends(get_services),
):
    return await services.log_service.list_operations(limit)


@router.get("/{op_id}", response_model=OperationSchema)
async def get_operation(op_id: str, services: Services = Depends(get_services)):
    return await _get_operation_or_404(services, op_id)


@router.get("/{op_id}/entries", response_model=List[OperationEntrySchema])
async def list_entries(op_id: str, services: Services = Depends(get_services)):
    """All persisted output of an operation, in order."""
    await _get_operation_or_404(services, op_id)
    return await services.log_service.list_entries(op_id)


@router.get("/{op_id}/stream")
async def stream_operation(
    op_id: str,
    request: Request,
    services: Services = Depends(get_services),
) -> StreamingResponse:
    """Server-sent events for one operation.

    Persisted entries are replayed first; a finished operation then ends the
    stream, a running one continues with live events until its ``end`` event.
    """
    await _get_operation_or_404(services, op_id)
    channel = task_channel(op_id)

    async def event_generator() -> AsyncGenerator[str, None]:
        # Subscribe before replaying so nothing published in between is lost
        queue = await services.event_bus.subscribe(channel)
        try:
            for entry in await services.log_service.list_entries(op_id):
                yield f"data: {_replay_message(op_id, entry)}\n\n"

            operation = await services.log_service.get_operation(op_id)
            if operation.status in OperationStatus.TERMINAL:
                end = {"channel": channel, "event": EVENT_END, "data": {"status": operation.status}}
                yield f"data: {json.dumps(end)}\n\n"
                return

            while True:
                if await request.is_disconnected():
                    break
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    # Heartbeat to keep the connection alive
                    yield "event: ping\ndata: {}\n\n"
                    continue
                yield f"data: {message}\n\n"
                if json.loads(message).get("event") == EVENT_END:
                    break
        finally:
            await services.event_bus.unsubscribe(channel, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")
