"""
Execution API routes.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Header, Query, Request, WebSocket, WebSocketDisconnect

from sandpit.api.dependencies import get_gateway
from sandpit.api.exceptions import handle_route_exceptions
from sandpit.api.models.schemas import (
    CancelResponse,
    ExecuteRequest,
    ExecuteResponse,
    ExecutionStatusResponse,
)
from sandpit.exceptions import SandpitError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["execute"])

SESSION_HEADER = "X-Session-Id"
# Application close code for an unknown request id
WS_CLOSE_NOT_FOUND = 4404
WS_CLOSE_UNAVAILABLE = 1013

_ACK = "ack"
_DISCONNECT = "disconnect"


def _session_id(request: Request, header_value: Optional[str]) -> str:
    if header_value:
        return header_value.strip()
    return request.client.host if request.client else "anonymous"


@router.post("/execute", response_model=ExecuteResponse, status_code=202)
@handle_route_exceptions
async def execute(
    body: ExecuteRequest,
    request: Request,
    x_session_id: Optional[str] = Header(default=None, alias=SESSION_HEADER),
):
    handle = get_gateway().submit(
        language=body.language,
        source_code=body.source,
        client_session_id=_session_id(request, x_session_id),
        stdin=body.stdin,
    )
    return ExecuteResponse(request_id=handle.request_id, status=handle.status.value)


@router.get("/execute/{request_id}", response_model=ExecutionStatusResponse)
@handle_route_exceptions
async def get_execution(request_id: str, cursor: int = Query(default=0, ge=0)):
    page = get_gateway().get_status(request_id, cursor)
    return page.to_dict()


@router.delete("/execute/{request_id}", response_model=CancelResponse)
@handle_route_exceptions
async def cancel_execution(request_id: str):
    cancelled = get_gateway().cancel(request_id)
    return CancelResponse(request_id=request_id, cancelled=cancelled)


async def _send_events(websocket: WebSocket, events: AsyncIterator[Dict[str, Any]], result_sent: asyncio.Event) -> None:
    async for event in events:
        await websocket.send_json(event)
        if event.get("type") == "result":
            result_sent.set()


async def _receive_client(websocket: WebSocket, result_sent: asyncio.Event) -> str:
    """Wait for the client's ack of the result, or its disconnect."""
    while True:
        try:
            message = await websocket.receive_json()
        except WebSocketDisconnect:
            return _DISCONNECT
        except ValueError:
            continue  # not JSON
        if isinstance(message, dict) and message.get("type") == _ACK:
            # Only the result can be acknowledged
            await result_sent.wait()
            return _ACK


@router.websocket("/execute/{request_id}/stream")
async def stream_execution(websocket: WebSocket, request_id: str):
    try:
        gateway = get_gateway()
        events = gateway.stream(request_id)
    except SandpitError as e:
        code = WS_CLOSE_NOT_FOUND if getattr(e, "code", None) == "NotFound" else WS_CLOSE_UNAVAILABLE
        await websocket.close(code=code)
        return

    await websocket.accept()
    result_sent = asyncio.Event()
    sender = asyncio.create_task(_send_events(websocket, events, result_sent))
    receiver = asyncio.create_task(_receive_client(websocket, result_sent))
    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)

        if receiver in done and receiver.result() == _ACK:
            gateway.acknowledge(request_id)
            await websocket.close()
            return

        if sender in done and sender.exception() is not None:
            logger.debug(f"Sending events for {request_id} failed: {sender.exception()!r}")
        elif sender in done:
            # Result delivered; give the caller max_delivery_wait to acknowledge it.
            try:
                reply = await asyncio.wait_for(receiver, timeout=gateway.config.gateway.max_delivery_wait)
            except asyncio.TimeoutError:
                logger.debug(f"No ack for {request_id}, dropping result")
                gateway.release(request_id)
                reply = None
            if reply == _ACK:
                gateway.acknowledge(request_id)
            if reply != _DISCONNECT:
                await websocket.close()
            return

        # The client went away, or sending failed, before the result.
        if not result_sent.is_set():
            logger.debug(f"Stream for {request_id} closed before the result, cancelling")
            try:
                gateway.cancel(request_id)
            except SandpitError:
                pass
    finally:
        for task in (sender, receiver):
            if not task.done():
                task.cancel()
