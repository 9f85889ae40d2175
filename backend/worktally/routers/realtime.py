"""Realtime change feed over WebSocket.

    WS /api/realtime/{table}?token=<access token>

Browsers can't set headers on a WebSocket handshake, so the access
token travels in the query string. Every committed change to `table`
inside the caller's organization is pushed as

    {"type": "INSERT" | "UPDATE" | "DELETE", "table": ..., "record": {...}}
"""

import asyncio
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from worktally.auth.jwt import decode_token
from worktally.services.data_client import TABLES, ChangeEvent, DataClient
from worktally.tenancy import validate_tenant_id

logger = logging.getLogger(__name__)

router = APIRouter()

# Application close codes (4000-4999)
CLOSE_UNAUTHORIZED = 4401
CLOSE_NO_ORGANIZATION = 4403
CLOSE_UNKNOWN_TABLE = 4404


def _organization_from_token(token: str) -> str | None:
    payload = decode_token(token)
    if payload.get("type") != "access" or not payload.get("organization_id"):
        return None
    try:
        return validate_tenant_id(payload["organization_id"])
    except ValueError:
        return None


@router.websocket("/{table}")
async def change_feed(websocket: WebSocket, table: str, token: str = Query("")):
    if not decode_token(token):
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return
    organization_id = _organization_from_token(token)
    if organization_id is None:
        await websocket.close(code=CLOSE_NO_ORGANIZATION)
        return
    if table not in TABLES:
        await websocket.close(code=CLOSE_UNKNOWN_TABLE)
        return

    await websocket.accept()
    queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
    subscription = DataClient(tenant_id=organization_id).subscribe(table, None, queue.put_nowait)
    logger.info(f"Realtime subscriber joined {table} for organization {organization_id}")

    # Client messages are ignored; reading only detects the disconnect
    receiver = asyncio.create_task(_drain(websocket))
    try:
        while True:
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                break
            change = getter.result()
            await websocket.send_json(
                jsonable_encoder({"type": change.type.value, "table": change.table, "record": change.record})
            )
    except WebSocketDisconnect:
        pass
    finally:
        subscription.unsubscribe()
        receiver.cancel()
        logger.info(f"Realtime subscriber left {table} for organization {organization_id}")


async def _drain(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return
