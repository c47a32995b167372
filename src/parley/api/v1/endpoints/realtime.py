# src/parley/api/v1/endpoints/realtime.py
"""WebSocket transport for realtime messaging events.

Frames in both directions are JSON objects of the form ``{"event", "data"}``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from parley.realtime.auth import ConnectionRejected, authenticate_connection, extract_token
from parley.realtime.hub import Connection, TransportHub
from parley.services.delivery_queue import DeliveryQueue

from ..dependencies import SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    db: SessionDep,
    token: str | None = Query(None),
) -> None:
    """Authenticate, register presence, flush pending messages, then route events."""
    hub: TransportHub = websocket.app.state.hub
    delivery_queue: DeliveryQueue = websocket.app.state.delivery_queue

    await websocket.accept()
    try:
        user = authenticate_connection(
            extract_token(token, websocket.headers.get("authorization")),
            db,
        )
    except ConnectionRejected as exc:
        await websocket.send_json({"event": "connect_error", "data": {"reason": exc.reason}})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.reason)
        return

    async def send_frame(frame: dict[str, Any]) -> None:
        try:
            await websocket.send_json(frame)
        except WebSocketDisconnect as exc:
            raise ConnectionError("client went away") from exc

    async def close_socket() -> None:
        await websocket.close(code=status.WS_1001_GOING_AWAY)

    conn = Connection(user.id, send_frame, username=user.username, closer=close_socket)
    await hub.connect(conn)
    try:
        await conn.send(
            "session:ready",
            {"userId": user.id, "username": user.username, "onlineUsers": hub.online_users()},
        )
        await delivery_queue.deliver_pending_messages(user.id)

        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))
            raw = message.get("text")
            if raw is None:
                await conn.send("message:error", {"error": "Frames must be JSON text"})
                continue
            try:
                frame = json.loads(raw)
            except (TypeError, ValueError):
                await conn.send("message:error", {"error": "Frames must be JSON"})
                continue
            if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                await conn.send("message:error", {"error": "Frames need an event name"})
                continue
            await hub.handle_event(conn, frame["event"], frame.get("data"))
    except WebSocketDisconnect as exc:
        logger.debug("Connection %s closed by client (code %s)", conn.id, exc.code)
    finally:
        await hub.disconnect(conn)
