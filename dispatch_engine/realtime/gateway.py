"""
Dispatch WebSocket gateway
==========================

WS /ws/dispatch

Handshake
---------
The bearer token is read from the ``Authorization`` header, then the
``?token=`` query parameter.  Clients that can set neither send an
``{"type": "auth", "token": ...}`` frame first.  A bad or missing token
gets an ``error`` event and close code 4401.

After authentication the connection is registered for its user and any
offer still waiting on that driver is sent again, so a reconnecting app
picks up where it left off.

Frames
------
``{"type": "respond", "attempt_id": 1, "accepted": true}`` answers an
offer.  Failures come back as ``{"event": "error", "code": ..., "message": ...}``
on the same socket; the socket stays open.  Binary frames are answered
with ``invalid_message``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from dispatch_engine.domain.errors import DispatchError, NotAuthorized
from dispatch_engine.domain.events import (
    AuthMessage,
    ErrorEvent,
    RespondMessage,
    client_message_adapter,
)
from dispatch_engine.realtime.auth import decode_user_id, token_from_handshake

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

UNAUTHORIZED_CLOSE_CODE = 4401
AUTH_FRAME_TIMEOUT_SECONDS = 10


@router.websocket("/ws/dispatch")
async def dispatch_socket(websocket: WebSocket):
    state = websocket.app.state
    await websocket.accept()

    try:
        user_id = await _authenticate(websocket)
    except NotAuthorized as exc:
        logger.info("Rejected dispatch socket: %s", exc.message)
        await _send_error(websocket, exc.code, exc.message)
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE)
        return
    except WebSocketDisconnect:
        return

    registry = state.registry
    await registry.register(user_id, websocket)
    try:
        pending = await state.dispatcher.pending_offer_for(user_id)
        if pending is not None:
            logger.info(
                "Resending offer %s to reconnected user %s", pending.attempt_id, user_id
            )
            await websocket.send_json(pending.model_dump(mode="json"))

        while True:
            raw = await _receive_text(websocket)
            if raw is None:
                await _send_error(websocket, "invalid_message", "Expected a text frame")
                continue
            await _handle_frame(websocket, user_id, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await registry.unregister(websocket)


async def _authenticate(websocket: WebSocket) -> int:
    settings = websocket.app.state.settings
    token = token_from_handshake(websocket.headers, websocket.query_params)
    if token is None:
        try:
            raw = await asyncio.wait_for(
                _receive_text(websocket), timeout=AUTH_FRAME_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError as exc:
            raise NotAuthorized("Authentication timed out") from exc
        if raw is None:
            raise NotAuthorized("Authentication required")
        try:
            message = client_message_adapter.validate_json(raw)
        except ValidationError as exc:
            raise NotAuthorized("Authentication required") from exc
        if not isinstance(message, AuthMessage):
            raise NotAuthorized("Authentication required")
        token = message.token
    return decode_user_id(token, settings)


async def _receive_text(websocket: WebSocket) -> Optional[str]:
    """Next text frame, or None for a binary one."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(code=message.get("code", 1000))
    return message.get("text")


async def _handle_frame(websocket: WebSocket, user_id: int, raw: str) -> None:
    resolver = websocket.app.state.resolver
    try:
        message = client_message_adapter.validate_json(raw)
    except ValidationError:
        await _send_error(websocket, "invalid_message", "Malformed message")
        return

    if not isinstance(message, RespondMessage):
        # already authenticated
        return

    try:
        await resolver.respond(
            message.attempt_id,
            user_id,
            message.accepted,
            decline_reason=message.reason,
        )
    except DispatchError as exc:
        await _send_error(websocket, exc.code, exc.message)
    except Exception:
        logger.exception(
            "Failed to process response to attempt %s from user %s",
            message.attempt_id, user_id,
        )
        await _send_error(websocket, "internal_error", "Could not process response")


async def _send_error(websocket: WebSocket, code: str, message: str) -> None:
    await websocket.send_json(
        ErrorEvent(code=code, message=message).model_dump(mode="json")
    )
