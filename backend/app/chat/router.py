"""Chat router providing the real-time WebSocket endpoint.

This module provides:
    - WebSocket /ws/chat: authenticated presence, rooms, messages, typing

The WebSocket protocol supports:
    - Bearer credential on connect (``?token=`` or ``Authorization`` header)
    - Global online-user refresh on every presence change
    - Room join with full history delivery
    - Room-scoped message broadcast (sender receives the echo)
    - Typing indicators (start/stop)
    - Idle timeout (any inbound frame, including ping, resets it)

Protocol Message Types (client -> server):
    - join_room: {roomId} or {peerId}
    - leave_room: {roomId}
    - send_message: {roomId, payload}
    - typing_start / typing_stop: {roomId}
    - ping: keepalive, answered with pong; resets the idle timer
"""
import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.auth.service import extract_bearer
from app.errors import AuthError, RoomError

from .connection import Connection
from .schemas import (
    EventType,
    JoinRoomInput,
    RoomInput,
    SendMessageInput,
    error_event,
    event,
)
from .service import ChatService, get_ws_chat_service

logger = logging.getLogger(__name__)

router = APIRouter()

# 1001 = Going Away
WS_GOING_AWAY = 1001


class IdleTimeout(Exception):
    """No inbound frame within the configured idle window."""


async def _receive_frame(websocket: WebSocket, idle_timeout: float) -> str:
    if idle_timeout <= 0:
        return await websocket.receive_text()
    try:
        return await asyncio.wait_for(websocket.receive_text(), timeout=idle_timeout)
    except asyncio.TimeoutError:
        raise IdleTimeout()


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer credential"),
    chat: ChatService = Depends(get_ws_chat_service),
) -> None:
    """WebSocket endpoint for real-time chat.

    Protocol Flow:
        1. Client connects with a credential
           → Invalid: socket closed with 1008 before accept
           → Valid: {type: "connected", user}, then users_online to everyone
        2. Client sends: {type: "join_room", roomId}
           → Server sends (joiner only): {type: "message_history", roomId, messages}
        3. Client sends: {type: "send_message", roomId, payload}
           → Server broadcasts to room: {type: "receive_message", ...message}
        4. Client sends: {type: "typing_start" | "typing_stop", roomId}
           → Server broadcasts to others: user_typing / user_stop_typing
        5. On disconnect → pending typing cleared, users_online re-broadcast

    Args:
        websocket: The WebSocket connection.
        token: Credential from the query string; falls back to the
            Authorization header.
        chat: Injected chat service.
    """
    credential = token or extract_bearer(websocket.headers.get("authorization"))

    try:
        connection = await chat.lifecycle.open(websocket, credential)
    except AuthError as e:
        logger.info(f"[WS] Connection rejected: {e.reason}")
        return

    try:
        while True:
            try:
                raw = await _receive_frame(websocket, chat.idle_timeout)
            except IdleTimeout:
                logger.info(
                    f"[WS] {connection.user_id} idle for {chat.idle_timeout}s; closing"
                )
                await websocket.close(code=WS_GOING_AWAY)
                break
            await _handle_frame(chat, connection, raw)

    except WebSocketDisconnect:
        logger.debug(f"[WS] Transport closed for {connection.user_id}")
    except RuntimeError as e:
        # Starlette raises RuntimeError when receiving on a socket we closed
        logger.debug(f"[WS] Receive loop ended for {connection.user_id}: {e}")
    finally:
        await chat.lifecycle.disconnect(connection)


async def _handle_frame(chat: ChatService, connection: Connection, raw: str) -> None:
    """Dispatch one inbound frame. Bad frames get an error reply, never a crash."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        connection.send(error_event("Invalid frame: not JSON"))
        return
    if not isinstance(data, dict):
        connection.send(error_event("Invalid frame: expected an object"))
        return

    message_type = data.get("type")
    logger.debug("[WS] %s received: type=%s", connection.user_id, message_type)

    try:
        # --- Handle JOIN_ROOM ---
        if message_type == EventType.JOIN_ROOM.value:
            join = JoinRoomInput.model_validate(data)
            await chat.relay.join_room(connection, join.resolve(connection.user_id))
            return

        # --- Handle LEAVE_ROOM ---
        if message_type == EventType.LEAVE_ROOM.value:
            room = RoomInput.model_validate(data)
            chat.relay.leave_room(connection, room.roomId)
            return

        # --- Handle SEND_MESSAGE ---
        if message_type == EventType.SEND_MESSAGE.value:
            outgoing = SendMessageInput.model_validate(data)
            await chat.relay.send_message(connection, outgoing.roomId, outgoing.payload)
            return

        # --- Handle PING (keepalive) ---
        if message_type == EventType.PING.value:
            connection.send(event(EventType.PONG))
            return

        # --- Handle TYPING indicators ---
        if message_type == EventType.TYPING_START.value:
            room = RoomInput.model_validate(data)
            chat.relay.start_typing(connection, room.roomId)
            return

        if message_type == EventType.TYPING_STOP.value:
            room = RoomInput.model_validate(data)
            chat.relay.stop_typing(connection, room.roomId)
            return

    except ValidationError as e:
        errors = "; ".join(err["msg"] for err in e.errors())
        connection.send(error_event(f"Invalid {message_type} frame: {errors}"))
        return
    except RoomError as e:
        logger.info(f"[WS] {connection.user_id}: {e}")
        connection.send(error_event(str(e)))
        return

    connection.send(error_event(f"Unknown message type: {message_type}"))
