# Chat WS: one connection per client session, room-scoped commands in, room events out.
import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from ..auth import user_id_from_websocket
from ..deps import get_hub
from ..errors import INTERNAL_ERROR_MESSAGE, BadRequest, ChatError, Unauthorized
from ..hub import RoomEventHub
from ..registry import Connection

logger = logging.getLogger(__name__)
router = APIRouter()

Handler = Callable[[RoomEventHub, Connection, Dict[str, Any]], Awaitable[Any]]


def _int_arg(args: Dict[str, Any], key: str) -> int:
    value = args.get(key)
    if isinstance(value, bool):
        raise BadRequest(f"'{key}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadRequest(f"'{key}' must be an integer")


def _str_arg(args: Dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str):
        raise BadRequest(f"'{key}' must be a string")
    return value


COMMANDS: Dict[str, Handler] = {
    "JoinRoom": lambda hub, conn, args: hub.join_room(_int_arg(args, "roomId"), conn.user_id, conn.connection_id),
    "LeaveRoom": lambda hub, conn, args: hub.leave_room(_int_arg(args, "roomId"), conn.user_id, conn.connection_id),
    "SendMessage": lambda hub, conn, args: hub.send_message(
        _int_arg(args, "roomId"), _str_arg(args, "content"), conn.user_id
    ),
    "EditMessage": lambda hub, conn, args: hub.edit_message(
        _int_arg(args, "messageId"), _str_arg(args, "newContent"), conn.user_id
    ),
    "DeleteMessage": lambda hub, conn, args: hub.delete_message(_int_arg(args, "messageId"), conn.user_id),
    "StartTyping": lambda hub, conn, args: hub.start_typing(_int_arg(args, "roomId"), conn.user_id, conn.connection_id),
    "StopTyping": lambda hub, conn, args: hub.stop_typing(_int_arg(args, "roomId"), conn.user_id, conn.connection_id),
    "AddReaction": lambda hub, conn, args: hub.add_reaction(
        _int_arg(args, "messageId"), _str_arg(args, "emoji"), conn.user_id
    ),
    "RemoveReaction": lambda hub, conn, args: hub.remove_reaction(
        _int_arg(args, "messageId"), _str_arg(args, "emoji"), conn.user_id
    ),
}


def _jsonable(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json", by_alias=True)
    return result


async def run_command(hub: RoomEventHub, conn: Connection, frame: Dict[str, Any]) -> None:
    """Execute one inbound command; the outcome goes to the caller only."""
    invocation_id = frame.get("invocationId")
    command = frame.get("command")
    try:
        handler = COMMANDS.get(command)
        if handler is None:
            raise BadRequest(f"Unknown command: {command}")
        args = frame.get("args") or {}
        if not isinstance(args, dict):
            raise BadRequest("'args' must be an object")
        result = await handler(hub, conn, args)
        reply = {"type": "completion", "invocationId": invocation_id, "result": _jsonable(result)}
    except ChatError as e:
        logger.warning(f"{command} by user {conn.user_id} failed: {e.kind}: {e.message}")
        reply = {"type": "error", "invocationId": invocation_id, "error": e.kind, "message": e.message}
    except Exception:
        logger.exception(f"{command} by user {conn.user_id} crashed")
        reply = {"type": "error", "invocationId": invocation_id, "error": "InternalError",
                 "message": INTERNAL_ERROR_MESSAGE}
    hub.registry.send(conn.connection_id, reply)


async def _pump(ws: WebSocket, hub: RoomEventHub, conn: Connection) -> None:
    # sole writer for this socket
    try:
        while True:
            frame = await conn.outbox.get()
            await ws.send_text(json.dumps(frame))
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.info(f"Stopped writing to {conn.connection_id}: {e}")
    # nothing drains the outbox any more, so take the connection out of every group
    await hub.disconnect(conn.connection_id)


@router.websocket("/ws/chat")
async def ws_chat(ws: WebSocket, hub: RoomEventHub = Depends(get_hub)):
    try:
        user_id = user_id_from_websocket(ws)
    except Unauthorized:
        await ws.close(code=4401)
        return

    await ws.accept()
    connection_id = uuid.uuid4().hex
    writer: asyncio.Task | None = None
    in_flight: set[asyncio.Task] = set()

    try:
        conn = await hub.connect(connection_id, user_id)
        writer = asyncio.create_task(_pump(ws, hub, conn))
        hub.registry.send(connection_id, {"type": "connected", "connectionId": connection_id, "userId": user_id})
        while True:
            raw = await ws.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                frame = None
            if not isinstance(frame, dict):
                hub.registry.send(connection_id, {"type": "error", "invocationId": None,
                                                  "error": "BadRequest", "message": "Malformed frame"})
                continue
            if frame.get("type") == "ping":
                hub.registry.send(connection_id, {"type": "pong"})
                continue
            # commands run concurrently; a disconnect does not cancel them
            task = asyncio.create_task(run_command(hub, conn, frame))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(connection_id)
        if writer:
            writer.cancel()
