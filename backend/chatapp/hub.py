"""Live room commands: authorize, persist, then fan out to the room group.

Every command that touches a room runs its persist-then-enqueue sequence
under that room's lock. Enqueueing on connection outboxes never suspends, so
events of one room reach every live member in persistence order.
"""
import logging
from typing import Iterable

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker

from .config import settings
from .errors import BadRequest, Forbidden, NotFound
from .gate import AuthorizationGate
from .locks import KeyedLocks, room_locks
from .membership import MembershipStore
from .messages import MessageStore
from .models import utcnow
from .presence import PresenceTracker
from .registry import Connection, ConnectionRegistry, registry as default_registry
from .schemas import (
    MessageDeleted,
    MessageEdited,
    MessageOut,
    ReactionEvent,
    RoomDeleted,
    RoomEvent,
    TypingIndicator,
    UserStatusChanged,
)
from .users import UserStore

logger = logging.getLogger(__name__)


class EventNames:
    USER_JOINED_ROOM = "UserJoinedRoom"
    USER_LEFT_ROOM = "UserLeftRoom"
    RECEIVE_MESSAGE = "ReceiveMessage"
    MESSAGE_EDITED = "MessageEdited"
    MESSAGE_DELETED = "MessageDeleted"
    USER_STARTED_TYPING = "UserStartedTyping"
    USER_STOPPED_TYPING = "UserStoppedTyping"
    REACTION_ADDED = "ReactionAdded"
    REACTION_REMOVED = "ReactionRemoved"
    ROOM_DELETED = "RoomDeleted"
    USER_STATUS_CHANGED = "UserStatusChanged"


def event_frame(event: str, payload: BaseModel) -> dict:
    return {"type": "event", "event": event, "data": payload.model_dump(mode="json", by_alias=True)}


def clean_content(content) -> str:
    if not isinstance(content, str) or not content.strip():
        raise BadRequest("Message content cannot be empty")
    if len(content) > settings.max_message_length:
        raise BadRequest(f"Message content exceeds {settings.max_message_length} characters")
    return content


class RoomEventHub:
    def __init__(self, session_factory: async_sessionmaker, registry: ConnectionRegistry | None = None,
                 presence: PresenceTracker | None = None, locks: KeyedLocks | None = None) -> None:
        self.session_factory = session_factory
        self.registry = registry if registry is not None else default_registry
        self.presence = presence if presence is not None else PresenceTracker(session_factory)
        self.locks = locks if locks is not None else room_locks

    # ---------------------- fan-out ----------------------
    def broadcast_to_room(self, room_id: int, event: str, payload: BaseModel, exclude: str | None = None) -> int:
        targets = self.registry.members_of(room_id)
        targets.discard(exclude)
        sent = self.registry.send_many(targets, event_frame(event, payload))
        logger.debug(f"{event} -> room {room_id}: {sent} connection(s)")
        return sent

    def broadcast_to_all(self, event: str, payload: BaseModel) -> int:
        return self.registry.send_many(self.registry.all_connections(), event_frame(event, payload))

    def _announce_status(self, status: UserStatusChanged) -> None:
        self.broadcast_to_all(EventNames.USER_STATUS_CHANGED, status)

    # ---------------------- connection lifecycle ----------------------
    async def connect(self, connection_id: str, user_id: int) -> Connection:
        known = self.registry.connections.get(connection_id)
        if known:
            return known
        conn = self.registry.register(connection_id, user_id)
        try:
            await self.presence.connect(user_id, announce=self._announce_status)
        except Exception:
            self.registry.unregister(connection_id)
            raise
        logger.info(f"User {user_id} connected: {connection_id}")
        return conn

    async def disconnect(self, connection_id: str) -> int | None:
        user_id = self.registry.unregister(connection_id)
        if user_id is None:
            return None
        logger.info(f"User {user_id} disconnected: {connection_id}")
        await self.presence.disconnect(user_id, announce=self._announce_status)
        return user_id

    # ---------------------- room groups ----------------------
    async def join_room(self, room_id: int, user_id: int, connection_id: str) -> RoomEvent:
        async with self.locks.hold(room_id):
            async with self.session_factory() as db:
                await AuthorizationGate(MembershipStore(db)).require_member(room_id, user_id)
            if not self.registry.join_group(connection_id, room_id):
                raise BadRequest("Connection is not registered")
            event = RoomEvent(user_id=user_id, room_id=room_id, timestamp=utcnow())
            self.broadcast_to_room(room_id, EventNames.USER_JOINED_ROOM, event, exclude=connection_id)
        logger.info(f"User {user_id} joined room {room_id}")
        return event

    async def leave_room(self, room_id: int, user_id: int, connection_id: str) -> RoomEvent:
        async with self.locks.hold(room_id):
            self.registry.leave_group(connection_id, room_id)
            event = RoomEvent(user_id=user_id, room_id=room_id, timestamp=utcnow())
            self.broadcast_to_room(room_id, EventNames.USER_LEFT_ROOM, event, exclude=connection_id)
        logger.info(f"User {user_id} left room {room_id}")
        return event

    def evict_user(self, room_id: int, user_id: int) -> None:
        removed = self.registry.remove_user_from_group(user_id, room_id)
        if removed:
            logger.info(f"Removed {len(removed)} connection(s) of user {user_id} from room {room_id}")

    def close_room(self, room_id: int) -> None:
        self.broadcast_to_room(room_id, EventNames.ROOM_DELETED, RoomDeleted(room_id=room_id))
        self.registry.drop_group(room_id)

    # ---------------------- messages ----------------------
    async def send_message(self, room_id: int, content: str, user_id: int) -> MessageOut:
        content = clean_content(content)
        async with self.locks.hold(room_id):
            async with self.session_factory() as db:
                await AuthorizationGate(MembershipStore(db)).require_member(room_id, user_id)
                store = MessageStore(db)
                message = await store.create(room_id, user_id, content)
                await db.commit()
                out = (await store.to_out([message]))[0]
            self.broadcast_to_room(room_id, EventNames.RECEIVE_MESSAGE, out)
        logger.info(f"User {user_id} sent message {out.id} to room {room_id}")
        return out

    async def edit_message(self, message_id: int, new_content: str, user_id: int) -> MessageEdited:
        new_content = clean_content(new_content)
        room_id = await self._room_of(message_id)
        async with self.locks.hold(room_id):
            async with self.session_factory() as db:
                store = MessageStore(db)
                message = await self._own_message(store, message_id, user_id, "edit")
                message = await store.edit(message, new_content)
                await db.commit()
                event = MessageEdited(id=message.id, content=message.content, edited_at=message.edited_at)
            self.broadcast_to_room(room_id, EventNames.MESSAGE_EDITED, event)
        return event

    async def delete_message(self, message_id: int, user_id: int) -> MessageDeleted:
        room_id = await self._room_of(message_id)
        async with self.locks.hold(room_id):
            async with self.session_factory() as db:
                store = MessageStore(db)
                await self._own_message(store, message_id, user_id, "delete")
                await store.delete(message_id)
                await db.commit()
            event = MessageDeleted(id=message_id, room_id=room_id)
            self.broadcast_to_room(room_id, EventNames.MESSAGE_DELETED, event)
        return event

    async def add_reaction(self, message_id: int, emoji: str, user_id: int) -> ReactionEvent:
        room_id = await self._room_of(message_id)
        async with self.locks.hold(room_id):
            async with self.session_factory() as db:
                await AuthorizationGate(MembershipStore(db)).require_member(room_id, user_id)
                store = MessageStore(db)
                if not await store.get(message_id):
                    raise NotFound("Message", message_id)
                added = await store.add_reaction(message_id, user_id, emoji)
                await db.commit()
            event = ReactionEvent(message_id=message_id, room_id=room_id, user_id=user_id, emoji=emoji)
            if added:
                self.broadcast_to_room(room_id, EventNames.REACTION_ADDED, event)
        return event

    async def remove_reaction(self, message_id: int, emoji: str, user_id: int) -> ReactionEvent:
        room_id = await self._room_of(message_id)
        async with self.locks.hold(room_id):
            async with self.session_factory() as db:
                await AuthorizationGate(MembershipStore(db)).require_member(room_id, user_id)
                if not await MessageStore(db).remove_reaction(message_id, user_id, emoji):
                    raise NotFound("Reaction not found")
                await db.commit()
            event = ReactionEvent(message_id=message_id, room_id=room_id, user_id=user_id, emoji=emoji)
            self.broadcast_to_room(room_id, EventNames.REACTION_REMOVED, event)
        return event

    async def _room_of(self, message_id: int) -> int:
        async with self.session_factory() as db:
            message = await MessageStore(db).get(message_id)
            if not message:
                raise NotFound("Message", message_id)
            return message.room_id

    @staticmethod
    async def _own_message(store: MessageStore, message_id: int, user_id: int, action: str):
        # re-read under the room lock: a concurrent delete may have won
        message = await store.get(message_id)
        if not message:
            raise NotFound("Message", message_id)
        if message.user_id != user_id:
            raise Forbidden(f"You can only {action} your own messages")
        return message

    # ---------------------- typing ----------------------
    async def start_typing(self, room_id: int, user_id: int, connection_id: str) -> bool:
        return await self._typing(room_id, user_id, connection_id, EventNames.USER_STARTED_TYPING)

    async def stop_typing(self, room_id: int, user_id: int, connection_id: str) -> bool:
        return await self._typing(room_id, user_id, connection_id, EventNames.USER_STOPPED_TYPING)

    async def _typing(self, room_id: int, user_id: int, connection_id: str, event: str) -> bool:
        if not self.registry.in_group(connection_id, room_id):
            logger.debug(f"Ignoring {event} from {connection_id}: not in room {room_id}")
            return False
        async with self.session_factory() as db:
            username = await UserStore(db).username_of(user_id)
        payload = TypingIndicator(user_id=user_id, username=username or "Unknown", room_id=room_id)
        self.broadcast_to_room(room_id, event, payload, exclude=connection_id)
        return True

    def live_users(self, room_id: int) -> Iterable[int]:
        return sorted(self.registry.users_in(room_id))
