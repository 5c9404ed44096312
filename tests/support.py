import unittest
from typing import List

from chatapp.db import SessionLocal, drop_db, init_db
from chatapp.hub import RoomEventHub
from chatapp.locks import KeyedLocks
from chatapp.registry import ConnectionRegistry
from chatapp.rooms import RoomService
from chatapp.schemas import RoomCreate
from chatapp.users import UserStore


async def reset_db():
    await drop_db()
    await init_db()


async def make_user(username: str) -> int:
    async with SessionLocal() as db:
        user = await UserStore(db).create(username, f"{username}@example.com", "unused-hash")
        await db.commit()
        return user.id


def drain(registry: ConnectionRegistry, connection_id: str) -> List[dict]:
    outbox = registry.connections[connection_id].outbox
    frames = []
    while not outbox.empty():
        frames.append(outbox.get_nowait())
    return frames


def events(frames: List[dict], name: str | None = None) -> List[dict]:
    return [f for f in frames if f.get("type") == "event" and (name is None or f["event"] == name)]


class HubTestCase(unittest.IsolatedAsyncioTestCase):
    """Fresh schema plus a private registry, hub and room service per test."""

    async def asyncSetUp(self):
        await reset_db()
        self.registry = ConnectionRegistry()
        self.hub = RoomEventHub(SessionLocal, self.registry, locks=KeyedLocks())
        self.rooms = RoomService(SessionLocal, self.hub)

    async def create_room(self, creator_id: int, name: str = "General", is_private: bool = False):
        return await self.rooms.create_room(RoomCreate(name=name, is_private=is_private), creator_id)

    async def online(self, connection_id: str, user_id: int) -> str:
        await self.hub.connect(connection_id, user_id)
        return connection_id

    def drain(self, connection_id: str) -> List[dict]:
        return drain(self.registry, connection_id)

    def drain_all(self, *connection_ids: str) -> None:
        for cid in connection_ids:
            self.drain(cid)
