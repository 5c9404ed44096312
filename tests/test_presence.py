import asyncio

from chatapp.db import SessionLocal
from chatapp.hub import EventNames, RoomEventHub
from chatapp.locks import KeyedLocks
from chatapp.models import utcnow
from chatapp.presence import PresenceTracker
from chatapp.routers.ws import _pump
from chatapp.users import UserStore

from .support import HubTestCase, events, make_user


async def stored_presence(user_id: int):
    async with SessionLocal() as db:
        user = await UserStore(db).get(user_id)
        return user.is_online, user.last_seen


class TestPresence(HubTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.alice = await make_user("alice")
        self.bob = await make_user("bob")

    async def test_connect_marks_online_and_tells_everyone(self):
        await self.online("b1", self.bob)
        self.drain("b1")

        await self.hub.connect("a1", self.alice)

        is_online, _ = await stored_presence(self.alice)
        self.assertTrue(is_online)
        for cid in ("a1", "b1"):
            status = events(self.drain(cid), EventNames.USER_STATUS_CHANGED)
            self.assertEqual(len(status), 1)
            self.assertEqual(status[0]["data"]["userId"], self.alice)
            self.assertTrue(status[0]["data"]["isOnline"])

    async def test_last_disconnect_marks_offline(self):
        connected_at = utcnow()
        await self.online("b1", self.bob)
        await self.online("a1", self.alice)
        self.drain("b1")

        self.assertEqual(await self.hub.disconnect("a1"), self.alice)

        is_online, last_seen = await stored_presence(self.alice)
        self.assertFalse(is_online)
        self.assertGreaterEqual(last_seen, connected_at)
        status = events(self.drain("b1"), EventNames.USER_STATUS_CHANGED)
        self.assertEqual(len(status), 1)
        self.assertFalse(status[0]["data"]["isOnline"])

    async def test_second_connection_keeps_user_online(self):
        await self.online("b1", self.bob)
        await self.online("phone", self.alice)
        await self.online("laptop", self.alice)
        self.drain("b1")

        await self.hub.disconnect("phone")
        self.assertTrue((await stored_presence(self.alice))[0])
        self.assertEqual(events(self.drain("b1")), [])
        self.assertTrue(self.hub.presence.is_online(self.alice))

        await self.hub.disconnect("laptop")
        self.assertFalse((await stored_presence(self.alice))[0])
        self.assertEqual(len(events(self.drain("b1"), EventNames.USER_STATUS_CHANGED)), 1)

    async def test_either_connection_can_go_first(self):
        await self.online("phone", self.alice)
        await self.online("laptop", self.alice)

        await self.hub.disconnect("laptop")
        self.assertTrue((await stored_presence(self.alice))[0])
        await self.hub.disconnect("phone")
        self.assertFalse((await stored_presence(self.alice))[0])

    async def test_disconnect_is_counted_once(self):
        await self.online("phone", self.alice)
        await self.online("laptop", self.alice)

        await self.hub.disconnect("phone")
        self.assertIsNone(await self.hub.disconnect("phone"))

        self.assertTrue((await stored_presence(self.alice))[0])
        self.assertEqual(self.hub.presence.live_connections(self.alice), 1)

    async def test_reconnecting_same_connection_is_idempotent(self):
        await self.online("a1", self.alice)
        await self.online("a1", self.alice)
        self.assertEqual(self.hub.presence.live_connections(self.alice), 1)

    async def test_interleaved_connects_and_disconnects(self):
        await asyncio.gather(*(self.hub.connect(f"c{i}", self.alice) for i in range(5)))
        await asyncio.gather(*(self.hub.disconnect(f"c{i}") for i in range(4)))

        self.assertTrue((await stored_presence(self.alice))[0])
        self.assertEqual(self.hub.presence.live_connections(self.alice), 1)

        await self.hub.disconnect("c4")
        self.assertFalse((await stored_presence(self.alice))[0])

    async def test_disconnect_leaves_room_groups(self):
        room = await self.create_room(self.alice)
        await self.online("a1", self.alice)
        await self.hub.join_room(room.id, self.alice, "a1")

        await self.hub.disconnect("a1")

        self.assertEqual(self.registry.members_of(room.id), set())
        # later sends to the closed connection are no-ops
        await self.hub.send_message(room.id, "anyone?", self.alice)


def unavailable_database():
    raise ConnectionRefusedError("database unavailable")


class ClosedSocket:
    async def send_text(self, text):
        raise RuntimeError("socket closed")


class TestFailedConnections(HubTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.alice = await make_user("alice")

    async def test_failed_connect_leaves_nothing_behind(self):
        presence = PresenceTracker(unavailable_database)
        hub = RoomEventHub(SessionLocal, self.registry, presence=presence, locks=KeyedLocks())

        with self.assertRaises(ConnectionRefusedError):
            await hub.connect("a1", self.alice)

        self.assertNotIn("a1", self.registry.connections)
        self.assertEqual(self.registry.connections_for(self.alice), set())
        self.assertEqual(presence.live_connections(self.alice), 0)

        # once the database is back the user can come online and go offline again
        presence.session_factory = SessionLocal
        await hub.connect("a2", self.alice)
        self.assertTrue((await stored_presence(self.alice))[0])
        await hub.disconnect("a2")
        self.assertFalse((await stored_presence(self.alice))[0])
        self.assertEqual(presence.live_connections(self.alice), 0)

    async def test_dead_writer_drops_the_connection(self):
        room = await self.create_room(self.alice)
        await self.online("a1", self.alice)
        await self.hub.join_room(room.id, self.alice, "a1")
        conn = self.registry.connections["a1"]

        # the status frame from connecting is already queued, so the first write fails
        await _pump(ClosedSocket(), self.hub, conn)

        self.assertNotIn("a1", self.registry.connections)
        self.assertEqual(self.registry.members_of(room.id), set())
        self.assertFalse((await stored_presence(self.alice))[0])
        # the receive loop's own cleanup afterwards is a no-op
        self.assertIsNone(await self.hub.disconnect("a1"))
