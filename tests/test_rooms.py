import asyncio
import unittest

from sqlalchemy import func, select

from chatapp.db import SessionLocal
from chatapp.errors import BadRequest, Forbidden, NotFound
from chatapp.models import Message, MessageReaction, RoomMember, RoomRole
from chatapp.rooms import clamp_page
from chatapp.schemas import RoomUpdate

from .support import HubTestCase, make_user


async def count_rows(model, **filters) -> int:
    async with SessionLocal() as db:
        stmt = select(func.count()).select_from(model)
        for key, value in filters.items():
            stmt = stmt.where(getattr(model, key) == value)
        return (await db.execute(stmt)).scalar_one()


class TestRoomAdministration(HubTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.alice = await make_user("alice")
        self.bob = await make_user("bob")
        self.carol = await make_user("carol")

    async def test_create_room_makes_creator_sole_admin(self):
        room = await self.create_room(self.alice)

        self.assertEqual(room.member_count, 1)
        details = await self.rooms.get_room(room.id, self.alice)
        self.assertEqual(details.member_count, 1)
        self.assertEqual([(m.user_id, m.role) for m in details.members], [(self.alice, RoomRole.ADMIN)])
        self.assertEqual(details.created_by_username, "alice")

    async def test_create_room_for_unknown_user(self):
        with self.assertRaises(NotFound):
            await self.create_room(999)
        self.assertEqual(await count_rows(RoomMember), 0)

    async def test_add_member_twice_is_rejected(self):
        room = await self.create_room(self.alice)
        await self.rooms.add_member(room.id, self.bob, False, self.alice)

        with self.assertRaises(BadRequest) as cm:
            await self.rooms.add_member(room.id, self.bob, False, self.alice)

        self.assertEqual(cm.exception.message, "User is already a member")
        self.assertEqual(await count_rows(RoomMember, room_id=room.id), 2)

    async def test_add_member_requires_admin(self):
        room = await self.create_room(self.alice)
        await self.rooms.add_member(room.id, self.bob, False, self.alice)
        with self.assertRaises(Forbidden):
            await self.rooms.add_member(room.id, self.carol, False, self.bob)

    async def test_add_unknown_user(self):
        room = await self.create_room(self.alice)
        with self.assertRaises(NotFound):
            await self.rooms.add_member(room.id, 999, False, self.alice)

    async def test_add_member_as_admin(self):
        room = await self.create_room(self.alice)
        member = await self.rooms.add_member(room.id, self.bob, True, self.alice)
        self.assertEqual(member.role, RoomRole.ADMIN)

    async def test_last_admin_cannot_be_removed(self):
        room = await self.create_room(self.alice)
        await self.rooms.add_member(room.id, self.bob, False, self.alice)

        with self.assertRaises(BadRequest) as cm:
            await self.rooms.remove_member(room.id, self.alice, self.alice)

        self.assertEqual(cm.exception.message, "Cannot remove the last admin")
        self.assertEqual(await count_rows(RoomMember, room_id=room.id, role=RoomRole.ADMIN), 1)

    async def test_admin_can_leave_when_another_admin_remains(self):
        room = await self.create_room(self.alice)
        await self.rooms.add_member(room.id, self.bob, True, self.alice)

        await self.rooms.remove_member(room.id, self.alice, self.alice)

        self.assertEqual(await count_rows(RoomMember, room_id=room.id, role=RoomRole.ADMIN), 1)
        with self.assertRaises(BadRequest):
            await self.rooms.remove_member(room.id, self.bob, self.bob)

    async def test_member_can_remove_self_but_not_others(self):
        room = await self.create_room(self.alice)
        await self.rooms.add_member(room.id, self.bob, False, self.alice)
        await self.rooms.add_member(room.id, self.carol, False, self.alice)

        with self.assertRaises(Forbidden):
            await self.rooms.remove_member(room.id, self.carol, self.bob)

        await self.rooms.remove_member(room.id, self.bob, self.bob)
        self.assertEqual(await count_rows(RoomMember, room_id=room.id), 2)

    async def test_admins_leaving_together_keep_one_admin(self):
        room = await self.create_room(self.alice)
        await self.rooms.add_member(room.id, self.bob, True, self.alice)

        results = await asyncio.gather(
            self.rooms.remove_member(room.id, self.alice, self.alice),
            self.rooms.remove_member(room.id, self.bob, self.bob),
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, BadRequest)]
        self.assertEqual(len(rejected), 1)
        self.assertEqual(rejected[0].message, "Cannot remove the last admin")
        self.assertEqual(results.count(None), 1)
        self.assertEqual(await count_rows(RoomMember, room_id=room.id, role=RoomRole.ADMIN), 1)

    async def test_concurrent_adds_of_one_user_insert_once(self):
        room = await self.create_room(self.alice)
        await self.rooms.add_member(room.id, self.carol, True, self.alice)

        results = await asyncio.gather(
            self.rooms.add_member(room.id, self.bob, False, self.alice),
            self.rooms.add_member(room.id, self.bob, False, self.carol),
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, BadRequest)]
        self.assertEqual(len(rejected), 1)
        self.assertEqual(rejected[0].message, "User is already a member")
        self.assertEqual(await count_rows(RoomMember, room_id=room.id), 3)
        self.assertEqual(await count_rows(RoomMember, room_id=room.id, user_id=self.bob), 1)

    async def test_remove_non_member(self):
        room = await self.create_room(self.alice)
        with self.assertRaises(NotFound):
            await self.rooms.remove_member(room.id, self.bob, self.alice)

    async def test_get_room_hides_existence_from_non_members(self):
        room = await self.create_room(self.alice)
        with self.assertRaises(Forbidden):
            await self.rooms.get_room(room.id, self.bob)
        with self.assertRaises(Forbidden):
            await self.rooms.get_room(12345, self.bob)

    async def test_update_room(self):
        room = await self.create_room(self.alice)
        await self.rooms.add_member(room.id, self.bob, False, self.alice)

        with self.assertRaises(Forbidden):
            await self.rooms.update_room(room.id, RoomUpdate(name="Hijack"), self.bob)

        updated = await self.rooms.update_room(room.id, RoomUpdate(name="Lobby", description="Say hi"), self.alice)
        self.assertEqual((updated.name, updated.description, updated.member_count), ("Lobby", "Say hi", 2))

    async def test_delete_room_cascades(self):
        room = await self.create_room(self.alice)
        await self.rooms.add_member(room.id, self.bob, False, self.alice)
        sent = await self.hub.send_message(room.id, "hello", self.bob)
        await self.hub.add_reaction(sent.id, "👍", self.alice)

        with self.assertRaises(Forbidden):
            await self.rooms.delete_room(room.id, self.bob)

        await self.rooms.delete_room(room.id, self.alice)

        self.assertEqual(await count_rows(RoomMember, room_id=room.id), 0)
        self.assertEqual(await count_rows(Message, room_id=room.id), 0)
        self.assertEqual(await count_rows(MessageReaction), 0)
        with self.assertRaises(Forbidden):
            await self.rooms.get_room(room.id, self.alice)

    async def test_list_user_rooms_with_last_message(self):
        general = await self.create_room(self.alice, "General")
        await self.create_room(self.bob, "Other")
        await self.hub.send_message(general.id, "first", self.alice)
        await self.hub.send_message(general.id, "second", self.alice)

        rooms = await self.rooms.list_user_rooms(self.alice)

        self.assertEqual([r.name for r in rooms], ["General"])
        self.assertEqual(rooms[0].last_message.content, "second")

    async def test_list_public_rooms(self):
        await self.create_room(self.alice, "Open")
        await self.create_room(self.alice, "Secret", is_private=True)
        names = [r.name for r in await self.rooms.list_public_rooms()]
        self.assertEqual(names, ["Open"])


class TestRoomMessages(HubTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.alice = await make_user("alice")
        self.bob = await make_user("bob")
        self.room = await self.create_room(self.alice)

    async def test_newest_message_comes_first(self):
        await self.hub.send_message(self.room.id, "old", self.alice)
        sent = await self.hub.send_message(self.room.id, "new", self.alice)

        page = await self.rooms.list_room_messages(self.room.id, self.alice)

        self.assertEqual(page.items[0].id, sent.id)
        self.assertEqual((page.page, page.page_size, page.total_count), (1, 50, 2))

    async def test_second_page_of_size_one_is_the_older_message(self):
        first = await self.hub.send_message(self.room.id, "older", self.alice)
        await self.hub.send_message(self.room.id, "newer", self.alice)

        page = await self.rooms.list_room_messages(self.room.id, self.alice, page=2, page_size=1)

        self.assertEqual([m.id for m in page.items], [first.id])
        self.assertEqual(page.total_count, 2)

    async def test_out_of_range_paging_is_coerced(self):
        page = await self.rooms.list_room_messages(self.room.id, self.alice, page=0, page_size=500)
        self.assertEqual((page.page, page.page_size), (1, 50))

    async def test_edit_shows_up_in_history(self):
        sent = await self.hub.send_message(self.room.id, "typo", self.alice)
        await self.hub.edit_message(sent.id, "fixed", self.alice)

        item = (await self.rooms.list_room_messages(self.room.id, self.alice)).items[0]

        self.assertEqual(item.content, "fixed")
        self.assertIsNotNone(item.edited_at)

    async def test_history_is_members_only(self):
        with self.assertRaises(Forbidden):
            await self.rooms.list_room_messages(self.room.id, self.bob)

    async def test_reactions_are_grouped_per_emoji(self):
        await self.rooms.add_member(self.room.id, self.bob, False, self.alice)
        sent = await self.hub.send_message(self.room.id, "vote", self.alice)
        await self.hub.add_reaction(sent.id, "👍", self.alice)
        await self.hub.add_reaction(sent.id, "👍", self.bob)
        await self.hub.add_reaction(sent.id, "🎉", self.bob)

        item = (await self.rooms.list_room_messages(self.room.id, self.alice)).items[0]

        reactions = {r.emoji: (r.count, sorted(r.user_ids)) for r in item.reactions}
        self.assertEqual(reactions, {"👍": (2, sorted([self.alice, self.bob])), "🎉": (1, [self.bob])})


class TestClampPage(unittest.TestCase):
    def test_bounds(self):
        self.assertEqual(clamp_page(-3, 0), (1, 50))
        self.assertEqual(clamp_page(2, 1), (2, 1))
        self.assertEqual(clamp_page(1, 100), (1, 100))
        self.assertEqual(clamp_page(1, 101), (1, 50))
        self.assertEqual(clamp_page(None, None), (1, 50))
