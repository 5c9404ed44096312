import logging
from typing import List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .config import settings
from .errors import BadRequest, NotFound
from .gate import AuthorizationGate
from .hub import RoomEventHub
from .membership import MembershipStore
from .messages import MessageStore
from .models import Room, RoomRole
from .schemas import MessageOut, Page, RoomCreate, RoomDetailsOut, RoomMemberOut, RoomOut, RoomUpdate
from .users import UserStore

logger = logging.getLogger(__name__)


def clamp_page(page: int | None, page_size: int | None) -> tuple[int, int]:
    if page is None or page < 1:
        page = 1
    if page_size is None or page_size < 1 or page_size > settings.max_page_size:
        page_size = settings.default_page_size
    return page, page_size


def room_out(room: Room, member_count: int, last_message: MessageOut | None = None) -> RoomOut:
    return RoomOut(
        id=room.id,
        name=room.name,
        description=room.description,
        is_private=room.is_private,
        created_by=room.created_by,
        created_at=room.created_at,
        member_count=member_count,
        last_message=last_message,
    )


class RoomService:
    """Room administration. Shares the gate and the per-room locks with the hub."""

    def __init__(self, session_factory: async_sessionmaker, hub: RoomEventHub) -> None:
        self.session_factory = session_factory
        self.hub = hub

    async def create_room(self, payload: RoomCreate, creator_id: int) -> RoomOut:
        async with self.session_factory() as db:
            if not await UserStore(db).exists(creator_id):
                raise NotFound("User", creator_id)
            # room row and admin membership commit together or not at all
            room = await MembershipStore(db).create_room(
                payload.name, payload.description, payload.is_private, creator_id
            )
            await db.commit()
        logger.info(f"User {creator_id} created room {room.id} ({room.name})")
        return room_out(room, member_count=1)

    async def get_room(self, room_id: int, user_id: int) -> RoomDetailsOut:
        async with self.session_factory() as db:
            members = MembershipStore(db)
            await AuthorizationGate(members).require_member(room_id, user_id)
            room = await members.get_room(room_id)
            if not room:
                raise NotFound("Room", room_id)
            rows = await members.list_members(room_id)
            creator = await UserStore(db).username_of(room.created_by)
        base = room_out(room, member_count=len(rows))
        return RoomDetailsOut(
            **base.model_dump(),
            created_by_username=creator or "Unknown",
            members=[
                RoomMemberOut(user_id=u.id, username=u.username, email=u.email, role=m.role, joined_at=m.joined_at)
                for m, u in rows
            ],
        )

    async def list_user_rooms(self, user_id: int) -> List[RoomOut]:
        async with self.session_factory() as db:
            members = MembershipStore(db)
            rooms = await members.rooms_for_user(user_id)
            ids = [r.id for r in rooms]
            counts = await members.member_counts(ids)
            store = MessageStore(db)
            latest = await store.last_in_rooms(ids)
            views = {m.room_id: m for m in await store.to_out(list(latest.values()))}
        return [room_out(r, counts[r.id], views.get(r.id)) for r in rooms]

    async def list_public_rooms(self) -> List[RoomOut]:
        async with self.session_factory() as db:
            members = MembershipStore(db)
            rooms = await members.public_rooms()
            counts = await members.member_counts([r.id for r in rooms])
        return [room_out(r, counts[r.id]) for r in rooms]

    async def update_room(self, room_id: int, payload: RoomUpdate, user_id: int) -> RoomOut:
        async with self.session_factory() as db:
            members = MembershipStore(db)
            await AuthorizationGate(members).require_admin(room_id, user_id)
            room = await members.get_room(room_id)
            if not room:
                raise NotFound("Room", room_id)
            room.name = payload.name
            room.description = payload.description
            await db.commit()
            count = (await members.member_counts([room_id]))[room_id]
        return room_out(room, count)

    async def delete_room(self, room_id: int, user_id: int) -> None:
        async with self.hub.locks.hold(room_id):
            async with self.session_factory() as db:
                members = MembershipStore(db)
                await AuthorizationGate(members).require_admin(room_id, user_id)
                if not await members.room_exists(room_id):
                    raise NotFound("Room", room_id)
                await members.delete_room(room_id)
                await db.commit()
            self.hub.close_room(room_id)
        logger.info(f"User {user_id} deleted room {room_id}")

    async def add_member(self, room_id: int, target_user_id: int, as_admin: bool, user_id: int) -> RoomMemberOut:
        async with self.hub.locks.hold(room_id):
            async with self.session_factory() as db:
                members = MembershipStore(db)
                await AuthorizationGate(members).require_admin(room_id, user_id)
                if not await members.room_exists(room_id):
                    raise NotFound("Room", room_id)
                target = await UserStore(db).get(target_user_id)
                if not target:
                    raise NotFound("User", target_user_id)
                if await members.is_member(room_id, target_user_id):
                    raise BadRequest("User is already a member")
                try:
                    member = await members.add_member(
                        room_id, target_user_id, RoomRole.ADMIN if as_admin else RoomRole.MEMBER
                    )
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    raise BadRequest("User is already a member")
        logger.info(f"User {user_id} added user {target_user_id} to room {room_id} as {member.role.value}")
        return RoomMemberOut(user_id=target.id, username=target.username, email=target.email,
                             role=member.role, joined_at=member.joined_at)

    async def remove_member(self, room_id: int, target_user_id: int, requester_id: int) -> None:
        async with self.hub.locks.hold(room_id):
            async with self.session_factory() as db:
                members = MembershipStore(db)
                if target_user_id != requester_id:
                    await AuthorizationGate(members).require_admin(room_id, requester_id)
                if not await members.room_exists(room_id):
                    raise NotFound("Room", room_id)
                member = await members.get_member(room_id, target_user_id)
                if not member:
                    raise NotFound(f"User with ID {target_user_id} is not a member of this room")
                if member.role == RoomRole.ADMIN and await members.count_admins(room_id) == 1:
                    raise BadRequest("Cannot remove the last admin")
                await members.remove_member(room_id, target_user_id)
                await db.commit()
            self.hub.evict_user(room_id, target_user_id)
        logger.info(f"User {requester_id} removed user {target_user_id} from room {room_id}")

    async def list_room_messages(self, room_id: int, user_id: int,
                                 page: int | None = 1, page_size: int | None = None) -> Page[MessageOut]:
        page, page_size = clamp_page(page, page_size)
        async with self.session_factory() as db:
            await AuthorizationGate(MembershipStore(db)).require_member(room_id, user_id)
            store = MessageStore(db)
            messages, total = await store.page(room_id, page, page_size)
            items = await store.to_out(messages)
        return Page[MessageOut](items=items, page=page, page_size=page_size, total_count=total)

    async def online_users(self, room_id: int, user_id: int) -> List[int]:
        async with self.session_factory() as db:
            await AuthorizationGate(MembershipStore(db)).require_member(room_id, user_id)
        return list(self.hub.live_users(room_id))
