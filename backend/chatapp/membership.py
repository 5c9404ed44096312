"""Room rows and the (room, user) -> role mapping."""
from typing import Dict, Iterable, List, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Message, MessageReaction, Room, RoomMember, RoomRole, User, utcnow


class MembershipStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # ---------------------- rooms ----------------------
    async def get_room(self, room_id: int) -> Room | None:
        return await self.db.get(Room, room_id)

    async def room_exists(self, room_id: int) -> bool:
        res = await self.db.execute(select(Room.id).where(Room.id == room_id))
        return res.scalar_one_or_none() is not None

    async def create_room(self, name: str, description: str | None, is_private: bool, creator_id: int) -> Room:
        now = utcnow()
        room = Room(name=name, description=description, is_private=is_private, created_by=creator_id, created_at=now)
        self.db.add(room)
        await self.db.flush()
        self.db.add(RoomMember(room_id=room.id, user_id=creator_id, role=RoomRole.ADMIN, joined_at=now))
        await self.db.flush()
        return room

    async def delete_room(self, room_id: int) -> None:
        message_ids = select(Message.id).where(Message.room_id == room_id)
        await self.db.execute(delete(MessageReaction).where(MessageReaction.message_id.in_(message_ids)))
        await self.db.execute(delete(Message).where(Message.room_id == room_id))
        await self.db.execute(delete(RoomMember).where(RoomMember.room_id == room_id))
        await self.db.execute(delete(Room).where(Room.id == room_id))

    async def rooms_for_user(self, user_id: int) -> List[Room]:
        res = await self.db.execute(
            select(Room)
            .join(RoomMember, RoomMember.room_id == Room.id)
            .where(RoomMember.user_id == user_id)
            .order_by(Room.created_at, Room.id)
        )
        return list(res.scalars())

    async def public_rooms(self) -> List[Room]:
        res = await self.db.execute(select(Room).where(Room.is_private.is_(False)).order_by(Room.name, Room.id))
        return list(res.scalars())

    # ---------------------- members ----------------------
    async def get_member(self, room_id: int, user_id: int) -> RoomMember | None:
        res = await self.db.execute(
            select(RoomMember).where(RoomMember.room_id == room_id, RoomMember.user_id == user_id)
        )
        return res.scalar_one_or_none()

    async def role_of(self, room_id: int, user_id: int) -> RoomRole | None:
        res = await self.db.execute(
            select(RoomMember.role).where(RoomMember.room_id == room_id, RoomMember.user_id == user_id)
        )
        return res.scalar_one_or_none()

    async def is_member(self, room_id: int, user_id: int) -> bool:
        return await self.role_of(room_id, user_id) is not None

    async def is_admin(self, room_id: int, user_id: int) -> bool:
        return await self.role_of(room_id, user_id) == RoomRole.ADMIN

    async def add_member(self, room_id: int, user_id: int, role: RoomRole = RoomRole.MEMBER) -> RoomMember:
        member = RoomMember(room_id=room_id, user_id=user_id, role=role, joined_at=utcnow())
        self.db.add(member)
        await self.db.flush()
        return member

    async def remove_member(self, room_id: int, user_id: int) -> None:
        await self.db.execute(
            delete(RoomMember).where(RoomMember.room_id == room_id, RoomMember.user_id == user_id)
        )

    async def count_admins(self, room_id: int) -> int:
        res = await self.db.execute(
            select(func.count(RoomMember.id)).where(RoomMember.room_id == room_id, RoomMember.role == RoomRole.ADMIN)
        )
        return res.scalar_one()

    async def member_counts(self, room_ids: Iterable[int]) -> Dict[int, int]:
        ids = list(room_ids)
        if not ids:
            return {}
        res = await self.db.execute(
            select(RoomMember.room_id, func.count(RoomMember.id))
            .where(RoomMember.room_id.in_(ids))
            .group_by(RoomMember.room_id)
        )
        counts = dict(res.all())
        return {room_id: counts.get(room_id, 0) for room_id in ids}

    async def list_members(self, room_id: int) -> List[Tuple[RoomMember, User]]:
        res = await self.db.execute(
            select(RoomMember, User)
            .join(User, User.id == RoomMember.user_id)
            .where(RoomMember.room_id == room_id)
            .order_by(RoomMember.joined_at, RoomMember.id)
        )
        return [(member, user) for member, user in res.all()]
