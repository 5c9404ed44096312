"""Ordered room message log, edits, deletes and reactions."""
from collections import defaultdict
from typing import Dict, List, Sequence, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Message, MessageReaction, MessageType, User, utcnow
from .schemas import MessageOut, ReactionOut


class MessageStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, room_id: int, user_id: int, content: str, type: MessageType = MessageType.TEXT,
                     attachment_url: str | None = None, attachment_file_name: str | None = None) -> Message:
        message = Message(
            room_id=room_id,
            user_id=user_id,
            content=content,
            type=type,
            attachment_url=attachment_url,
            attachment_file_name=attachment_file_name,
            created_at=utcnow(),
        )
        self.db.add(message)
        await self.db.flush()
        return message

    async def get(self, message_id: int) -> Message | None:
        return await self.db.get(Message, message_id)

    async def edit(self, message: Message, content: str) -> Message:
        message.content = content
        message.edited_at = utcnow()
        await self.db.flush()
        return message

    async def delete(self, message_id: int) -> None:
        await self.db.execute(delete(MessageReaction).where(MessageReaction.message_id == message_id))
        await self.db.execute(delete(Message).where(Message.id == message_id))

    async def count(self, room_id: int) -> int:
        res = await self.db.execute(select(func.count(Message.id)).where(Message.room_id == room_id))
        return res.scalar_one()

    async def page(self, room_id: int, page: int, page_size: int) -> Tuple[List[Message], int]:
        """Newest first; id breaks ties between equal timestamps."""
        total = await self.count(room_id)
        res = await self.db.execute(
            select(Message)
            .where(Message.room_id == room_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(res.scalars()), total

    async def last_in_rooms(self, room_ids: Sequence[int]) -> Dict[int, Message]:
        latest: Dict[int, Message] = {}
        for room_id in room_ids:
            res = await self.db.execute(
                select(Message)
                .where(Message.room_id == room_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(1)
            )
            message = res.scalar_one_or_none()
            if message:
                latest[room_id] = message
        return latest

    # ---------------------- reactions ----------------------
    async def add_reaction(self, message_id: int, user_id: int, emoji: str) -> bool:
        """Returns False when the reaction was already there."""
        if await self._find_reaction(message_id, user_id, emoji):
            return False
        self.db.add(MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji, created_at=utcnow()))
        await self.db.flush()
        return True

    async def remove_reaction(self, message_id: int, user_id: int, emoji: str) -> bool:
        reaction = await self._find_reaction(message_id, user_id, emoji)
        if not reaction:
            return False
        await self.db.delete(reaction)
        await self.db.flush()
        return True

    async def _find_reaction(self, message_id: int, user_id: int, emoji: str) -> MessageReaction | None:
        res = await self.db.execute(
            select(MessageReaction).where(
                MessageReaction.message_id == message_id,
                MessageReaction.user_id == user_id,
                MessageReaction.emoji == emoji,
            )
        )
        return res.scalar_one_or_none()

    async def reactions_for(self, message_ids: Sequence[int]) -> Dict[int, List[ReactionOut]]:
        if not message_ids:
            return {}
        res = await self.db.execute(
            select(MessageReaction)
            .where(MessageReaction.message_id.in_(list(message_ids)))
            .order_by(MessageReaction.created_at, MessageReaction.id)
        )
        grouped: Dict[int, Dict[str, List[int]]] = defaultdict(dict)
        for reaction in res.scalars():
            grouped[reaction.message_id].setdefault(reaction.emoji, []).append(reaction.user_id)
        return {
            mid: [ReactionOut(emoji=emoji, count=len(users), user_ids=users) for emoji, users in by_emoji.items()]
            for mid, by_emoji in grouped.items()
        }

    # ---------------------- views ----------------------
    async def to_out(self, messages: Sequence[Message]) -> List[MessageOut]:
        if not messages:
            return []
        user_ids = {m.user_id for m in messages}
        res = await self.db.execute(select(User.id, User.username).where(User.id.in_(user_ids)))
        usernames = dict(res.all())
        reactions = await self.reactions_for([m.id for m in messages])
        return [
            MessageOut(
                id=m.id,
                room_id=m.room_id,
                user_id=m.user_id,
                username=usernames.get(m.user_id, "Unknown"),
                content=m.content,
                type=m.type,
                attachment_url=m.attachment_url,
                attachment_file_name=m.attachment_file_name,
                created_at=m.created_at,
                edited_at=m.edited_at,
                reactions=reactions.get(m.id, []),
            )
            for m in messages
        ]
