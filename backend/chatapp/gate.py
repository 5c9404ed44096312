from .errors import Forbidden
from .membership import MembershipStore


class AuthorizationGate:
    """Read-only membership and role checks run before room-scoped operations.

    The membership check comes before any room lookup, so a missing room and a
    room the caller does not belong to are indistinguishable.
    """

    def __init__(self, members: MembershipStore) -> None:
        self.members = members

    async def is_member(self, room_id: int, user_id: int) -> bool:
        return await self.members.is_member(room_id, user_id)

    async def is_admin(self, room_id: int, user_id: int) -> bool:
        return await self.members.is_admin(room_id, user_id)

    async def require_member(self, room_id: int, user_id: int) -> None:
        if not await self.is_member(room_id, user_id):
            raise Forbidden("You are not a member of this room")

    async def require_admin(self, room_id: int, user_id: int) -> None:
        if not await self.is_admin(room_id, user_id):
            raise Forbidden("You are not an admin of this room")
