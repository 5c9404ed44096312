import logging
from typing import Callable, Dict

from sqlalchemy.ext.asyncio import async_sessionmaker

from .locks import KeyedLocks
from .models import utcnow
from .schemas import UserStatusChanged
from .users import UserStore

logger = logging.getLogger(__name__)

Announce = Callable[[UserStatusChanged], None]


class PresenceTracker:
    """Online state per user, reference counted over live connections.

    A user goes online with the first connection and offline only when the
    last one closes. Transitions for one user are serialised, so the persisted
    flag and the announced status always follow the order of the transitions.
    """

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory
        self._live: Dict[int, int] = {}
        self._locks = KeyedLocks()

    def live_connections(self, user_id: int) -> int:
        return self._live.get(user_id, 0)

    def is_online(self, user_id: int) -> bool:
        return self.live_connections(user_id) > 0

    async def connect(self, user_id: int, announce: Announce | None = None) -> UserStatusChanged | None:
        async with self._locks.hold(user_id):
            self._live[user_id] = self._live.get(user_id, 0) + 1
            if self._live[user_id] != 1:
                return None
            try:
                return await self._transition(user_id, True, announce)
            except Exception:
                # the connection never came up; it must not keep the user online
                del self._live[user_id]
                raise

    async def disconnect(self, user_id: int, announce: Announce | None = None) -> UserStatusChanged | None:
        async with self._locks.hold(user_id):
            count = self._live.get(user_id, 0)
            if count <= 0:
                return None
            if count > 1:
                self._live[user_id] = count - 1
                return None
            del self._live[user_id]
            return await self._transition(user_id, False, announce)

    async def _transition(self, user_id: int, is_online: bool, announce: Announce | None) -> UserStatusChanged | None:
        async with self.session_factory() as db:
            user = await UserStore(db).set_presence(user_id, is_online, utcnow())
            if user is None:
                logger.warning(f"Presence change for unknown user {user_id}")
                return None
            await db.commit()
            status = UserStatusChanged(user_id=user_id, is_online=is_online, last_seen=user.last_seen)
        logger.info(f"User {user_id} is now {'online' if is_online else 'offline'}")
        if announce:
            announce(status)
        return status
