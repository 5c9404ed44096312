import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, Set


@dataclass
class Connection:
    connection_id: str
    user_id: int
    groups: Set[int] = field(default_factory=set)
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)


class ConnectionRegistry:
    """Live connections indexed by id, by room group and by user.

    Every method runs without suspending, so on a single event loop each
    mutation is applied whole.
    """

    def __init__(self) -> None:
        self.connections: Dict[str, Connection] = {}
        self.groups: Dict[int, Set[str]] = {}
        self.users: Dict[int, Set[str]] = {}

    def register(self, connection_id: str, user_id: int) -> Connection:
        conn = self.connections.get(connection_id)
        if conn:
            return conn
        conn = Connection(connection_id=connection_id, user_id=user_id)
        self.connections[connection_id] = conn
        self.users.setdefault(user_id, set()).add(connection_id)
        return conn

    def unregister(self, connection_id: str) -> int | None:
        conn = self.connections.pop(connection_id, None)
        if not conn:
            return None
        for room_id in conn.groups:
            self._discard(self.groups, room_id, connection_id)
        self._discard(self.users, conn.user_id, connection_id)
        return conn.user_id

    def join_group(self, connection_id: str, room_id: int) -> bool:
        conn = self.connections.get(connection_id)
        if not conn:
            return False
        conn.groups.add(room_id)
        self.groups.setdefault(room_id, set()).add(connection_id)
        return True

    def leave_group(self, connection_id: str, room_id: int) -> bool:
        conn = self.connections.get(connection_id)
        if not conn or room_id not in conn.groups:
            return False
        conn.groups.discard(room_id)
        self._discard(self.groups, room_id, connection_id)
        return True

    def remove_user_from_group(self, user_id: int, room_id: int) -> Set[str]:
        return {cid for cid in self.users.get(user_id, ()) if self.leave_group(cid, room_id)}

    def drop_group(self, room_id: int) -> Set[str]:
        members = self.groups.pop(room_id, set())
        for cid in members:
            conn = self.connections.get(cid)
            if conn:
                conn.groups.discard(room_id)
        return members

    def in_group(self, connection_id: str, room_id: int) -> bool:
        return connection_id in self.groups.get(room_id, ())

    def members_of(self, room_id: int) -> Set[str]:
        return set(self.groups.get(room_id, ()))

    def users_in(self, room_id: int) -> Set[int]:
        return {self.connections[cid].user_id for cid in self.groups.get(room_id, ())}

    def connections_for(self, user_id: int) -> Set[str]:
        return set(self.users.get(user_id, ()))

    def all_connections(self) -> Set[str]:
        return set(self.connections)

    def send(self, connection_id: str, frame: dict) -> bool:
        conn = self.connections.get(connection_id)
        if not conn:
            return False
        conn.outbox.put_nowait(frame)
        return True

    def send_many(self, connection_ids: Iterable[str], frame: dict) -> int:
        return sum(1 for cid in connection_ids if self.send(cid, frame))

    @staticmethod
    def _discard(index: Dict, key, connection_id: str) -> None:
        bucket = index.get(key)
        if bucket is None:
            return
        bucket.discard(connection_id)
        if not bucket:
            index.pop(key, None)


registry = ConnectionRegistry()
