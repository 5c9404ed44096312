from . import auth, users, rooms, messages, ws

__all__ = ["auth", "users", "rooms", "messages", "ws"]
