from .db import SessionLocal
from .hub import RoomEventHub
from .registry import registry
from .rooms import RoomService
from .users import UserService

hub = RoomEventHub(SessionLocal, registry)
room_service = RoomService(SessionLocal, hub)
user_service = UserService(SessionLocal)


def get_hub() -> RoomEventHub:
    return hub


def get_room_service() -> RoomService:
    return room_service


def get_user_service() -> UserService:
    return user_service
