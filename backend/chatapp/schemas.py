from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, EmailStr, Field
from pydantic.alias_generators import to_camel

from .models import MessageType, RoomRole

T = TypeVar("T")


class CamelModel(BaseModel):
    class Config:
        from_attributes = True
        alias_generator = to_camel
        populate_by_name = True


# ---------------------- USERS ----------------------
class UserCreate(CamelModel):
    username: str = Field(min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(min_length=6)

class LoginIn(CamelModel):
    email: EmailStr
    password: str

class RefreshIn(CamelModel):
    refresh_token: str

class UserUpdate(CamelModel):
    username: str | None = Field(default=None, min_length=3, max_length=50)
    email: EmailStr | None = None

class UserOut(CamelModel):
    id: int
    username: str
    email: str
    is_online: bool
    last_seen: datetime

class LoginOut(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: UserOut

class CurrentUserOut(CamelModel):
    user_id: int
    username: str
    email: str


# ---------------------- MESSAGES ----------------------
class MessageCreate(CamelModel):
    content: str

class MessageUpdate(CamelModel):
    content: str

class ReactionIn(CamelModel):
    emoji: str = Field(min_length=1, max_length=10)

class ReactionOut(CamelModel):
    emoji: str
    count: int
    user_ids: list[int]

class MessageOut(CamelModel):
    id: int
    room_id: int
    user_id: int
    username: str
    content: str
    type: MessageType
    attachment_url: str | None = None
    attachment_file_name: str | None = None
    created_at: datetime
    edited_at: datetime | None = None
    reactions: list[ReactionOut] = []

class Page(CamelModel, Generic[T]):
    items: list[T]
    page: int
    page_size: int
    total_count: int


# ---------------------- ROOMS ----------------------
class RoomCreate(CamelModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    is_private: bool = False

class RoomUpdate(CamelModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)

class MemberAdd(CamelModel):
    user_id: int
    is_admin: bool = False

class RoomMemberOut(CamelModel):
    user_id: int
    username: str
    email: str
    role: RoomRole
    joined_at: datetime

class RoomOut(CamelModel):
    id: int
    name: str
    description: str | None
    is_private: bool
    created_by: int
    created_at: datetime
    member_count: int
    last_message: MessageOut | None = None

class RoomDetailsOut(RoomOut):
    created_by_username: str
    members: list[RoomMemberOut]


# ---------------------- EVENTS ----------------------
class RoomEvent(CamelModel):
    user_id: int
    room_id: int
    timestamp: datetime

class MessageEdited(CamelModel):
    id: int
    content: str
    edited_at: datetime

class MessageDeleted(CamelModel):
    id: int
    room_id: int

class TypingIndicator(CamelModel):
    user_id: int
    username: str | None
    room_id: int

class ReactionEvent(CamelModel):
    message_id: int
    room_id: int
    user_id: int
    emoji: str

class RoomDeleted(CamelModel):
    room_id: int

class UserStatusChanged(CamelModel):
    user_id: int
    is_online: bool
    last_seen: datetime
