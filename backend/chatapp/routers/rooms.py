from typing import List

from fastapi import APIRouter, Depends, Query, Response

from ..auth import get_current_user_id
from ..deps import get_hub, get_room_service
from ..hub import RoomEventHub
from ..rooms import RoomService
from ..schemas import (
    MemberAdd,
    MessageCreate,
    MessageOut,
    Page,
    RoomCreate,
    RoomDetailsOut,
    RoomMemberOut,
    RoomOut,
    RoomUpdate,
)

router = APIRouter(prefix="/api/rooms", tags=["rooms"])


@router.get("", response_model=List[RoomOut])
async def list_my_rooms(user_id: int = Depends(get_current_user_id),
                        rooms: RoomService = Depends(get_room_service)):
    return await rooms.list_user_rooms(user_id)


@router.get("/public", response_model=List[RoomOut])
async def list_public_rooms(_: int = Depends(get_current_user_id), rooms: RoomService = Depends(get_room_service)):
    return await rooms.list_public_rooms()


@router.post("", response_model=RoomOut, status_code=201)
async def create_room(body: RoomCreate, user_id: int = Depends(get_current_user_id),
                      rooms: RoomService = Depends(get_room_service)):
    return await rooms.create_room(body, user_id)


@router.get("/{room_id}", response_model=RoomDetailsOut)
async def get_room(room_id: int, user_id: int = Depends(get_current_user_id),
                   rooms: RoomService = Depends(get_room_service)):
    return await rooms.get_room(room_id, user_id)


@router.put("/{room_id}", response_model=RoomOut)
async def update_room(room_id: int, body: RoomUpdate, user_id: int = Depends(get_current_user_id),
                      rooms: RoomService = Depends(get_room_service)):
    return await rooms.update_room(room_id, body, user_id)


@router.delete("/{room_id}", status_code=204)
async def delete_room(room_id: int, user_id: int = Depends(get_current_user_id),
                      rooms: RoomService = Depends(get_room_service)):
    await rooms.delete_room(room_id, user_id)
    return Response(status_code=204)


@router.post("/{room_id}/members", response_model=RoomMemberOut, status_code=201)
async def add_member(room_id: int, body: MemberAdd, user_id: int = Depends(get_current_user_id),
                     rooms: RoomService = Depends(get_room_service)):
    return await rooms.add_member(room_id, body.user_id, body.is_admin, user_id)


@router.delete("/{room_id}/members/{member_id}", status_code=204)
async def remove_member(room_id: int, member_id: int, user_id: int = Depends(get_current_user_id),
                        rooms: RoomService = Depends(get_room_service)):
    await rooms.remove_member(room_id, member_id, user_id)
    return Response(status_code=204)


@router.get("/{room_id}/messages", response_model=Page[MessageOut])
async def list_messages(room_id: int, page: int = Query(1), page_size: int = Query(50, alias="pageSize"),
                        user_id: int = Depends(get_current_user_id),
                        rooms: RoomService = Depends(get_room_service)):
    return await rooms.list_room_messages(room_id, user_id, page, page_size)


@router.post("/{room_id}/messages", response_model=MessageOut, status_code=201)
async def send_message(room_id: int, body: MessageCreate, user_id: int = Depends(get_current_user_id),
                       hub: RoomEventHub = Depends(get_hub)):
    return await hub.send_message(room_id, body.content, user_id)


@router.get("/{room_id}/online")
async def online_users(room_id: int, user_id: int = Depends(get_current_user_id),
                       rooms: RoomService = Depends(get_room_service)):
    return {"userIds": await rooms.online_users(room_id, user_id)}
