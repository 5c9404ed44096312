from fastapi import APIRouter, Depends, Response

from ..auth import get_current_user_id
from ..deps import get_hub
from ..hub import RoomEventHub
from ..schemas import MessageEdited, MessageUpdate, ReactionEvent, ReactionIn

router = APIRouter(prefix="/api/messages", tags=["messages"])


@router.put("/{message_id}", response_model=MessageEdited)
async def edit_message(message_id: int, body: MessageUpdate, user_id: int = Depends(get_current_user_id),
                       hub: RoomEventHub = Depends(get_hub)):
    return await hub.edit_message(message_id, body.content, user_id)


@router.delete("/{message_id}", status_code=204)
async def delete_message(message_id: int, user_id: int = Depends(get_current_user_id),
                         hub: RoomEventHub = Depends(get_hub)):
    await hub.delete_message(message_id, user_id)
    return Response(status_code=204)


@router.post("/{message_id}/reactions", response_model=ReactionEvent, status_code=201)
async def add_reaction(message_id: int, body: ReactionIn, user_id: int = Depends(get_current_user_id),
                       hub: RoomEventHub = Depends(get_hub)):
    return await hub.add_reaction(message_id, body.emoji, user_id)


@router.delete("/{message_id}/reactions/{emoji}", status_code=204)
async def remove_reaction(message_id: int, emoji: str, user_id: int = Depends(get_current_user_id),
                          hub: RoomEventHub = Depends(get_hub)):
    await hub.remove_reaction(message_id, emoji, user_id)
    return Response(status_code=204)
