from typing import List

from fastapi import APIRouter, Depends, Query

from ..auth import get_current_user_id
from ..deps import get_user_service
from ..schemas import UserOut, UserUpdate
from ..users import UserService

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/me", response_model=UserOut)
async def me(user_id: int = Depends(get_current_user_id), users: UserService = Depends(get_user_service)):
    return await users.get_user(user_id)


@router.put("/me", response_model=UserOut)
async def update_me(payload: UserUpdate, user_id: int = Depends(get_current_user_id),
                    users: UserService = Depends(get_user_service)):
    return await users.update_user(user_id, payload)


@router.get("/search", response_model=List[UserOut])
async def search(query: str = Query(""), _: int = Depends(get_current_user_id),
                 users: UserService = Depends(get_user_service)):
    return await users.search_users(query)


@router.get("", response_model=List[UserOut])
async def list_users(_: int = Depends(get_current_user_id), users: UserService = Depends(get_user_service)):
    return await users.list_users()


@router.get("/{user_id}", response_model=UserOut)
async def get_user(user_id: int, _: int = Depends(get_current_user_id),
                   users: UserService = Depends(get_user_service)):
    return await users.get_user(user_id)
