from fastapi import APIRouter, Depends

from ..auth import get_current_claims, get_current_user_id
from ..deps import get_user_service
from ..errors import Unauthorized
from ..schemas import CurrentUserOut, LoginIn, LoginOut, RefreshIn, UserCreate
from ..users import UserService

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", response_model=LoginOut)
async def register(payload: UserCreate, users: UserService = Depends(get_user_service)):
    return await users.register(payload)


@router.post("/login", response_model=LoginOut)
async def login(payload: LoginIn, users: UserService = Depends(get_user_service)):
    return await users.login(payload)


@router.post("/refresh", response_model=LoginOut)
async def refresh(payload: RefreshIn, users: UserService = Depends(get_user_service)):
    return await users.refresh(payload.refresh_token)


@router.post("/logout")
async def logout(user_id: int = Depends(get_current_user_id), users: UserService = Depends(get_user_service)):
    await users.logout(user_id)
    return {"message": "Logged out successfully"}


@router.get("/me", response_model=CurrentUserOut)
async def me(claims: dict = Depends(get_current_claims)):
    # answered from the token alone, no database read
    try:
        return CurrentUserOut(user_id=int(claims["sub"]), username=claims["username"], email=claims["email"])
    except (KeyError, TypeError, ValueError):
        raise Unauthorized("Invalid token")
