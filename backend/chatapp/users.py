import logging
from datetime import datetime
from typing import List

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .auth import (
    create_access_token,
    create_refresh_token,
    get_password_hash,
    hash_refresh_token,
    refresh_token_expiry,
    verify_password,
)
from .errors import BadRequest, NotFound, Unauthorized
from .models import User, utcnow
from .schemas import LoginIn, LoginOut, UserCreate, UserOut, UserUpdate

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 20


class UserStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, user_id: int) -> User | None:
        return await self.db.get(User, user_id)

    async def exists(self, user_id: int) -> bool:
        res = await self.db.execute(select(User.id).where(User.id == user_id))
        return res.scalar_one_or_none() is not None

    async def username_of(self, user_id: int) -> str | None:
        res = await self.db.execute(select(User.username).where(User.id == user_id))
        return res.scalar_one_or_none()

    async def by_email(self, email: str) -> User | None:
        res = await self.db.execute(select(User).where(func.lower(User.email) == email.lower()))
        return res.scalar_one_or_none()

    async def by_username(self, username: str) -> User | None:
        res = await self.db.execute(select(User).where(User.username == username))
        return res.scalar_one_or_none()

    async def by_refresh_hash(self, token_hash: str) -> User | None:
        res = await self.db.execute(select(User).where(User.refresh_token_hash == token_hash))
        return res.scalar_one_or_none()

    async def create(self, username: str, email: str, password_hash: str) -> User:
        now = utcnow()
        user = User(username=username, email=email, password_hash=password_hash,
                    created_at=now, last_seen=now, is_online=False)
        self.db.add(user)
        await self.db.flush()
        return user

    async def search(self, query: str, limit: int = SEARCH_LIMIT) -> List[User]:
        pattern = f"%{query.lower()}%"
        res = await self.db.execute(
            select(User)
            .where(or_(func.lower(User.username).like(pattern), func.lower(User.email).like(pattern)))
            .order_by(User.username)
            .limit(limit)
        )
        return list(res.scalars())

    async def all(self) -> List[User]:
        res = await self.db.execute(select(User).order_by(User.username))
        return list(res.scalars())

    async def set_presence(self, user_id: int, is_online: bool, at: datetime) -> User | None:
        user = await self.get(user_id)
        if user is None:
            return None
        user.is_online = is_online
        user.last_seen = at
        await self.db.flush()
        return user


class UserService:
    """Registration, login, token rotation and profile operations."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    async def register(self, payload: UserCreate) -> LoginOut:
        async with self.session_factory() as db:
            users = UserStore(db)
            if await users.by_email(payload.email):
                raise BadRequest("Email already registered")
            if await users.by_username(payload.username):
                raise BadRequest("Username already taken")
            user = await users.create(payload.username, payload.email, get_password_hash(payload.password))
            login = self._issue_tokens(user)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise BadRequest("Username or email already taken")
        logger.info(f"Registered user {user.id} ({user.username})")
        return login

    async def login(self, payload: LoginIn) -> LoginOut:
        async with self.session_factory() as db:
            user = await UserStore(db).by_email(payload.email)
            if not user or not verify_password(payload.password, user.password_hash):
                raise Unauthorized("Invalid credentials")
            user.last_seen = utcnow()
            login = self._issue_tokens(user)
            await db.commit()
        logger.info(f"User {user.id} logged in")
        return login

    async def refresh(self, refresh_token: str) -> LoginOut:
        async with self.session_factory() as db:
            user = await UserStore(db).by_refresh_hash(hash_refresh_token(refresh_token))
            if not user or not user.refresh_token_expires_at or user.refresh_token_expires_at < utcnow():
                raise Unauthorized("Invalid or expired refresh token")
            login = self._issue_tokens(user)
            await db.commit()
        return login

    async def logout(self, user_id: int) -> bool:
        async with self.session_factory() as db:
            user = await UserStore(db).get(user_id)
            if not user:
                return False
            user.refresh_token_hash = None
            user.refresh_token_expires_at = None
            await db.commit()
        logger.info(f"User {user_id} logged out")
        return True

    async def get_user(self, user_id: int) -> UserOut:
        async with self.session_factory() as db:
            user = await UserStore(db).get(user_id)
            if not user:
                raise NotFound("User", user_id)
            return UserOut.model_validate(user)

    async def list_users(self) -> List[UserOut]:
        async with self.session_factory() as db:
            return [UserOut.model_validate(u) for u in await UserStore(db).all()]

    async def search_users(self, query: str | None) -> List[UserOut]:
        query = (query or "").strip()
        if len(query) < 2:
            return []
        async with self.session_factory() as db:
            return [UserOut.model_validate(u) for u in await UserStore(db).search(query)]

    async def update_user(self, user_id: int, payload: UserUpdate) -> UserOut:
        async with self.session_factory() as db:
            users = UserStore(db)
            user = await users.get(user_id)
            if not user:
                raise NotFound("User", user_id)
            if payload.username and payload.username != user.username:
                if await users.by_username(payload.username):
                    raise BadRequest("Username already taken")
                user.username = payload.username
            if payload.email and payload.email.lower() != user.email.lower():
                if await users.by_email(payload.email):
                    raise BadRequest("Email already taken")
                user.email = payload.email
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise BadRequest("Username or email already taken")
            return UserOut.model_validate(user)

    @staticmethod
    def _issue_tokens(user: User) -> LoginOut:
        refresh_token = create_refresh_token()
        user.refresh_token_hash = hash_refresh_token(refresh_token)
        user.refresh_token_expires_at = refresh_token_expiry()
        return LoginOut(
            access_token=create_access_token(str(user.id), user.username, user.email),
            refresh_token=refresh_token,
            user=UserOut.model_validate(user),
        )
