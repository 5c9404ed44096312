import hashlib
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone

import jwt
from passlib.context import CryptContext
from fastapi import Depends, WebSocket
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from .config import settings
from .errors import Unauthorized

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.password_hash_rounds)
security = HTTPBearer(auto_error=False)

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)

def create_access_token(sub: str, username: str | None = None, email: str | None = None,
                        expires_minutes: int | None = None) -> str:
    now = int(time.time())
    payload = {
        "sub": sub,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": now + 60 * (expires_minutes or settings.access_token_expire_minutes),
    }
    if username:
        payload["username"] = username
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

def create_refresh_token() -> str:
    return secrets.token_urlsafe(64)

def hash_refresh_token(token: str) -> str:
    # only the digest is persisted
    return hashlib.sha256(token.encode("utf-8")).hexdigest()

def refresh_token_expiry() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=settings.refresh_token_expire_days)

def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")

def user_id_from_token(token: str) -> int:
    data = decode_token(token)
    try:
        return int(data["sub"])
    except (KeyError, TypeError, ValueError):
        raise Unauthorized("Invalid token")

async def get_current_user_id(creds: HTTPAuthorizationCredentials | None = Depends(security)) -> int:
    if not creds:
        raise Unauthorized("Not authenticated")
    return user_id_from_token(creds.credentials)

async def get_current_claims(creds: HTTPAuthorizationCredentials | None = Depends(security)) -> dict:
    if not creds:
        raise Unauthorized("Not authenticated")
    return decode_token(creds.credentials)

def user_id_from_websocket(ws: WebSocket) -> int:
    """Authenticate the handshake: bearer header first, then the query string."""
    token = None
    header = ws.headers.get("authorization")
    if header and header.lower().startswith("bearer "):
        token = header[7:].strip()
    if not token:
        token = ws.query_params.get("access_token") or ws.query_params.get("token")
    if not token:
        raise Unauthorized("Not authenticated")
    return user_id_from_token(token)
