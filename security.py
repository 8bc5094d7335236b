import secrets
from datetime import timedelta
from typing import Optional

import jwt
from bson.objectid import ObjectId
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from slowapi import Limiter
from slowapi.util import get_remote_address

from config import (
    BCRYPT_ROUNDS,
    COOKIE_MAX_AGE,
    COOKIE_NAME,
    IS_PRODUCTION,
    JWT_ALGO,
    JWT_EXPIRE_DAYS,
    JWT_SECRET,
    OAUTH_STATE_COOKIE,
    OAUTH_STATE_MINUTES,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_GENERAL,
)
from database import db, serialize_doc, utcnow

limiter = Limiter(key_func=get_remote_address, default_limits=[RATE_LIMIT_GENERAL], enabled=RATE_LIMIT_ENABLED)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
security = HTTPBearer(auto_error=False)

PRIVATE_USER_FIELDS = ("password_hash", "password_reset_token", "password_reset_expires")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_token(payload: dict, expires: Optional[timedelta] = None) -> str:
    exp = utcnow() + (expires or timedelta(days=JWT_EXPIRE_DAYS))
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def token_for(user: dict) -> str:
    return create_token({"id": user["id"], "role": user.get("role", "user")})


def set_auth_cookie(response, token: str):
    response.set_cookie(
        COOKIE_NAME,
        token,
        max_age=COOKIE_MAX_AGE,
        httponly=True,
        secure=IS_PRODUCTION,
        samesite="none" if IS_PRODUCTION else "lax",
    )


def clear_auth_cookie(response):
    response.delete_cookie(COOKIE_NAME)


def set_oauth_state_cookie(response, provider: str, state: str):
    token = create_token({"provider": provider, "state": state}, timedelta(minutes=OAUTH_STATE_MINUTES))
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        token,
        max_age=OAUTH_STATE_MINUTES * 60,
        httponly=True,
        secure=IS_PRODUCTION,
        samesite="lax",
    )


def clear_oauth_state_cookie(response):
    response.delete_cookie(OAUTH_STATE_COOKIE)


def oauth_state_matches(request: Request, provider: str, state: Optional[str]) -> bool:
    """The callback's `state` must echo the signed value set when the login started."""
    cookie = request.cookies.get(OAUTH_STATE_COOKIE)
    if not (cookie and state):
        return False
    try:
        payload = jwt.decode(cookie, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.InvalidTokenError:
        return False
    expected = str(payload.get("state", "")).encode()
    return payload.get("provider") == provider and secrets.compare_digest(expected, state.encode())


def public_user(user: dict) -> dict:
    if not user:
        return user
    return {k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS}


def _request_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(COOKIE_NAME)


def get_current_user(request: Request, credentials: HTTPAuthorizationCredentials = Depends(security)):
    token = _request_token(request, credentials)
    if not token:
        raise HTTPException(status_code=401, detail="Not authorized, no token")
    payload = decode_token(token)
    user_id = payload.get("id")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token payload")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account is deactivated")
    return serialize_doc(user)


def get_optional_user(request: Request, credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Same as get_current_user, but anonymous or stale sessions yield None."""
    if not _request_token(request, credentials):
        return None
    try:
        return get_current_user(request, credentials)
    except HTTPException:
        return None


def is_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") == "admin"


def require_admin(user=Depends(get_current_user)):
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Admin only")
    return user
