import hashlib
import random
import re
import secrets
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

import requests
import structlog
from bson.objectid import ObjectId
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import AliasChoices, BaseModel, EmailStr, Field

from config import (
    CLIENT_URL,
    DEFAULT_PROFILE_PIC,
    GITHUB_CLIENT_ID,
    GITHUB_CLIENT_SECRET,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    LINKEDIN_CLIENT_ID,
    LINKEDIN_CLIENT_SECRET,
    PASSWORD_MIN_LENGTH,
    PASSWORD_RESET_MINUTES,
    RATE_LIMIT_AUTH,
    SERVER_URL,
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
    USERNAME_PATTERN,
)
from database import as_aware, create_document, db, serialize_doc, utcnow
from mailer import send_password_reset_email, send_welcome_email
from realtime import emit_admin_activity
from schemas import SocialAccount, User as UserSchema
from security import (
    clear_auth_cookie,
    clear_oauth_state_cookie,
    get_current_user,
    hash_password,
    limiter,
    oauth_state_matches,
    public_user,
    set_auth_cookie,
    set_oauth_state_cookie,
    token_for,
    verify_password,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api/auth", tags=["auth"])


# ----------------------- Models -----------------------
class RegisterBody(BaseModel):
    username: str = Field(..., min_length=USERNAME_MIN_LENGTH, max_length=USERNAME_MAX_LENGTH, pattern=USERNAME_PATTERN)
    email: EmailStr
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH)


class LoginBody(BaseModel):
    identifier: str = Field(..., validation_alias=AliasChoices("identifier", "email", "username"))
    password: str


class ForgotPasswordBody(BaseModel):
    email: EmailStr


class ResetPasswordBody(BaseModel):
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH)


def _auth_response(response: Response, user: dict) -> dict:
    token = token_for(user)
    set_auth_cookie(response, token)
    return {"token": token, "user": public_user(user)}


def auto_join_groups(user_id: str) -> int:
    """Subscribe a new user to the public groups of the active auto-join config."""
    config = db["autojoinconfig"].find_one({"is_active": True})
    if not config:
        return 0
    joined = []
    for gid in config.get("group_ids", []):
        if not ObjectId.is_valid(gid):
            continue
        res = db["group"].update_one(
            {"_id": ObjectId(gid), "is_private": False, "members": {"$ne": user_id}},
            {"$push": {"members": user_id}, "$inc": {"member_count": 1}},
        )
        if res.modified_count:
            joined.append(gid)
    if joined:
        db["user"].update_one({"_id": ObjectId(user_id)}, {"$addToSet": {"subscriptions": {"$each": joined}}})
    return len(joined)


# ----------------------- Local accounts -----------------------
@router.post("/register", status_code=201)
@limiter.limit(RATE_LIMIT_AUTH)
def register(request: Request, response: Response, body: RegisterBody, background_tasks: BackgroundTasks):
    if db["user"].find_one({"email": body.email.lower()}):
        raise HTTPException(status_code=400, detail="Email already registered")
    if db["user"].find_one({"username": body.username}):
        raise HTTPException(status_code=400, detail="Username already taken")
    user = UserSchema(
        username=body.username,
        email=body.email.lower(),
        password_hash=hash_password(body.password),
    )
    user_id = create_document("user", user)
    auto_join_groups(user_id)
    db["user"].update_one(
        {"_id": ObjectId(user_id)},
        {"$set": {"last_login": utcnow(), "login_count": 1, "activity.last_activity": utcnow()}},
    )
    created = serialize_doc(db["user"].find_one({"_id": ObjectId(user_id)}))
    background_tasks.add_task(send_welcome_email, created)
    background_tasks.add_task(
        emit_admin_activity,
        {"type": "new_user", "message": f"New user registered: {created['username']}", "userId": user_id},
    )
    logger.info(f"User registered: {created['username']}")
    return _auth_response(response, created)


@router.post("/login")
@limiter.limit(RATE_LIMIT_AUTH)
def login(request: Request, response: Response, body: LoginBody):
    ident = body.identifier.strip()
    user = db["user"].find_one({"$or": [{"email": ident.lower()}, {"username": ident}]})
    if not user:
        raise HTTPException(
            status_code=404,
            detail={"code": "USER_NOT_FOUND", "message": "No account found with that email or username"},
        )
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Your account has been deactivated")
    if not verify_password(body.password, user.get("password_hash")):
        raise HTTPException(status_code=401, detail={"code": "INCORRECT_PASSWORD", "message": "Incorrect password"})
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"last_login": utcnow(), "activity.last_activity": utcnow()}, "$inc": {"login_count": 1}},
    )
    suser = serialize_doc(db["user"].find_one({"_id": user["_id"]}))
    return _auth_response(response, suser)


@router.post("/logout")
def logout(response: Response):
    clear_auth_cookie(response)
    return {"message": "Logged out successfully"}


@router.get("/me")
def me(user=Depends(get_current_user)):
    return public_user(user)


def _hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@router.post("/forgot-password")
@limiter.limit(RATE_LIMIT_AUTH)
def forgot_password(request: Request, body: ForgotPasswordBody, background_tasks: BackgroundTasks):
    user = db["user"].find_one({"email": body.email.lower()})
    if user and user.get("is_active", True):
        token = secrets.token_hex(20)
        db["user"].update_one(
            {"_id": user["_id"]},
            {
                "$set": {
                    "password_reset_token": _hash_reset_token(token),
                    "password_reset_expires": utcnow() + timedelta(minutes=PASSWORD_RESET_MINUTES),
                }
            },
        )
        background_tasks.add_task(send_password_reset_email, serialize_doc(user), f"{CLIENT_URL}/reset-password/{token}")
    return {"message": "If an account exists for that email, a reset link has been sent."}


@router.post("/reset-password/{token}")
@limiter.limit(RATE_LIMIT_AUTH)
def reset_password(request: Request, response: Response, token: str, body: ResetPasswordBody):
    user = db["user"].find_one({"password_reset_token": _hash_reset_token(token)})
    if not user or not user.get("password_reset_expires") or as_aware(user["password_reset_expires"]) < utcnow():
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password_hash": hash_password(body.password)},
            "$unset": {"password_reset_token": "", "password_reset_expires": ""},
        },
    )
    suser = serialize_doc(db["user"].find_one({"_id": user["_id"]}))
    return _auth_response(response, suser)


# ----------------------- OAuth -----------------------
PROVIDERS = {
    "google": {
        "client_id": GOOGLE_CLIENT_ID,
        "client_secret": GOOGLE_CLIENT_SECRET,
        "authorize_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "scope": "openid email profile",
    },
    "github": {
        "client_id": GITHUB_CLIENT_ID,
        "client_secret": GITHUB_CLIENT_SECRET,
        "authorize_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "scope": "read:user user:email",
    },
    "linkedin": {
        "client_id": LINKEDIN_CLIENT_ID,
        "client_secret": LINKEDIN_CLIENT_SECRET,
        "authorize_url": "https://www.linkedin.com/oauth/v2/authorization",
        "token_url": "https://www.linkedin.com/oauth/v2/accessToken",
        "scope": "openid profile email",
    },
}


def oauth_redirect_uri(provider: str) -> str:
    return f"{SERVER_URL}/api/auth/{provider}/callback"


def _provider_or_404(provider: str) -> dict:
    conf = PROVIDERS.get(provider)
    if not conf:
        raise HTTPException(status_code=404, detail="Unsupported provider")
    return conf


def _fetch_profile(provider: str, access_token: str) -> dict:
    headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
    if provider == "google":
        info = requests.get("https://www.googleapis.com/oauth2/v3/userinfo", headers=headers, timeout=10).json()
        return {"id": info.get("sub"), "email": info.get("email"), "name": info.get("name"), "avatar": info.get("picture")}
    if provider == "github":
        info = requests.get("https://api.github.com/user", headers=headers, timeout=10).json()
        email = info.get("email")
        # If email is private, fetch primary email
        if not email:
            emails = requests.get("https://api.github.com/user/emails", headers=headers, timeout=10).json()
            primary = next((e for e in emails if e.get("primary")), None)
            email = primary.get("email") if primary else (emails[0]["email"] if emails else None)
        return {
            "id": str(info.get("id")) if info.get("id") else None,
            "email": email,
            "name": info.get("name") or info.get("login"),
            "avatar": info.get("avatar_url"),
        }
    info = requests.get("https://api.linkedin.com/v2/userinfo", headers=headers, timeout=10).json()
    return {"id": info.get("sub"), "email": info.get("email"), "name": info.get("name"), "avatar": info.get("picture")}


def _unique_username(seed: str) -> str:
    base = re.sub(r"[^a-zA-Z0-9_]", "", seed or "")[: USERNAME_MAX_LENGTH - 5] or "user"
    if len(base) < USERNAME_MIN_LENGTH:
        base = f"{base}_user"
    candidate = base
    while db["user"].find_one({"username": candidate}):
        candidate = f"{base}{random.randint(1000, 9999)}"
    return candidate


def upsert_oauth_user(provider: str, profile: dict) -> dict:
    """Find the user by provider id, then by email (linking the account), else create one."""
    account = SocialAccount(**profile).model_dump()
    user = db["user"].find_one({f"{provider}.id": profile["id"]})
    if not user and profile.get("email"):
        user = db["user"].find_one({"email": profile["email"].lower()})
        if user:
            db["user"].update_one({"_id": user["_id"]}, {"$set": {provider: account}})
    if not user:
        email = (profile.get("email") or f"{provider}_{profile['id']}@users.noreply.cookncrop.com").lower()
        new_user = UserSchema(
            username=_unique_username(profile.get("name") or email.split("@")[0]),
            email=email,
            profile_pic=profile.get("avatar") or DEFAULT_PROFILE_PIC,
            **{provider: account},
        )
        user_id = create_document("user", new_user)
        auto_join_groups(user_id)
        user = db["user"].find_one({"_id": ObjectId(user_id)})
        logger.info(f"Created user {new_user.username} via {provider}")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": utcnow()}, "$inc": {"login_count": 1}})
    return serialize_doc(db["user"].find_one({"_id": user["_id"]}))


@router.get("/{provider}")
def oauth_start(provider: str):
    conf = _provider_or_404(provider)
    if not (conf["client_id"] and conf["client_secret"]):
        raise HTTPException(status_code=500, detail=f"{provider.title()} OAuth not configured")
    state = secrets.token_urlsafe(16)
    params = {
        "client_id": conf["client_id"],
        "redirect_uri": oauth_redirect_uri(provider),
        "response_type": "code",
        "scope": conf["scope"],
        "state": state,
    }
    res = RedirectResponse(url=f"{conf['authorize_url']}?{urlencode(params)}")
    set_oauth_state_cookie(res, provider, state)
    return res


def _complete_oauth(provider: str, conf: dict, code: Optional[str]) -> RedirectResponse:
    failure = RedirectResponse(url=f"{CLIENT_URL}/login?error=oauth_failed")
    if not code or not (conf["client_id"] and conf["client_secret"]):
        return failure
    try:
        token_res = requests.post(
            conf["token_url"],
            data={
                "client_id": conf["client_id"],
                "client_secret": conf["client_secret"],
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": oauth_redirect_uri(provider),
            },
            headers={"Accept": "application/json"},
            timeout=10,
        )
        access_token = token_res.json().get("access_token")
        if not access_token:
            return failure
        profile = _fetch_profile(provider, access_token)
    except (requests.RequestException, ValueError) as e:
        logger.error(f"{provider} OAuth failed: {e}")
        return failure
    if not profile.get("id"):
        return failure
    user = upsert_oauth_user(provider, profile)
    if not user.get("is_active", True):
        return RedirectResponse(url=f"{CLIENT_URL}/login?error=account_deactivated")
    token = token_for(user)
    res = RedirectResponse(url=f"{CLIENT_URL}/auth/callback?token={token}")
    set_auth_cookie(res, token)
    return res


@router.get("/{provider}/callback")
def oauth_callback(provider: str, request: Request, code: Optional[str] = None, state: Optional[str] = None):
    conf = _provider_or_404(provider)
    if oauth_state_matches(request, provider, state):
        res = _complete_oauth(provider, conf, code)
    else:
        logger.warning(f"{provider} OAuth callback with missing or mismatched state")
        res = RedirectResponse(url=f"{CLIENT_URL}/login?error=oauth_failed")
    clear_oauth_state_cookie(res)
    return res
