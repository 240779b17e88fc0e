# avatar_studio/auth.py
"""
Minimal session issuance: one configured account, UUID4 tokens carried in
the x-session-token header.
"""

import hmac
import re
import uuid
from typing import Optional

from fastapi import APIRouter, Header, Request

from avatar_studio.config import Settings
from avatar_studio.errors import (
    ERROR_RESPONSES,
    InvalidCredentialsError,
    InvalidSessionError,
    UnauthorizedError,
    ValidationError,
)
from avatar_studio.logger import console
from avatar_studio.models import LoginPayload, LoginResponse, MeResponse, OkResponse, UploadSession, UserOut
from avatar_studio.sessions import SessionStore, now_millis

router = APIRouter(prefix="/auth", tags=["auth"], responses=ERROR_RESPONSES)

SESSION_HEADER = "x-session-token"

_USERNAME = re.compile(r"^[A-Za-z0-9_]{3,20}$")
_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_username(username) -> bool:
    return isinstance(username, str) and bool(_USERNAME.match(username))


def is_valid_password(password) -> bool:
    return isinstance(password, str) and len(password) >= 6


def is_valid_session_token(token) -> bool:
    return isinstance(token, str) and bool(_UUID.match(token))


def resolve_session(store: SessionStore, token: Optional[str]) -> UploadSession:
    """Missing token -> UNAUTHORIZED; malformed or unknown -> INVALID_SESSION."""
    if not token:
        raise UnauthorizedError()
    if not is_valid_session_token(token):
        raise InvalidSessionError()
    session = store.get(token)
    if session is None:
        raise InvalidSessionError()
    return session


def _user_out(session: UploadSession) -> UserOut:
    return UserOut(id=session.user_id, username=session.username, avatar=session.avatar_path)


@router.post("/login", response_model=LoginResponse)
def login(payload: LoginPayload, request: Request):
    settings: Settings = request.app.state.settings
    store: SessionStore = request.app.state.session_store

    if not payload.username or not payload.password:
        raise ValidationError("Username and password are required")

    if not (is_valid_username(payload.username) and is_valid_password(payload.password)):
        raise InvalidCredentialsError()

    user_ok = hmac.compare_digest(payload.username, settings.demo_username)
    pass_ok = hmac.compare_digest(payload.password, settings.demo_password)
    if not (user_ok and pass_ok):
        raise InvalidCredentialsError()

    token = str(uuid.uuid4())
    session = UploadSession(
        user_id=settings.demo_user_id,
        username=settings.demo_username,
        avatar_path=settings.default_avatar,
        created_at=now_millis(),
    )
    store.set(token, session)
    console.log(f"[green]Session opened for {session.username}[/green]")

    return LoginResponse(user=_user_out(session), sessionToken=token)


@router.post("/logout", response_model=OkResponse)
def logout(request: Request, x_session_token: Optional[str] = Header(None)):
    store: SessionStore = request.app.state.session_store
    if x_session_token and store.delete(x_session_token):
        console.log("[blue]Session closed[/blue]")
    return OkResponse()


@router.get("/me", response_model=MeResponse)
def me(request: Request, x_session_token: Optional[str] = Header(None)):
    session = resolve_session(request.app.state.session_store, x_session_token)
    return MeResponse(user=_user_out(session))
