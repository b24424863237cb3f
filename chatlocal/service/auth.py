from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Request

from chatlocal.logging import get_logger
from chatlocal.service.errors import (
    AuthenticationError,
    ConflictError,
    LoginRequired,
    ValidationError,
)
from chatlocal.storage.errors import InvalidCredentialsError, UserExistsError
from chatlocal.storage.models import Session, User
from chatlocal.storage.sessions import SessionStore
from chatlocal.storage.users import UserStore

logger = get_logger(__name__)

PUBLIC_PATHS = frozenset({"/login", "/register"})
API_PATHS = frozenset({"/prompt", "/chats", "/me"})


@dataclass
class AuthContext:
    user_id: str
    username: str
    session_token: str


def is_api_path(path: str) -> bool:
    return path in API_PATHS or path.startswith("/chats/")


class AuthService:
    """Async facade over the credential and session stores.

    Store calls block on disk and on argon2, so they run in worker threads.
    """

    def __init__(self, users: UserStore, sessions: SessionStore) -> None:
        self.users = users
        self.sessions = sessions

    async def register(self, username: str, password: str) -> Tuple[User, Session]:
        try:
            user = await asyncio.to_thread(self.users.register, username, password)
        except UserExistsError as exc:
            raise ConflictError("user already exists") from exc
        except InvalidCredentialsError as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        session = await asyncio.to_thread(self.sessions.create, user.id)
        return user, session

    async def login(self, username: str, password: str) -> Tuple[User, Session]:
        try:
            user = await asyncio.to_thread(self.users.login, username, password)
        except InvalidCredentialsError as exc:
            logger.info("login_failed")
            raise AuthenticationError("invalid credentials") from exc
        session = await asyncio.to_thread(self.sessions.create, user.id)
        logger.info("login_succeeded", user_id=user.id)
        return user, session

    async def logout(self, token: Optional[str]) -> None:
        if token:
            await asyncio.to_thread(self.sessions.delete, token)

    async def resolve_session(self, token: Optional[str]) -> Optional[AuthContext]:
        if not token:
            return None
        user_id = await asyncio.to_thread(self.sessions.get, token)
        if user_id is None:
            return None
        user = await asyncio.to_thread(self.users.get_by_id, user_id)
        if user is None:
            logger.warning("session_user_missing", user_id=user_id)
            return None
        return AuthContext(user_id=user.id, username=user.username, session_token=token)


class AuthGate:
    """FastAPI dependency that turns the session cookie into an ``AuthContext``.

    API paths fail with 401; every other protected path redirects to the login
    page. The user id only ever comes from the server-side session record.
    """

    def __init__(self, auth: AuthService, cookie_name: str = "session") -> None:
        self.auth = auth
        self.cookie_name = cookie_name

    async def __call__(self, request: Request) -> Optional[AuthContext]:
        path = request.url.path
        ctx = await self.auth.resolve_session(request.cookies.get(self.cookie_name))
        if ctx is not None:
            request.state.user_id = ctx.user_id
            return ctx
        if path in PUBLIC_PATHS:
            return None
        if is_api_path(path):
            raise AuthenticationError("unauthorized")
        raise LoginRequired("/login")
