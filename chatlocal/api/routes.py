from __future__ import annotations

import asyncio
from pathlib import Path

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import FileResponse

from chatlocal.api.responses import ChatStreamResponse
from chatlocal.api.schemas import (
    ChatCreatedResponse,
    ChatListResponse,
    ChatResponse,
    ChatSummaryResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    PromptRequest,
    RegisterRequest,
    UserResponse,
)
from chatlocal.logging import get_logger
from chatlocal.service.auth import AuthContext
from chatlocal.service.errors import NotFoundError
from chatlocal.service.runtime import Runtime
from chatlocal.storage.errors import ChatNotFoundError
from chatlocal.storage.models import (
    SENDER_ASSISTANT,
    SENDER_USER,
    TYPE_RECEIVED,
    TYPE_SENT,
    Message,
    Session,
    display_time,
)

logger = get_logger(__name__)


def _apply_session_cookie(response: Response, session: Session, runtime: Runtime) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.session_cookie_name,
        session.token,
        max_age=settings.session_ttl_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    settings = runtime.settings
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _static_page(runtime: Runtime, name: str) -> FileResponse:
    page = Path(runtime.settings.static_dir) / name
    if not page.is_file():
        logger.warning("static_page_missing", page=str(page))
        raise NotFoundError("page not found")
    return FileResponse(page, media_type="text/html")


def build_router(runtime: Runtime) -> APIRouter:
    """Build the HTTP surface around ``runtime``.

    Every handler closes over the runtime it was built with; protected handlers
    depend on ``runtime.gate`` for the caller's identity.
    """

    router = APIRouter()
    gate = runtime.gate
    transcripts = runtime.transcripts

    @router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
    async def register(body: RegisterRequest, response: Response):
        user, session = await runtime.auth.register(body.username, body.password)
        _apply_session_cookie(response, session, runtime)
        return Envelope(status="ok", data=UserResponse(username=user.username))

    @router.post("/login", response_model=Envelope, tags=["auth"])
    async def login(body: LoginRequest, response: Response):
        user, session = await runtime.auth.login(body.username, body.password)
        _apply_session_cookie(response, session, runtime)
        return Envelope(status="ok", data=UserResponse(username=user.username))

    @router.get("/login", response_class=FileResponse, tags=["pages"])
    async def login_page():
        return _static_page(runtime, "login.html")

    @router.post("/logout", response_model=Envelope, tags=["auth"])
    async def logout(request: Request, response: Response):
        await runtime.auth.logout(request.cookies.get(runtime.settings.session_cookie_name))
        _clear_session_cookie(response, runtime)
        return Envelope(status="ok", data={"logged_out": True})

    @router.get("/me", response_model=Envelope, tags=["auth"])
    async def me(principal: AuthContext = Depends(gate)):
        return Envelope(status="ok", data=UserResponse(username=principal.username))

    @router.get("/chats", response_model=Envelope, tags=["chats"])
    async def list_chats(principal: AuthContext = Depends(gate)):
        summaries = await asyncio.to_thread(transcripts.list_with_titles, principal.user_id)
        return Envelope(
            status="ok",
            data=ChatListResponse(
                chats=[ChatSummaryResponse(id=s.id, title=s.title) for s in summaries]
            ),
        )

    @router.post("/chats", response_model=Envelope, status_code=201, tags=["chats"])
    async def create_chat(principal: AuthContext = Depends(gate)):
        chat_id = await asyncio.to_thread(transcripts.create, principal.user_id)
        return Envelope(status="ok", data=ChatCreatedResponse(chat_id=chat_id))

    @router.get("/chats/{chat_id}", response_model=Envelope, tags=["chats"])
    async def get_chat(chat_id: str, principal: AuthContext = Depends(gate)):
        messages = await asyncio.to_thread(transcripts.get, principal.user_id, chat_id)
        return Envelope(
            status="ok",
            data=ChatResponse(
                chat_id=chat_id,
                messages=[MessageResponse(**m.to_dict()) for m in messages],
            ),
        )

    @router.delete("/chats/{chat_id}", status_code=204, tags=["chats"])
    async def delete_chat(chat_id: str, principal: AuthContext = Depends(gate)):
        await asyncio.to_thread(transcripts.delete, principal.user_id, chat_id)
        return Response(status_code=204)

    @router.post("/prompt", tags=["chats"])
    async def prompt(body: PromptRequest, principal: AuthContext = Depends(gate)):
        user_id = principal.user_id
        chat_id = body.chat_id
        if chat_id:
            if not await asyncio.to_thread(transcripts.exists, user_id, chat_id):
                raise ChatNotFoundError("chat not found", {"chat_id": chat_id})
        else:
            chat_id = await asyncio.to_thread(transcripts.create, user_id)

        backend_response = await runtime.backend.open_stream(body.text, user_id=user_id)
        text = body.text

        async def persist_turn(reply: str) -> None:
            stamp = display_time()
            await asyncio.to_thread(
                transcripts.append,
                user_id,
                chat_id,
                Message(sender=SENDER_USER, text=text, type=TYPE_SENT, time=stamp),
                Message(sender=SENDER_ASSISTANT, text=reply, type=TYPE_RECEIVED, time=stamp),
            )

        return ChatStreamResponse(
            backend_response,
            on_complete=persist_turn,
            headers={"X-Chat-Id": chat_id, "Cache-Control": "no-cache"},
            log_context={"user_id": user_id, "chat_id": chat_id},
        )

    @router.get("/", response_class=FileResponse, tags=["pages"])
    async def serve_chat(principal: AuthContext = Depends(gate)):
        return _static_page(runtime, "view.html")

    return router
