from __future__ import annotations

from datetime import timedelta
from typing import Optional

import httpx

from chatlocal.config import Settings
from chatlocal.logging import get_logger
from chatlocal.service.auth import AuthGate, AuthService
from chatlocal.service.backend import OllamaClient
from chatlocal.storage.sessions import SessionStore
from chatlocal.storage.transcripts import TranscriptStore
from chatlocal.storage.users import UserStore

logger = get_logger(__name__)


class Runtime:
    """Holds the stores and services one application instance works with.

    Handlers receive a ``Runtime`` when the router is built instead of looking
    anything up in module globals.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        backend_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.users = UserStore(
            settings.data_dir,
            min_password_length=settings.min_password_length,
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
        )
        self.sessions = SessionStore(
            settings.data_dir, ttl=timedelta(days=settings.session_ttl_days)
        )
        self.transcripts = TranscriptStore(
            settings.data_dir, title_max_length=settings.title_max_length
        )
        self.auth = AuthService(self.users, self.sessions)
        self.gate = AuthGate(self.auth, cookie_name=settings.session_cookie_name)
        self.backend = OllamaClient(
            settings.llm_url,
            settings.model,
            timeout=settings.backend_timeout_seconds,
            transport=backend_transport,
        )
        logger.info(
            "runtime_initialized",
            data_dir=settings.data_dir,
            users=self.users.count(),
            model=settings.model,
            llm_url=settings.llm_url,
        )

    async def aclose(self) -> None:
        await self.backend.aclose()
