from __future__ import annotations

import json
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from chatlocal.logging import get_logger
from chatlocal.storage.models import Session

logger = get_logger(__name__)

# token_urlsafe alphabet; anything else never reaches the filesystem
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


class SessionStore:
    """One JSON file per session token under ``<data_dir>/sessions``.

    Nothing is cached in memory, so sessions never share state with each other
    and expiry is enforced on lookup.
    """

    def __init__(self, data_dir: str | Path, *, ttl: timedelta = timedelta(days=7)) -> None:
        self.root = Path(data_dir) / "sessions"
        self.root.mkdir(parents=True, exist_ok=True)
        self.ttl = ttl

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _path(self, token: str) -> Optional[Path]:
        if not token or not _TOKEN_RE.match(token):
            return None
        return self.root / f"{token}.json"

    def create(self, user_id: str) -> Session:
        session = Session.new(user_id, self.ttl, now=self._now())
        path = self.root / f"{session.token}.json"
        path.write_text(json.dumps(session.to_dict()))
        logger.info("session_created", user_id=user_id, expires_at=session.expires_at.isoformat())
        return session

    def get(self, token: str) -> Optional[str]:
        """Return the owning user id, or ``None`` for unknown, corrupt or expired tokens."""

        session = self._read(token)
        if session is None:
            return None
        if session.is_expired(self._now()):
            self._remove(token)
            logger.info("session_expired", user_id=session.user_id)
            return None
        return session.user_id

    def _read(self, token: str) -> Optional[Session]:
        path = self._path(token)
        if path is None:
            return None
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return None
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("session_record_corrupt", token=token, error=str(exc))
            return None
        try:
            return Session.from_dict(token, data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("session_record_corrupt", token=token, error=str(exc))
            return None

    def _remove(self, token: str) -> None:
        path = self._path(token)
        if path is None:
            return
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def delete(self, token: str) -> None:
        self._remove(token)

    def purge_expired(self) -> int:
        """Delete every expired record; returns the number removed."""

        removed = 0
        now = self._now()
        for path in self.root.glob("*.json"):
            session = self._read(path.stem)
            if session is None or not session.is_expired(now):
                continue
            self._remove(path.stem)
            removed += 1
        if removed:
            logger.info("sessions_purged", removed=removed)
        return removed
