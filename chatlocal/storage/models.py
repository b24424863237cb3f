from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict


DEFAULT_TITLE = "New chat"

SENDER_USER = "user"
SENDER_ASSISTANT = "assistant"
TYPE_SENT = "sent"
TYPE_RECEIVED = "received"


@dataclass
class User:
    id: str
    username: str
    password_hash: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "username": self.username, "hash": self.password_hash}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "User":
        return cls(id=data["id"], username=data["username"], password_hash=data["hash"])


@dataclass
class Session:
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def new(cls, user_id: str, ttl: timedelta, *, now: datetime | None = None) -> "Session":
        now = now or datetime.now(timezone.utc)
        return cls(
            token=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + ttl,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, str]:
        return {
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, token: str, data: Dict[str, str]) -> "Session":
        return cls(
            token=token,
            user_id=data["user_id"],
            created_at=_parse_ts(data.get("created_at") or data["expires_at"]),
            expires_at=_parse_ts(data["expires_at"]),
        )


@dataclass
class Message:
    sender: str
    text: str
    type: str
    time: str

    def to_dict(self) -> Dict[str, str]:
        return {"sender": self.sender, "text": self.text, "type": self.type, "time": self.time}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "Message":
        return cls(
            sender=data.get("sender", ""),
            text=data.get("text", ""),
            type=data.get("type", ""),
            time=data.get("time", ""),
        )


@dataclass
class ChatSummary:
    id: str
    title: str = DEFAULT_TITLE


def _parse_ts(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def display_time(moment: datetime | None = None) -> str:
    """Render a wall-clock time the way the chat view shows it, e.g. ``3:04 PM``."""

    moment = moment or datetime.now()
    hour = moment.hour % 12 or 12
    return f"{hour}:{moment.minute:02d} {'AM' if moment.hour < 12 else 'PM'}"
