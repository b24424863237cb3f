from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_PASSWORD_LENGTH = 128
MAX_PROMPT_LENGTH = 65536


def _normalize_unicode(value: str) -> str:
    """Strip zero-width characters and apply NFKC so lookalike addresses collapse."""

    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("username must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("username must be a valid email address")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("username must be a valid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("username must be a valid email address")
    for label in domain.split("."):
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("username must be a valid email address")
    return normalized


class RegisterRequest(BaseModel):
    username: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("username")
    @classmethod
    def _validate_login_username(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(BaseModel):
    username: str


class PromptRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(..., min_length=1, max_length=MAX_PROMPT_LENGTH)
    chat_id: Optional[str] = Field(default=None, alias="chatId", max_length=64)

    @field_validator("text")
    @classmethod
    def _reject_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("text must not be blank")
        return value

    @field_validator("chat_id", mode="before")
    @classmethod
    def _empty_chat_id_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ChatSummaryResponse(BaseModel):
    id: str
    title: str


class ChatListResponse(BaseModel):
    chats: List[ChatSummaryResponse]


class ChatCreatedResponse(BaseModel):
    chat_id: str


class MessageResponse(BaseModel):
    sender: str
    text: str
    type: str
    time: str


class ChatResponse(BaseModel):
    chat_id: str
    messages: List[MessageResponse]


class HealthResponse(BaseModel):
    status: str
    version: str
