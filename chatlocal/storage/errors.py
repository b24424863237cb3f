from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for expected store-level failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class UserExistsError(StorageError):
    """Raised when registering a username that is already taken."""


class InvalidCredentialsError(StorageError):
    """Raised for unknown usernames, wrong passwords and rejected registrations."""


class ChatNotFoundError(StorageError):
    """Raised when a conversation does not exist for the requesting user."""


__all__ = [
    "StorageError",
    "UserExistsError",
    "InvalidCredentialsError",
    "ChatNotFoundError",
]
