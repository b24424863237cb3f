from __future__ import annotations

import contextlib
import json
import secrets
import threading
import uuid
from pathlib import Path
from typing import Dict, Iterator, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from chatlocal.logging import get_logger
from chatlocal.storage.errors import InvalidCredentialsError, UserExistsError
from chatlocal.storage.models import User

logger = get_logger(__name__)


class ReadWriteLock:
    """Many concurrent readers or one writer; writers wait for readers to drain."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextlib.contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def normalize_username(username: str) -> str:
    return (username or "").strip().lower()


class UserStore:
    """File-backed credential store.

    The in-memory tables are authoritative; ``users.json`` under ``data_dir`` is
    rewritten in full after every successful registration and read once at
    construction.
    """

    def __init__(
        self,
        data_dir: str | Path,
        *,
        min_password_length: int = 8,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.data_dir / "users.json"
        self.min_password_length = min_password_length
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._lock = ReadWriteLock()
        self._by_id: Dict[str, User] = {}
        self._by_name: Dict[str, User] = {}
        # Verified against when the username is unknown so both paths cost one hash
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self._load()

    def _load(self) -> None:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return
        for entry in data or []:
            user = User.from_dict(entry)
            self._by_id[user.id] = user
            self._by_name[user.username] = user
        logger.info("user_store_loaded", users=len(self._by_id), path=str(self.path))

    def _persist(self) -> None:
        payload = [user.to_dict() for user in self._by_id.values()]
        self.path.write_text(json.dumps(payload, indent=2))

    def register(self, username: str, password: str) -> User:
        name = normalize_username(username)
        if not name:
            raise InvalidCredentialsError("username is required")
        if len(password or "") < self.min_password_length:
            raise InvalidCredentialsError(
                "password too short", {"min_length": self.min_password_length}
            )
        with self._lock.read():
            if name in self._by_name:
                raise UserExistsError("user already exists")

        digest = self._hasher.hash(password)
        user = User(id=str(uuid.uuid4()), username=name, password_hash=digest)

        with self._lock.write():
            # Re-check: another registration may have won while we were hashing
            if name in self._by_name:
                raise UserExistsError("user already exists")
            self._by_id[user.id] = user
            self._by_name[name] = user
            try:
                self._persist()
            except OSError as exc:
                del self._by_id[user.id]
                del self._by_name[name]
                logger.error("user_persist_failed", user_id=user.id, error=str(exc))
                raise
        logger.info("user_registered", user_id=user.id)
        return user

    def login(self, username: str, password: str) -> User:
        name = normalize_username(username)
        with self._lock.read():
            user = self._by_name.get(name)
        if user is None:
            self._verify(self._dummy_hash, password or "")
            raise InvalidCredentialsError("invalid credentials")
        if not self._verify(user.password_hash, password or ""):
            logger.warning("password_verification_failed", user_id=user.id)
            raise InvalidCredentialsError("invalid credentials")
        return user

    def _verify(self, digest: str, password: str) -> bool:
        try:
            return self._hasher.verify(digest, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def get_by_id(self, user_id: str) -> Optional[User]:
        with self._lock.read():
            return self._by_id.get(user_id)

    def get_by_username(self, username: str) -> Optional[User]:
        with self._lock.read():
            return self._by_name.get(normalize_username(username))

    def count(self) -> int:
        with self._lock.read():
            return len(self._by_id)
