from __future__ import annotations

import gzip
import json
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from chatlocal.logging import get_logger
from chatlocal.service.fs import PathTraversalError, safe_join
from chatlocal.storage.errors import ChatNotFoundError
from chatlocal.storage.models import DEFAULT_TITLE, SENDER_USER, ChatSummary, Message

logger = get_logger(__name__)

_CHAT_SUFFIX = ".json.gz"
_META_SUFFIX = ".meta.json"
ELLIPSIS = "…"


def truncate_title(text: str, max_length: int) -> str:
    """Trim ``text`` and cut it to ``max_length`` characters, marking the cut."""

    trimmed = text.strip()
    if len(trimmed) <= max_length:
        return trimmed
    return trimmed[:max_length] + ELLIPSIS


def _is_chat_id(chat_id: str) -> bool:
    try:
        return str(uuid.UUID(chat_id)) == chat_id
    except (ValueError, TypeError, AttributeError):
        return False


class TranscriptStore:
    """Per-user conversation logs stored as gzip JSON plus a small title document.

    Layout: ``<data_dir>/chats/<user_id>/<chat_id>.json.gz`` holds the message
    array and ``<chat_id>.meta.json`` holds ``{"title": ...}``. Appends rewrite
    the whole array. Operations on the same conversation are serialized by a
    per-conversation lock; different conversations never contend. A lock is
    dropped as soon as no thread holds or waits on it.
    """

    def __init__(self, data_dir: str | Path, *, title_max_length: int = 50) -> None:
        self.root = Path(data_dir) / "chats"
        self.root.mkdir(parents=True, exist_ok=True)
        self.title_max_length = title_max_length
        self._registry_lock = threading.Lock()
        self._chat_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._lock_waiters: Dict[Tuple[str, str], int] = {}

    # -- paths ---------------------------------------------------------------

    def _user_dir(self, user_id: str) -> Path:
        return safe_join(self.root, user_id)

    def _paths(self, user_id: str, chat_id: str) -> Optional[Tuple[Path, Path]]:
        if not _is_chat_id(chat_id):
            return None
        try:
            user_dir = self._user_dir(user_id)
        except PathTraversalError:
            logger.warning("chat_user_dir_rejected", user_id=user_id)
            return None
        return user_dir / f"{chat_id}{_CHAT_SUFFIX}", user_dir / f"{chat_id}{_META_SUFFIX}"

    def _require_paths(self, user_id: str, chat_id: str) -> Tuple[Path, Path]:
        paths = self._paths(user_id, chat_id)
        if paths is None:
            raise ChatNotFoundError("chat not found", {"chat_id": chat_id})
        return paths

    @contextmanager
    def _chat_lock(self, user_id: str, chat_id: str) -> Iterator[None]:
        key = (user_id, chat_id)
        with self._registry_lock:
            lock = self._chat_locks.setdefault(key, threading.Lock())
            self._lock_waiters[key] = self._lock_waiters.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._registry_lock:
                self._lock_waiters[key] -= 1
                if not self._lock_waiters[key]:
                    del self._lock_waiters[key]
                    del self._chat_locks[key]

    # -- document io ---------------------------------------------------------

    @staticmethod
    def _read_messages(path: Path) -> List[Message]:
        with gzip.open(path, "rt", encoding="utf-8") as fh:
            data = json.load(fh)
        return [Message.from_dict(entry) for entry in data or []]

    @staticmethod
    def _write_messages(path: Path, messages: Iterable[Message]) -> None:
        payload = json.dumps([m.to_dict() for m in messages], ensure_ascii=False)
        with gzip.open(path, "wt", encoding="utf-8") as fh:
            fh.write(payload)

    @staticmethod
    def _read_title(meta_path: Path) -> str:
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return DEFAULT_TITLE
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("chat_meta_corrupt", path=meta_path.name, error=str(exc))
            return DEFAULT_TITLE
        title = data.get("title") if isinstance(data, dict) else None
        return title or DEFAULT_TITLE

    # -- operations ----------------------------------------------------------

    def create(self, user_id: str) -> str:
        chat_id = str(uuid.uuid4())
        user_dir = self._user_dir(user_id)
        user_dir.mkdir(parents=True, exist_ok=True)
        chat_path, _ = self._require_paths(user_id, chat_id)
        self._write_messages(chat_path, [])
        logger.info("chat_created", user_id=user_id, chat_id=chat_id)
        return chat_id

    def exists(self, user_id: str, chat_id: str) -> bool:
        paths = self._paths(user_id, chat_id)
        return paths is not None and paths[0].is_file()

    def append(self, user_id: str, chat_id: str, *messages: Message) -> None:
        chat_path, meta_path = self._require_paths(user_id, chat_id)
        with self._chat_lock(user_id, chat_id):
            try:
                existing = self._read_messages(chat_path)
            except FileNotFoundError:
                raise ChatNotFoundError("chat not found", {"chat_id": chat_id}) from None

            if not existing and not meta_path.exists():
                first = next(
                    (m for m in messages if m.sender == SENDER_USER and m.text.strip()),
                    None,
                )
                if first is not None:
                    title = truncate_title(first.text, self.title_max_length)
                    try:
                        meta_path.write_text(
                            json.dumps({"title": title}, ensure_ascii=False), encoding="utf-8"
                        )
                    except OSError as exc:
                        logger.warning(
                            "chat_title_write_failed", user_id=user_id, chat_id=chat_id, error=str(exc)
                        )

            self._write_messages(chat_path, [*existing, *messages])

    def get(self, user_id: str, chat_id: str) -> List[Message]:
        chat_path, _ = self._require_paths(user_id, chat_id)
        with self._chat_lock(user_id, chat_id):
            try:
                return self._read_messages(chat_path)
            except FileNotFoundError:
                raise ChatNotFoundError("chat not found", {"chat_id": chat_id}) from None

    def _chat_files(self, user_id: str) -> List[Path]:
        try:
            user_dir = self._user_dir(user_id)
        except PathTraversalError:
            return []
        if not user_dir.is_dir():
            return []
        files = [p for p in user_dir.iterdir() if p.name.endswith(_CHAT_SUFFIX)]
        files = [p for p in files if _is_chat_id(p.name[: -len(_CHAT_SUFFIX)])]

        def _mtime(path: Path) -> float:
            try:
                return path.stat().st_mtime
            except FileNotFoundError:
                return 0.0

        return sorted(files, key=_mtime, reverse=True)

    def list_ids(self, user_id: str) -> List[str]:
        return [p.name[: -len(_CHAT_SUFFIX)] for p in self._chat_files(user_id)]

    def list_with_titles(self, user_id: str) -> List[ChatSummary]:
        summaries = []
        for path in self._chat_files(user_id):
            chat_id = path.name[: -len(_CHAT_SUFFIX)]
            meta_path = path.with_name(f"{chat_id}{_META_SUFFIX}")
            summaries.append(ChatSummary(id=chat_id, title=self._read_title(meta_path)))
        return summaries

    def delete(self, user_id: str, chat_id: str) -> None:
        chat_path, meta_path = self._require_paths(user_id, chat_id)
        with self._chat_lock(user_id, chat_id):
            try:
                chat_path.unlink()
            except FileNotFoundError:
                raise ChatNotFoundError("chat not found", {"chat_id": chat_id}) from None
            try:
                meta_path.unlink()
            except OSError:
                pass
        logger.info("chat_deleted", user_id=user_id, chat_id=chat_id)
