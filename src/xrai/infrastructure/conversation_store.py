from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from ..config import get_settings
from ..domain.conversation_models import Conversation
from ..domain.errors import PersistenceError

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    def save(self, conversation: Conversation) -> None: ...

    def update(self, conversation: Conversation) -> None: ...

    def get(self, conversation_id: str) -> Optional[Conversation]: ...

    def delete(self, conversation_id: str) -> bool: ...

    def delete_all(self) -> None: ...

    def search(self, query: str) -> List[Conversation]: ...

    def list(self) -> List[Conversation]: ...

    def list_by_library(self, library_id: str) -> List[Conversation]: ...

    def list_by_model(self, model_id: str) -> List[Conversation]: ...


def matches_query(conversation: Conversation, needle: str) -> bool:
    """Case-insensitive match on the title or any message body."""
    if needle in conversation.title.lower():
        return True
    return any(needle in m.content.lower() for m in conversation.messages)


def newest_first(conversations: List[Conversation]) -> List[Conversation]:
    return sorted(conversations, key=lambda c: c.updated_at, reverse=True)


class InMemoryConversationStore:
    """Conversation store kept in process memory.

    Conversations are deep-copied on the way in and out so callers never share
    mutable state with the store. Once ``max_conversations`` is exceeded the
    least recently updated conversations are evicted.
    """

    def __init__(self, max_conversations: Optional[int] = None) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._max = max_conversations or get_settings().max_stored_conversations
        self._lock = RLock()

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held after every write."""

    def _evict(self, keep_id: str) -> None:
        excess = len(self._conversations) - self._max
        if excess <= 0:
            return
        candidates = sorted(
            (c for c in self._conversations.values() if c.id != keep_id),
            key=lambda c: c.updated_at,
        )
        for conversation in candidates[:excess]:
            self._conversations.pop(conversation.id, None)
            logger.info("conversation_evicted", extra={"conversation_id": conversation.id})

    def save(self, conversation: Conversation) -> None:
        with self._lock:
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
            self._evict(conversation.id)
            self._persist()

    def update(self, conversation: Conversation) -> None:
        # Full-document overwrite; a conversation deleted mid-turn is written back.
        self.save(conversation)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy(deep=True) if conversation else None

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            ok = self._conversations.pop(conversation_id, None) is not None
            if ok:
                self._persist()
            return ok

    def delete_all(self) -> None:
        with self._lock:
            self._conversations.clear()
            self._persist()

    def list(self) -> List[Conversation]:
        with self._lock:
            return newest_first([c.model_copy(deep=True) for c in self._conversations.values()])

    def search(self, query: str) -> List[Conversation]:
        needle = (query or "").strip().lower()
        if not needle:
            return self.list()
        with self._lock:
            hits = [c.model_copy(deep=True) for c in self._conversations.values() if matches_query(c, needle)]
        return newest_first(hits)

    def list_by_library(self, library_id: str) -> List[Conversation]:
        return [c for c in self.list() if c.library_id == library_id]

    def list_by_model(self, model_id: str) -> List[Conversation]:
        return [c for c in self.list() if c.model_used == model_id]


class FileConversationStore(InMemoryConversationStore):
    """JSON file-backed store for development persistence.

    Structure: a single JSON object mapping conversation id -> conversation.
    """

    def __init__(self, file_path: Optional[str] = None, max_conversations: Optional[int] = None) -> None:
        super().__init__(max_conversations=max_conversations)
        self._path = Path(file_path) if file_path else get_settings().store_file
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Cannot create store directory {self._path.parent}: {exc}") from exc
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            # Unreadable file: start clean, the next write replaces it
            logger.warning("conversation_file_unreadable", extra={"path": str(self._path), "err": str(exc)})
            return
        for cid, raw in (data or {}).items():
            try:
                self._conversations[cid] = Conversation.model_validate(raw)
            except ValidationError as exc:
                logger.warning("conversation_record_skipped", extra={"conversation_id": cid, "err": str(exc)})

    def _persist(self) -> None:
        obj = {cid: conv.model_dump(mode="json") for cid, conv in self._conversations.items()}
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            tmp.write_text(json.dumps(obj, indent=2), encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as exc:
            raise PersistenceError(f"Failed to write {self._path}: {exc}") from exc


_store: ConversationStore | None = None


def get_conversation_store() -> ConversationStore:
    global _store
    if _store is not None:
        return _store
    settings = get_settings()
    impl = settings.store_impl
    if impl == "redis":
        from .conversation_store_redis import RedisConversationStore

        _store = RedisConversationStore.from_url(settings.redis_url or "redis://localhost:6379/0")
    elif impl == "file":
        _store = FileConversationStore()
    else:
        _store = InMemoryConversationStore()
    logger.info("conversation_store_selected", extra={"impl": type(_store).__name__})
    return _store


def reset_conversation_store() -> None:
    global _store
    _store = None
