"""Redis-backed conversation store.

Each conversation is one JSON string under ``xrai:conversation:{id}``; the
sorted set ``xrai:conversations`` indexes ids by ``updated_at`` so listing
and eviction never scan the keyspace.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import redis
from pydantic import ValidationError

from ..config import get_settings
from ..domain.conversation_models import Conversation
from ..domain.errors import PersistenceError
from .conversation_store import matches_query

logger = logging.getLogger(__name__)

KEY_PREFIX = "xrai:conversation:"
INDEX_KEY = "xrai:conversations"


def _key(conversation_id: str) -> str:
    return f"{KEY_PREFIX}{conversation_id}"


def _decode(raw: Any) -> Optional[Conversation]:
    if raw is None:
        return None
    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    try:
        return Conversation.model_validate_json(text)
    except ValidationError as exc:
        logger.warning("conversation_record_skipped", extra={"err": str(exc)})
        return None


class RedisConversationStore:
    def __init__(self, client: Any, max_conversations: Optional[int] = None) -> None:
        self._redis = client
        self._max = max_conversations or get_settings().max_stored_conversations

    @classmethod
    def from_url(cls, url: str, max_conversations: Optional[int] = None) -> "RedisConversationStore":
        return cls(redis.Redis.from_url(url, socket_timeout=2.0), max_conversations=max_conversations)

    def _evict(self, keep_id: str) -> None:
        excess = int(self._redis.zcard(INDEX_KEY)) - self._max
        if excess <= 0:
            return
        oldest = self._redis.zrange(INDEX_KEY, 0, excess)
        victims = []
        for raw in oldest:
            cid = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            if cid != keep_id:
                victims.append(cid)
        victims = victims[:excess]
        if not victims:
            return
        pipe = self._redis.pipeline()
        pipe.delete(*[_key(cid) for cid in victims])
        pipe.zrem(INDEX_KEY, *victims)
        pipe.execute()
        logger.info("conversation_evicted", extra={"count": len(victims)})

    def save(self, conversation: Conversation) -> None:
        try:
            pipe = self._redis.pipeline()
            pipe.set(_key(conversation.id), conversation.model_dump_json())
            pipe.zadd(INDEX_KEY, {conversation.id: conversation.updated_at.timestamp()})
            pipe.execute()
            self._evict(conversation.id)
        except redis.exceptions.RedisError as exc:
            raise PersistenceError(f"Failed to save conversation {conversation.id}: {exc}") from exc

    def update(self, conversation: Conversation) -> None:
        self.save(conversation)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        try:
            return _decode(self._redis.get(_key(conversation_id)))
        except redis.exceptions.RedisError as exc:
            raise PersistenceError(f"Failed to load conversation {conversation_id}: {exc}") from exc

    def delete(self, conversation_id: str) -> bool:
        try:
            pipe = self._redis.pipeline()
            pipe.delete(_key(conversation_id))
            pipe.zrem(INDEX_KEY, conversation_id)
            removed, _ = pipe.execute()
            return bool(removed)
        except redis.exceptions.RedisError as exc:
            raise PersistenceError(f"Failed to delete conversation {conversation_id}: {exc}") from exc

    def delete_all(self) -> None:
        try:
            ids = [raw.decode("utf-8") if isinstance(raw, bytes) else raw for raw in self._redis.zrange(INDEX_KEY, 0, -1)]
            pipe = self._redis.pipeline()
            if ids:
                pipe.delete(*[_key(cid) for cid in ids])
            pipe.delete(INDEX_KEY)
            pipe.execute()
        except redis.exceptions.RedisError as exc:
            raise PersistenceError(f"Failed to delete conversations: {exc}") from exc

    def list(self) -> List[Conversation]:
        try:
            ids = self._redis.zrevrange(INDEX_KEY, 0, -1)
            if not ids:
                return []
            keys = [_key(raw.decode("utf-8") if isinstance(raw, bytes) else raw) for raw in ids]
            raws = self._redis.mget(keys)
        except redis.exceptions.RedisError as exc:
            raise PersistenceError(f"Failed to list conversations: {exc}") from exc
        out = [c for c in (_decode(raw) for raw in raws) if c is not None]
        return sorted(out, key=lambda c: c.updated_at, reverse=True)

    def search(self, query: str) -> List[Conversation]:
        needle = (query or "").strip().lower()
        conversations = self.list()
        if not needle:
            return conversations
        return [c for c in conversations if matches_query(c, needle)]

    def list_by_library(self, library_id: str) -> List[Conversation]:
        return [c for c in self.list() if c.library_id == library_id]

    def list_by_model(self, model_id: str) -> List[Conversation]:
        return [c for c in self.list() if c.model_used == model_id]
