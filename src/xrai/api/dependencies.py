from __future__ import annotations

from functools import lru_cache

from ..infrastructure.conversation_store import ConversationStore, get_conversation_store
from ..services.chat_ai import AIProvider, RoutedProvider


def get_store() -> ConversationStore:
    return get_conversation_store()


@lru_cache
def _routed_provider() -> RoutedProvider:
    return RoutedProvider()


def get_provider() -> AIProvider:
    return _routed_provider()
