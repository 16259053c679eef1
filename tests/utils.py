from __future__ import annotations

import asyncio
from typing import Iterator, List, Optional, Sequence

from src.xrai.domain.errors import ProviderStreamError
from src.xrai.services.chat_ai import GenerationRequest, StreamDelta


class ScriptedProvider:
    """Synchronous provider yielding a fixed list of deltas, optionally failing midway."""

    def __init__(self, deltas: Sequence[str], *, fail_after: Optional[int] = None, error: Optional[Exception] = None) -> None:
        self.deltas = list(deltas)
        self.fail_after = fail_after
        self.error = error or ProviderStreamError("boom", kind="network")
        self.requests: List[GenerationRequest] = []

    def stream(self, request: GenerationRequest) -> Iterator[StreamDelta]:
        self.requests.append(request)
        for index, text in enumerate(self.deltas):
            if self.fail_after is not None and index >= self.fail_after:
                raise self.error
            yield StreamDelta(text)
        if self.fail_after is not None and self.fail_after >= len(self.deltas):
            raise self.error
        yield StreamDelta("", is_final=True)


class GatedProvider:
    """Async provider that emits the first delta and then waits on a gate."""

    def __init__(self, deltas: Sequence[str]) -> None:
        self.deltas = list(deltas)
        self.first_sent = asyncio.Event()
        self.gate = asyncio.Event()

    async def stream(self, request: GenerationRequest):
        yield StreamDelta(self.deltas[0])
        self.first_sent.set()
        await self.gate.wait()
        for text in self.deltas[1:]:
            yield StreamDelta(text)


class FailingStore:
    """Store double whose writes fail after ``ok_writes`` successful ones."""

    def __init__(self, ok_writes: int = 0) -> None:
        from src.xrai.infrastructure.conversation_store import InMemoryConversationStore

        self.inner = InMemoryConversationStore(max_conversations=10)
        self.ok_writes = ok_writes
        self.writes = 0

    def _write(self, conversation) -> None:
        from src.xrai.domain.errors import PersistenceError

        self.writes += 1
        if self.writes > self.ok_writes:
            raise PersistenceError("disk full")
        self.inner.save(conversation)

    def save(self, conversation) -> None:
        self._write(conversation)

    def update(self, conversation) -> None:
        self._write(conversation)

    def __getattr__(self, name):
        return getattr(self.inner, name)
