from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Iterable, Iterator, Optional, TypeVar, Union

from ..domain.errors import InvalidStateError
from . import code_extractor

logger = logging.getLogger("xrai.stream")

T = TypeVar("T")

_EXHAUSTED = object()


class StreamPhase(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETE = "complete"


@dataclass(frozen=True)
class StreamState:
    buffered_text: str
    is_complete: bool
    extracted_code: Optional[str]

    @property
    def has_code_block(self) -> bool:
        return self.extracted_code is not None


StreamListener = Callable[[StreamState], None]


class StreamAccumulator:
    """Buffers one assistant turn and tracks whether a code block has appeared.

    ``IDLE -> STREAMING -> COMPLETE``; there is no way back, a new turn gets a
    new accumulator.
    """

    def __init__(self, listener: Optional[StreamListener] = None) -> None:
        self._phase = StreamPhase.IDLE
        self._parts: list[str] = []
        self._text = ""
        self._extracted: Optional[str] = None
        self._listener = listener

    @property
    def phase(self) -> StreamPhase:
        return self._phase

    @property
    def buffered_text(self) -> str:
        return self._text

    @property
    def extracted_code(self) -> Optional[str]:
        return self._extracted

    @property
    def has_code_block(self) -> bool:
        return self._extracted is not None

    def start(self) -> None:
        if self._phase is not StreamPhase.IDLE:
            raise InvalidStateError(f"Cannot start accumulator in phase {self._phase.value}")
        self._phase = StreamPhase.STREAMING

    def append(self, delta: str) -> bool:
        if self._phase is not StreamPhase.STREAMING:
            raise InvalidStateError(f"Cannot append in phase {self._phase.value}")
        if delta:
            self._parts.append(delta)
            self._text = "".join(self._parts)
            self._extracted = code_extractor.extract(self._text)
        if self._listener is not None:
            self._listener(self.snapshot())
        return self._extracted is not None

    def finalize(self) -> str:
        if self._phase is not StreamPhase.STREAMING:
            raise InvalidStateError(f"Cannot finalize in phase {self._phase.value}")
        self._phase = StreamPhase.COMPLETE
        if self._listener is not None:
            self._listener(self.snapshot())
        return self._text

    def snapshot(self) -> StreamState:
        return StreamState(
            buffered_text=self._text,
            is_complete=self._phase is StreamPhase.COMPLETE,
            extracted_code=self._extracted,
        )


def iter_as_async(it: Iterable[T]) -> AsyncIterator[T]:
    """Consume a blocking iterator without blocking the event loop.

    Each ``next()`` runs in a worker thread, so waiting for the next provider
    delta is the only suspension point of a turn.
    """

    async def gen() -> AsyncIterator[T]:
        iterator: Iterator[T] = iter(it)
        try:
            while True:
                item = await asyncio.to_thread(next, iterator, _EXHAUSTED)
                if item is _EXHAUSTED:
                    return
                yield item  # type: ignore[misc]
        finally:
            close = getattr(iterator, "close", None)
            if callable(close):
                try:
                    close()
                except ValueError:
                    # still running in the worker thread after a cancellation
                    logger.debug("stream_close_deferred")

    return gen()


def as_async_stream(source: Union[Iterable[Any], AsyncIterator[Any]]) -> AsyncIterator[Any]:
    if hasattr(source, "__aiter__"):
        return source  # type: ignore[return-value]
    return iter_as_async(source)  # type: ignore[arg-type]
