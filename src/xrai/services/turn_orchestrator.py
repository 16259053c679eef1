"""Runs one chat turn: user message in, streamed assistant reply out.

The orchestrator owns a single conversation. It appends the user message,
persists, streams the provider reply through a ``StreamAccumulator`` and
persists again once the assistant message is in place. Provider failures
become a readable assistant message; cancellation leaves only the user
message behind.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from ..config import get_settings
from ..domain.conversation_models import Conversation, Message
from ..domain.errors import EmptyInputError, ProviderStreamError, TurnInProgressError
from ..domain.library_models import Library3D
from ..infrastructure.conversation_store import ConversationStore
from ..observability.metrics import STREAM_DELTAS_TOTAL, observe_turn
from .chat_ai import AIProvider, GenerationRequest, classify_exception, describe_provider_error
from .library_catalog import build_system_prompt
from .streaming import StreamAccumulator, StreamListener, StreamState, as_async_stream
from .telemetry_sink import TelemetryEvent, record_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationParams:
    model: Optional[str] = None
    temperature: float = 0.7
    top_p: float = 0.9
    system_prompt_override: Optional[str] = None

    @classmethod
    def from_settings(cls) -> "GenerationParams":
        settings = get_settings()
        return cls(
            model=settings.default_model,
            temperature=settings.temperature,
            top_p=settings.top_p,
            system_prompt_override=settings.system_prompt_override,
        )


class TurnOrchestrator:
    def __init__(
        self,
        conversation: Conversation,
        store: ConversationStore,
        provider: AIProvider,
        *,
        library: Optional[Library3D] = None,
        params: Optional[GenerationParams] = None,
        on_update: Optional[StreamListener] = None,
    ) -> None:
        self._conversation = conversation
        self._store = store
        self._provider = provider
        self._library = library
        self._params = params or GenerationParams.from_settings()
        self._on_update = on_update
        self._loading = False
        self._last_state: Optional[StreamState] = None

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def last_stream_state(self) -> Optional[StreamState]:
        return self._last_state

    def _handle_state(self, state: StreamState) -> None:
        self._last_state = state
        if self._on_update is not None:
            self._on_update(state)

    def _library_id(self) -> Optional[str]:
        if self._library is not None:
            return self._library.library_id
        return self._conversation.library_id

    def _record(self, outcome: str, started: float, **properties: object) -> None:
        elapsed = time.perf_counter() - started
        observe_turn(outcome, elapsed)
        record_event(
            TelemetryEvent(
                name=f"turn_{outcome}",
                properties={"elapsed_s": round(elapsed, 3), "model": self._params.model, **properties},
                conversation_id=self._conversation.id,
            )
        )

    async def submit_user_message(
        self,
        text: str,
        reply_parent_id: Optional[str] = None,
        *,
        current_code: Optional[str] = None,
    ) -> Conversation:
        """Run one turn and return the updated conversation.

        Raises ``EmptyInputError`` / ``ParentNotFoundError`` before any side
        effect, ``TurnInProgressError`` while another turn is streaming and
        ``PersistenceError`` when the store fails.
        """
        if self._loading:
            raise TurnInProgressError(f"A turn is already running for conversation {self._conversation.id}")
        prompt = (text or "").strip()
        if not prompt:
            raise EmptyInputError("Message text is empty")

        conversation = self._conversation
        library_id = self._library_id()
        user_message = Message(
            content=prompt,
            is_user=True,
            thread_parent_id=reply_parent_id or None,
            library_id=library_id,
        )
        conversation.append_message(user_message)
        conversation.generate_title_if_needed()
        if library_id:
            conversation.library_id = library_id
        if self._params.model:
            conversation.model_used = self._params.model

        self._loading = True
        started = time.perf_counter()
        try:
            self._store.save(conversation)

            request = GenerationRequest(
                prompt=prompt,
                model=self._params.model,
                temperature=self._params.temperature,
                top_p=self._params.top_p,
                system_prompt=build_system_prompt(
                    self._library,
                    current_code=current_code,
                    override=self._params.system_prompt_override,
                ),
            )
            accumulator = StreamAccumulator(listener=self._handle_state)
            accumulator.start()
            outcome = "completed"
            try:
                async for delta in as_async_stream(self._provider.stream(request)):
                    if delta.text:
                        accumulator.append(delta.text)
                        STREAM_DELTAS_TOTAL.inc()
                    if delta.is_final:
                        break
                content = accumulator.finalize()
            except asyncio.CancelledError:
                logger.info(
                    "turn_cancelled",
                    extra={"conversation_id": conversation.id, "buffered": len(accumulator.buffered_text)},
                )
                self._record("cancelled", started)
                raise
            except Exception as exc:
                err = exc if isinstance(exc, ProviderStreamError) else classify_exception(exc)
                logger.warning(
                    "turn_provider_error",
                    extra={"conversation_id": conversation.id, "kind": err.kind, "err": str(err)},
                )
                content = describe_provider_error(err)
                outcome = "provider_error"

            assistant_message = Message(
                content=content,
                is_user=False,
                thread_parent_id=user_message.thread_parent_id,
                library_id=library_id,
            )
            conversation.append_message(assistant_message)
            self._record(
                outcome,
                started,
                has_code=accumulator.has_code_block,
                chars=len(content),
            )
            self._store.update(conversation)
            return conversation
        finally:
            self._loading = False
