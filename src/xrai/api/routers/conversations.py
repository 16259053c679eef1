from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Dict, List, Optional, Set

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import StreamingResponse

from ...config import get_settings
from ...domain.conversation_models import (
    Conversation,
    ConversationCreate,
    ConversationSummary,
    Message,
    ThreadNode,
    UserMessageCreate,
)
from ...domain.errors import EmptyInputError, ParentNotFoundError, TurnInProgressError, XRAiError
from ...domain.library_models import Library3D
from ...infrastructure.conversation_store import ConversationStore
from ...services.chat_ai import AIProvider
from ...services.library_catalog import get_library
from ...services.streaming import StreamState
from ...services.turn_orchestrator import GenerationParams, TurnOrchestrator
from ..dependencies import get_provider, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])

# Conversations with a turn in flight; one turn per conversation at a time.
_active_turns: Dict[str, TurnOrchestrator] = {}


def _load(store: ConversationStore, conversation_id: str) -> Conversation:
    conversation = store.get(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


def _resolve_library(library_id: Optional[str]) -> Library3D:
    wanted = library_id or get_settings().default_library_id
    library = get_library(wanted)
    if library is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Library not found: {wanted}")
    return library


def _params_for(payload: UserMessageCreate, conversation: Conversation) -> GenerationParams:
    defaults = GenerationParams.from_settings()
    return GenerationParams(
        model=payload.model or conversation.model_used or defaults.model,
        temperature=payload.temperature if payload.temperature is not None else defaults.temperature,
        top_p=payload.top_p if payload.top_p is not None else defaults.top_p,
        system_prompt_override=defaults.system_prompt_override,
    )


def _build_thread(conversation: Conversation, message: Message, seen: Set[str]) -> ThreadNode:
    seen.add(message.id)
    children = [
        _build_thread(conversation, reply, seen)
        for reply in conversation.get_replies(message.id)
        if reply.id not in seen
    ]
    return ThreadNode(message=message, replies=children)


def _start_turn(
    conversation: Conversation,
    store: ConversationStore,
    provider: AIProvider,
    payload: UserMessageCreate,
    on_update=None,
) -> TurnOrchestrator:
    # Registered until the turn finishes, including before a stream starts.
    if _active_turns.get(conversation.id) is not None:
        raise TurnInProgressError(f"A turn is already running for conversation {conversation.id}")
    if not payload.content.strip():
        raise EmptyInputError("Message text is empty")
    if payload.reply_parent_id and conversation.get_message(payload.reply_parent_id) is None:
        raise ParentNotFoundError(payload.reply_parent_id)
    orchestrator = TurnOrchestrator(
        conversation,
        store,
        provider,
        library=_resolve_library(conversation.library_id),
        params=_params_for(payload, conversation),
        on_update=on_update,
    )
    _active_turns[conversation.id] = orchestrator
    return orchestrator


def _finish_turn(conversation_id: str, orchestrator: TurnOrchestrator) -> None:
    if _active_turns.get(conversation_id) is orchestrator:
        _active_turns.pop(conversation_id, None)


@router.post("", response_model=Conversation, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    payload: ConversationCreate,
    store: ConversationStore = Depends(get_store),
    provider: AIProvider = Depends(get_provider),
) -> Conversation:
    library = _resolve_library(payload.library_id)
    conversation = Conversation(library_id=library.library_id, model_used=payload.model_used)
    if payload.title and payload.title.strip():
        conversation.title = payload.title.strip()
    store.save(conversation)
    if payload.initial_message and payload.initial_message.strip():
        message = UserMessageCreate(content=payload.initial_message, model=payload.model_used)
        orchestrator = _start_turn(conversation, store, provider, message)
        try:
            conversation = await orchestrator.submit_user_message(payload.initial_message)
        finally:
            _finish_turn(conversation.id, orchestrator)
    return conversation


@router.get("", response_model=List[ConversationSummary])
def list_conversations(
    library_id: Optional[str] = Query(None),
    model: Optional[str] = Query(None),
    store: ConversationStore = Depends(get_store),
) -> List[ConversationSummary]:
    if library_id:
        conversations = store.list_by_library(library_id)
    elif model:
        conversations = store.list_by_model(model)
    else:
        conversations = store.list()
    return [ConversationSummary.from_conversation(c) for c in conversations]


@router.get("/search", response_model=List[ConversationSummary])
def search_conversations(
    query: str = Query(""),
    store: ConversationStore = Depends(get_store),
) -> List[ConversationSummary]:
    return [ConversationSummary.from_conversation(c) for c in store.search(query)]


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
def delete_all_conversations(store: ConversationStore = Depends(get_store)) -> Response:
    store.delete_all()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{conversation_id}", response_model=Conversation)
def get_conversation(conversation_id: str, store: ConversationStore = Depends(get_store)) -> Conversation:
    return _load(store, conversation_id)


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_conversation(conversation_id: str, store: ConversationStore = Depends(get_store)) -> Response:
    if not store.delete(conversation_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{conversation_id}/thread", response_model=List[ThreadNode])
def get_thread(conversation_id: str, store: ConversationStore = Depends(get_store)) -> List[ThreadNode]:
    conversation = _load(store, conversation_id)
    seen: Set[str] = set()
    return [_build_thread(conversation, m, seen) for m in conversation.get_top_level_messages()]


@router.get("/{conversation_id}/messages/{message_id}/replies", response_model=List[Message])
def get_replies(
    conversation_id: str,
    message_id: str,
    store: ConversationStore = Depends(get_store),
) -> List[Message]:
    conversation = _load(store, conversation_id)
    if conversation.get_message(message_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return conversation.get_replies(message_id)


@router.post("/{conversation_id}/messages", response_model=Conversation)
async def post_message(
    conversation_id: str,
    payload: UserMessageCreate,
    store: ConversationStore = Depends(get_store),
    provider: AIProvider = Depends(get_provider),
) -> Conversation:
    conversation = _load(store, conversation_id)
    orchestrator = _start_turn(conversation, store, provider, payload)
    try:
        return await orchestrator.submit_user_message(
            payload.content,
            payload.reply_parent_id,
            current_code=payload.current_code,
        )
    finally:
        _finish_turn(conversation_id, orchestrator)


def _sse(event: str, data: object) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@router.post("/{conversation_id}/messages/stream", response_class=StreamingResponse)
async def stream_message(
    conversation_id: str,
    payload: UserMessageCreate,
    store: ConversationStore = Depends(get_store),
    provider: AIProvider = Depends(get_provider),
):
    conversation = _load(store, conversation_id)
    queue: asyncio.Queue[Optional[StreamState]] = asyncio.Queue()
    orchestrator = _start_turn(conversation, store, provider, payload, on_update=queue.put_nowait)

    async def run_turn() -> Conversation:
        try:
            return await orchestrator.submit_user_message(
                payload.content,
                payload.reply_parent_id,
                current_code=payload.current_code,
            )
        finally:
            queue.put_nowait(None)

    async def event_stream() -> AsyncIterator[str]:
        task = asyncio.create_task(run_turn())
        sent = 0
        try:
            while True:
                state = await queue.get()
                if state is None:
                    break
                text = state.buffered_text
                if len(text) > sent:
                    yield _sse("delta", {"text": text[sent:], "has_code": state.has_code_block})
                    sent = len(text)
            try:
                result = await task
            except XRAiError as exc:
                logger.warning("stream_turn_failed", extra={"conversation_id": conversation_id, "err": str(exc)})
                yield _sse("error", {"detail": str(exc)})
                return
            yield _sse("done", result.model_dump(mode="json"))
        finally:
            if not task.done():
                # client went away mid-stream
                task.cancel()
            _finish_turn(conversation_id, orchestrator)

    headers = {
        "Cache-Control": "no-cache, no-transform",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)
