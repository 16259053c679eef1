from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .errors import ParentNotFoundError

DEFAULT_TITLE = "New Conversation"
TITLE_MAX_LENGTH = 50


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Message(BaseModel):
    id: str = Field(default_factory=_new_id)
    content: str = ""
    is_user: bool
    timestamp: datetime = Field(default_factory=_utcnow)
    thread_parent_id: Optional[str] = None
    replies: List[str] = Field(default_factory=list)
    library_id: Optional[str] = None


class Conversation(BaseModel):
    """A chat session: a flat, insertion-ordered message list with a reply tree on top.

    Reads are lenient (stale ids resolve to nothing); writes are strict
    (appending under an unknown parent raises ``ParentNotFoundError``).
    """

    id: str = Field(default_factory=_new_id)
    title: str = DEFAULT_TITLE
    messages: List[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    library_id: Optional[str] = None
    model_used: Optional[str] = None

    def touch(self) -> None:
        now = _utcnow()
        self.updated_at = now if now >= self.created_at else self.created_at

    def get_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def get_top_level_messages(self) -> List[Message]:
        return [m for m in self.messages if not m.thread_parent_id]

    def get_replies(self, parent_id: str) -> List[Message]:
        parent = self.get_message(parent_id)
        if parent is None:
            return []
        by_id: Dict[str, Message] = {m.id: m for m in self.messages}
        return [by_id[rid] for rid in parent.replies if rid in by_id]

    def has_replies(self, message_id: str) -> bool:
        return any(m.thread_parent_id == message_id for m in self.messages)

    def append_message(self, message: Message) -> Message:
        parent: Optional[Message] = None
        if message.thread_parent_id:
            parent = self.get_message(message.thread_parent_id)
            if parent is None:
                raise ParentNotFoundError(message.thread_parent_id)
        self.messages.append(message)
        if parent is not None:
            parent.replies.append(message.id)
        self.touch()
        return message

    def generate_title_if_needed(self) -> bool:
        """Derive a title from the first user message; returns True when the title changed."""
        if self.title.strip() and self.title != DEFAULT_TITLE:
            return False
        first_user = next((m for m in self.messages if m.is_user and m.content.strip()), None)
        if first_user is None:
            return False
        first_line = first_user.content.strip().splitlines()[0].strip()
        if len(first_line) > TITLE_MAX_LENGTH:
            first_line = first_line[:TITLE_MAX_LENGTH] + "..."
        self.title = first_line
        self.touch()
        return True


class ConversationCreate(BaseModel):
    title: Optional[str] = None
    library_id: Optional[str] = None
    model_used: Optional[str] = None
    initial_message: Optional[str] = None


class ConversationSummary(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    library_id: Optional[str] = None
    model_used: Optional[str] = None
    message_count: int = 0

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationSummary":
        return cls(
            id=conversation.id,
            title=conversation.title,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            library_id=conversation.library_id,
            model_used=conversation.model_used,
            message_count=len(conversation.messages),
        )


class UserMessageCreate(BaseModel):
    content: str
    reply_parent_id: Optional[str] = None
    current_code: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ThreadNode(BaseModel):
    message: Message
    replies: List["ThreadNode"] = Field(default_factory=list)


ThreadNode.model_rebuild()


class CodeExtractRequest(BaseModel):
    content: str
    allow_unterminated: bool = False


class CodeExtractResponse(BaseModel):
    code: Optional[str] = None
    has_code: bool = False
    run_scene: bool = False
    display_text: str = ""
