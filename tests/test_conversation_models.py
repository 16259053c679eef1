from __future__ import annotations

from datetime import timedelta

import pytest

from src.xrai.domain.conversation_models import DEFAULT_TITLE, Conversation, Message
from src.xrai.domain.errors import ParentNotFoundError


def _user(text: str, parent: str | None = None) -> Message:
    return Message(content=text, is_user=True, thread_parent_id=parent)


def test_top_level_excludes_replies():
    conv = Conversation()
    root = conv.append_message(_user("root"))
    conv.append_message(_user("child", parent=root.id))
    conv.append_message(Message(content="answer", is_user=False))

    top = conv.get_top_level_messages()
    assert [m.content for m in top] == ["root", "answer"]
    assert all(m.thread_parent_id is None for m in top)


def test_reply_links_parent_exactly_once():
    conv = Conversation()
    root = conv.append_message(_user("root"))
    reply = conv.append_message(_user("child", parent=root.id))

    assert conv.get_message(root.id).replies == [reply.id]
    assert conv.get_replies(root.id) == [reply]
    assert conv.has_replies(root.id)
    assert not conv.has_replies(reply.id)


def test_double_append_is_not_idempotent():
    conv = Conversation()
    root = conv.append_message(_user("root"))
    reply = _user("child", parent=root.id)
    conv.append_message(reply)
    conv.append_message(reply)

    assert conv.get_message(root.id).replies == [reply.id, reply.id]
    assert len(conv.messages) == 3


def test_unknown_parent_raises_and_leaves_messages_untouched():
    conv = Conversation()
    conv.append_message(_user("root"))
    before = [m.model_copy(deep=True) for m in conv.messages]

    with pytest.raises(ParentNotFoundError) as excinfo:
        conv.append_message(_user("orphan", parent="missing"))

    assert excinfo.value.parent_id == "missing"
    assert isinstance(excinfo.value, KeyError)
    assert conv.messages == before


def test_read_path_is_lenient():
    conv = Conversation()
    root = conv.append_message(_user("root"))
    root.replies.append("dangling")
    assert conv.get_replies("unknown") == []
    assert conv.get_replies(root.id) == []
    assert conv.get_message("unknown") is None


def test_append_bumps_updated_at():
    conv = Conversation()
    conv.updated_at = conv.created_at
    conv.append_message(_user("hi"))
    assert conv.updated_at >= conv.created_at


def test_touch_never_moves_before_created_at():
    conv = Conversation()
    conv.created_at = conv.created_at + timedelta(hours=1)
    conv.touch()
    assert conv.updated_at == conv.created_at


def test_generate_title_from_first_user_line():
    conv = Conversation()
    assert conv.title == DEFAULT_TITLE
    conv.append_message(Message(content="assistant first", is_user=False))
    conv.append_message(_user("Make a red cube\nthat spins"))
    assert conv.generate_title_if_needed() is True
    assert conv.title == "Make a red cube"

    conv.append_message(_user("Something else"))
    assert conv.generate_title_if_needed() is False
    assert conv.title == "Make a red cube"


def test_generate_title_truncates_long_lines():
    conv = Conversation()
    conv.append_message(_user("x" * 80))
    conv.generate_title_if_needed()
    assert conv.title == "x" * 50 + "..."


def test_generate_title_without_user_message_is_noop():
    conv = Conversation()
    assert conv.generate_title_if_needed() is False
    assert conv.title == DEFAULT_TITLE
