from __future__ import annotations

from typing import Optional


class XRAiError(Exception):
    """Base class for errors raised by the conversation core."""


class EmptyInputError(XRAiError):
    """User submitted blank text."""


class ParentNotFoundError(XRAiError, KeyError):
    """A reply target does not exist in the conversation."""

    def __init__(self, parent_id: str) -> None:
        super().__init__(parent_id)
        self.parent_id = parent_id

    def __str__(self) -> str:
        return f"Parent message not found: {self.parent_id}"


class InvalidStateError(XRAiError):
    """Component used outside the state its contract allows."""


class TurnInProgressError(InvalidStateError):
    """A turn is already in flight for this conversation."""


class ProviderStreamError(XRAiError):
    """The AI provider failed before the stream completed.

    ``kind`` is one of ``configuration``, ``authentication``, ``rate_limit``,
    ``timeout``, ``network``, ``circuit_open``, ``empty_response`` or
    ``unknown``.
    """

    def __init__(self, message: str, *, kind: str = "unknown", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class PersistenceError(XRAiError):
    """The conversation store could not complete an operation."""
