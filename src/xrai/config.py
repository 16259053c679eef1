"""Runtime configuration read from the environment.

Values are resolved once per process (``get_settings`` is cached); tests that
tweak the environment call ``get_settings.cache_clear()``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    default_library_id: str
    default_model: Optional[str]
    temperature: float
    top_p: float
    system_prompt_override: Optional[str]
    store_impl: str
    store_file: Path
    redis_url: Optional[str]
    max_stored_conversations: int
    connect_timeout: float
    read_timeout: float


@lru_cache
def get_settings() -> Settings:
    root = Path(__file__).resolve().parents[2]
    default_store_file = root / "run" / "conversations.json"
    return Settings(
        default_library_id=(os.getenv("XRAI_DEFAULT_LIBRARY") or "babylonjs").strip().lower(),
        default_model=(os.getenv("XRAI_DEFAULT_MODEL") or "").strip() or None,
        # Defaults match the mobile clients' "balanced creativity" preset
        temperature=_env_float("XRAI_TEMPERATURE", 0.7),
        top_p=_env_float("XRAI_TOP_P", 0.9),
        system_prompt_override=(os.getenv("XRAI_SYSTEM_PROMPT") or "").strip() or None,
        store_impl=(os.getenv("XRAI_CONVERSATION_STORE_IMPL") or "memory").strip().lower(),
        store_file=Path(os.getenv("XRAI_CONVERSATIONS_FILE", str(default_store_file))),
        redis_url=(os.getenv("REDIS_URL") or "").strip() or None,
        max_stored_conversations=max(1, _env_int("XRAI_MAX_STORED_CONVERSATIONS", 100)),
        connect_timeout=_env_float("XRAI_LLM_CONNECT_TIMEOUT", 3.0),
        read_timeout=_env_float("XRAI_LLM_READ_TIMEOUT", 60.0),
    )
