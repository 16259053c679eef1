import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolated_runtime(monkeypatch):
    """Fresh settings, store singleton, breaker and telemetry buffer per test."""
    from src.xrai.config import get_settings
    from src.xrai.infrastructure import conversation_store
    from src.xrai.services import chat_ai, telemetry_sink
    from src.xrai.api.routers import conversations

    monkeypatch.setenv("XRAI_CONVERSATION_STORE_IMPL", "memory")
    for key in ("TOGETHER_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "XRAI_MODEL_PROVIDER", "XRAI_DEFAULT_MODEL"):
        monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    conversation_store.reset_conversation_store()
    chat_ai.reset_breaker()
    telemetry_sink.clear_events()
    conversations._active_turns.clear()
    yield
    get_settings.cache_clear()
    conversation_store.reset_conversation_store()
