from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import get_settings
from ..domain.errors import ProviderStreamError
from .model_router import ModelRouter, ProviderSelection

# Optional import: langchain-openai
try:
    from langchain_openai import ChatOpenAI  # type: ignore
except Exception:  # pragma: no cover - optional import
    ChatOpenAI = None  # type: ignore


logger = logging.getLogger(__name__)
LOG = logging.getLogger("xrai.llm")


_BREAKER_STATE = {"fails": 0, "opened_at": 0.0}
_BREAKER_THRESHOLD = int(os.getenv("XRAI_LLM_BREAKER_THRESHOLD", "3"))
_BREAKER_COOLDOWN = float(os.getenv("XRAI_LLM_BREAKER_COOLDOWN", "60.0"))

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MAX_TOKENS = 4096


def _breaker_open() -> bool:
    opened = _BREAKER_STATE["opened_at"]
    if opened == 0.0:
        return False
    if time.time() - opened < _BREAKER_COOLDOWN:
        return True
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0
    return False


def _record_fail() -> None:
    _BREAKER_STATE["fails"] += 1
    if _BREAKER_STATE["fails"] >= _BREAKER_THRESHOLD and _BREAKER_STATE["opened_at"] == 0.0:
        _BREAKER_STATE["opened_at"] = time.time()
        LOG.warning(
            "llm_breaker_opened",
            extra={"fails": _BREAKER_STATE["fails"], "cooldown_s": _BREAKER_COOLDOWN},
        )


def _record_success() -> None:
    if _BREAKER_STATE["fails"] or _BREAKER_STATE["opened_at"]:
        LOG.info("llm_breaker_closed")
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0


def reset_breaker() -> None:
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    model: Optional[str] = None
    temperature: float = 0.7
    top_p: float = 0.9
    system_prompt: Optional[str] = None

    def to_messages(self) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": self.prompt})
        return messages


@dataclass(frozen=True)
class StreamDelta:
    text: str
    is_final: bool = False


class AIProvider(Protocol):
    """Streaming contract every provider client satisfies."""

    def stream(self, request: GenerationRequest) -> Iterator[StreamDelta]: ...


# ----------------------------------------------------------------------
# Error classification
# ----------------------------------------------------------------------
def _kind_for_status(status: Optional[int]) -> str:
    if status in (401, 403):
        return "authentication"
    if status == 429:
        return "rate_limit"
    if status in (408, 504):
        return "timeout"
    return "unknown"


def _status_of(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_exception(exc: Exception, provider: str = "") -> ProviderStreamError:
    """Translate transport or SDK exceptions into a ``ProviderStreamError``."""
    if isinstance(exc, ProviderStreamError):
        return exc
    status = _status_of(exc)
    if isinstance(exc, requests.exceptions.Timeout):
        kind = "timeout"
    elif isinstance(exc, requests.exceptions.ConnectionError):
        kind = "network"
    elif status is not None:
        kind = _kind_for_status(status)
    else:
        # SDK errors (openai, httpx) are matched by name so the SDKs stay optional
        name = type(exc).__name__.lower()
        if "timeout" in name:
            kind = "timeout"
        elif "connection" in name or "network" in name:
            kind = "network"
        elif "authentication" in name or "permission" in name:
            kind = "authentication"
        elif "ratelimit" in name:
            kind = "rate_limit"
        else:
            kind = "unknown"
    label = f"{provider}: " if provider else ""
    return ProviderStreamError(f"{label}{exc}", kind=kind, status_code=status)


def describe_provider_error(err: BaseException) -> str:
    """Human readable text shown in the chat when a turn fails."""
    kind = getattr(err, "kind", "unknown")
    if kind == "configuration":
        return (
            "⚠️ No AI provider is configured. Add an API key "
            "(Together.ai, OpenAI or Anthropic) in settings and try again."
        )
    if kind == "authentication":
        return "⚠️ Authentication failed. Please check that your API key is valid."
    if kind == "rate_limit":
        return "⚠️ Rate limit exceeded. Please wait a moment and try again."
    if kind == "timeout":
        return "⚠️ The AI provider took too long to respond. Please try again."
    if kind == "network":
        return "⚠️ Network error: could not reach the AI provider. Check your connection and try again."
    if kind == "circuit_open":
        return "⚠️ The AI provider is temporarily unavailable after repeated failures. Please try again shortly."
    if kind == "empty_response":
        return "⚠️ Empty response received from the AI provider. Please try again."
    return "⚠️ Sorry, something went wrong while generating a response. Please try again."


def _check_response(resp: Any, provider: str) -> None:
    status = getattr(resp, "status_code", 200)
    if status < 400:
        return
    detail = ""
    try:
        body = resp.json()
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            detail = str(error.get("message") or "")
        elif error:
            detail = str(error)
    except ValueError:
        detail = (getattr(resp, "text", "") or "")[:200]
    raise ProviderStreamError(
        f"{provider} returned HTTP {status}{': ' + detail if detail else ''}",
        kind=_kind_for_status(status),
        status_code=status,
    )


def _guarded(provider: str, produce: Callable[[], Iterator[StreamDelta]]) -> Iterator[StreamDelta]:
    """Run a provider stream behind the circuit breaker.

    Every failure surfaces as ``ProviderStreamError``. A stream that ends
    without any text counts as a failure too.
    """
    if _breaker_open():
        LOG.info("llm_skipped_due_to_breaker", extra={"provider": provider, "cooldown_s": _BREAKER_COOLDOWN})
        raise ProviderStreamError(f"{provider}: circuit open", kind="circuit_open")
    produced = False
    try:
        for delta in produce():
            if delta.text:
                produced = True
            yield delta
    except Exception as exc:
        err = classify_exception(exc, provider)
        if err.kind != "configuration":
            _record_fail()
        LOG.warning(
            "llm_stream_failed",
            extra={"provider": provider, "kind": err.kind, "status": err.status_code, "err": str(exc)},
        )
        raise err from exc
    if not produced:
        _record_fail()
        raise ProviderStreamError(f"{provider}: empty response", kind="empty_response")
    _record_success()
    yield StreamDelta("", is_final=True)


def _iter_sse_data(resp: Any) -> Iterator[str]:
    for raw_line in resp.iter_lines():
        if not raw_line:
            continue
        line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
        if not line.startswith("data:"):
            continue
        yield line[5:].strip()


class OpenAICompatibleClient:
    """Streams chat completions from any OpenAI compatible endpoint.

    Used for Together.ai and local hosts (Ollama, LM Studio) that speak the
    ``/chat/completions`` SSE dialect.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        *,
        provider_name: str = "openai-compatible",
        session: Optional[requests.Session] = None,
        timeout: Optional[tuple] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.provider_name = provider_name
        self._api_key = api_key
        self._session = session or _build_session()
        self._timeout = timeout or (settings.connect_timeout, settings.read_timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def stream(self, request: GenerationRequest) -> Iterator[StreamDelta]:
        return _guarded(self.provider_name, lambda: self._stream(request))

    def _stream(self, request: GenerationRequest) -> Iterator[StreamDelta]:
        model = request.model or self.model
        LOG.debug(
            "llm_stream_openai",
            extra={"provider": self.provider_name, "model": model, "base_url": self.base_url},
        )
        payload = {
            "model": model,
            "messages": request.to_messages(),
            "temperature": request.temperature,
            "top_p": request.top_p,
            "stream": True,
        }
        with self._session.post(
            f"{self.base_url}/chat/completions",
            json=payload,
            headers=self._headers(),
            timeout=self._timeout,
            stream=True,
        ) as resp:
            _check_response(resp, self.provider_name)
            for data in _iter_sse_data(resp):
                if data == "[DONE]":
                    break
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if parsed.get("error"):
                    raise ProviderStreamError(f"{self.provider_name}: {parsed['error']}")
                delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                token = delta.get("content") or ""
                if token:
                    yield StreamDelta(token)


class AnthropicClient:
    """Streams from the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.anthropic.com/v1",
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[tuple] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._api_key = api_key
        self._session = session or _build_session()
        self._timeout = timeout or (settings.connect_timeout, settings.read_timeout)

    def stream(self, request: GenerationRequest) -> Iterator[StreamDelta]:
        return _guarded("anthropic", lambda: self._stream(request))

    def _stream(self, request: GenerationRequest) -> Iterator[StreamDelta]:
        model = request.model or self.model
        LOG.debug("llm_stream_anthropic", extra={"model": model})
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": ANTHROPIC_MAX_TOKENS,
            "messages": [{"role": "user", "content": request.prompt}],
            "temperature": request.temperature,
            "top_p": request.top_p,
            "stream": True,
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        with self._session.post(
            f"{self.base_url}/messages",
            json=payload,
            headers=headers,
            timeout=self._timeout,
            stream=True,
        ) as resp:
            _check_response(resp, "anthropic")
            for data in _iter_sse_data(resp):
                try:
                    event = json.loads(data)
                except json.JSONDecodeError:
                    continue
                event_type = event.get("type")
                if event_type == "content_block_delta":
                    text = (event.get("delta") or {}).get("text") or ""
                    if text:
                        yield StreamDelta(text)
                elif event_type == "message_stop":
                    break
                elif event_type == "error":
                    error = event.get("error") or {}
                    error_type = str(error.get("type") or "")
                    kind = "unknown"
                    if error_type in ("rate_limit_error", "overloaded_error"):
                        kind = "rate_limit"
                    elif error_type in ("authentication_error", "permission_error"):
                        kind = "authentication"
                    raise ProviderStreamError(f"anthropic: {error.get('message') or error_type}", kind=kind)


class LangChainChatClient:
    """OpenAI chat models through ``langchain_openai.ChatOpenAI``."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        base_url: Optional[str] = None,
        *,
        llm: Any = None,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self._api_key = api_key
        self._llm = llm

    def _build_llm(self, request: GenerationRequest) -> Any:
        if self._llm is not None:
            return self._llm
        if not ChatOpenAI:
            raise ProviderStreamError("LLM client not available", kind="configuration")
        settings = get_settings()
        return ChatOpenAI(
            api_key=self._api_key,
            base_url=self.base_url,
            model=request.model or self.model,
            temperature=request.temperature,
            top_p=request.top_p,
            timeout=settings.read_timeout,
            streaming=True,
        )

    def stream(self, request: GenerationRequest) -> Iterator[StreamDelta]:
        return _guarded("openai", lambda: self._stream(request))

    def _stream(self, request: GenerationRequest) -> Iterator[StreamDelta]:
        llm = self._build_llm(request)
        messages = [(m["role"] if m["role"] == "system" else "human", m["content"]) for m in request.to_messages()]
        LOG.debug("llm_stream_langchain", extra={"model": request.model or self.model})
        for chunk in llm.stream(messages):
            content = getattr(chunk, "content", chunk)
            if isinstance(content, list):
                content = "".join(
                    part.get("text", "") if isinstance(part, dict) else str(part) for part in content
                )
            if content:
                yield StreamDelta(str(content))


def _base_url_for(selection: ProviderSelection, env: Mapping[str, str]) -> str:
    base_url = selection.default_base_url or ""
    if selection.base_url_env:
        base_url = env.get(selection.base_url_env) or base_url
    return base_url


def build_provider_client(selection: ProviderSelection, env: Optional[Mapping[str, str]] = None) -> AIProvider:
    """Instantiate the streaming client for a routed provider selection."""
    env = env if env is not None else os.environ
    api_key = env.get(selection.api_key_env) if selection.api_key_env else None
    if selection.requires_api_key and not api_key:
        raise ProviderStreamError(f"API key required for {selection.name}", kind="configuration")

    base_url = _base_url_for(selection, env)
    logger.info("Using LLM provider name=%s model=%s base_url=%s", selection.name, selection.model, base_url)
    if selection.name == "anthropic":
        return AnthropicClient(api_key=str(api_key), model=selection.model, base_url=base_url)
    if selection.name == "openai":
        return LangChainChatClient(api_key=api_key, model=selection.model, base_url=base_url)
    return OpenAICompatibleClient(
        base_url=base_url,
        model=selection.model,
        api_key=api_key,
        provider_name=selection.name,
    )


class RoutedProvider:
    """Provider facade that routes each request through ``ModelRouter``.

    Routing happens lazily on the first ``next()`` so configuration problems
    surface as stream failures (and therefore as chat messages).
    """

    def __init__(
        self,
        router: Optional[ModelRouter] = None,
        purpose: str = "scene_generation",
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._env = env
        self._router = router or ModelRouter(env=dict(env) if env is not None else None)
        self._purpose = purpose

    def stream(self, request: GenerationRequest) -> Iterator[StreamDelta]:
        selection = self._router.maybe_select_provider(self._purpose, request.model)
        if selection is None:
            raise ProviderStreamError("No active model provider available", kind="configuration")
        client = build_provider_client(selection, self._env)
        yield from client.stream(replace(request, model=selection.model))
