"""Routing helpers for selecting the AI provider that serves a chat turn.

The router does not import any SDK; it only resolves a provider configuration
(name, model, credentials env var, base URL) that ``chat_ai`` turns into a
concrete streaming client. This keeps the selection policy unit-testable.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set
from urllib.parse import urlparse


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider that should handle a turn."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url_env: Optional[str] = None
    default_base_url: Optional[str] = None
    requires_api_key: bool = True


class ModelRouter:
    """Policy-based router across the hosted and local providers."""

    PROVIDER_CONFIG: Dict[str, Dict[str, Optional[str] | bool]] = {
        "together": {
            "api_key_env": "TOGETHER_API_KEY",
            "base_url_env": "TOGETHER_BASE_URL",
            "model_env": "TOGETHER_MODEL",
            "default_model": "meta-llama/Llama-3.3-70B-Instruct-Turbo",
            "default_base_url": "https://api.together.xyz/v1",
        },
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "model_env": "OPENAI_MODEL",
            "default_model": "gpt-4o-mini",
            "default_base_url": "https://api.openai.com/v1",
        },
        "anthropic": {
            "api_key_env": "ANTHROPIC_API_KEY",
            "base_url_env": "ANTHROPIC_BASE_URL",
            "model_env": "ANTHROPIC_MODEL",
            "default_model": "claude-3-5-sonnet-latest",
            "default_base_url": "https://api.anthropic.com/v1",
        },
        "local": {
            "api_key_env": "LOCAL_API_KEY",
            "base_url_env": "LOCAL_BASE_URL",
            "model_env": "LOCAL_MODEL",
            "default_model": "qwen2.5-coder:7b",
            "default_base_url": "http://127.0.0.1:11434/v1",
            "requires_api_key": False,
        },
    }

    ROUTING_POLICY: Dict[str, tuple[str, ...]] = {
        # Scene code generation prefers the free/cheap coding models first.
        "scene_generation": ("together", "openai", "anthropic", "local"),
        "conversation": ("openai", "anthropic", "together", "local"),
    }

    def __init__(
        self,
        env: Optional[Dict[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._allowed: Optional[Set[str]] = set(allowed_providers) if allowed_providers else None
        preferred = (self._env.get("XRAI_MODEL_PROVIDER") or "").strip().lower()
        self._preferred_provider = preferred if preferred in self.PROVIDER_CONFIG else None

    # ------------------------------------------------------------------
    # Provider resolution helpers
    # ------------------------------------------------------------------
    def provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if self._allowed is not None and provider not in self._allowed:
            return False
        if bool(cfg.get("requires_api_key", True)):
            api_key_env = cfg.get("api_key_env")
            return bool(api_key_env and self._env.get(str(api_key_env)))

        if (self._env.get("XRAI_ENABLE_LOCAL_PROVIDER") or "").strip() != "1":
            return False
        base_url_env = str(cfg.get("base_url_env") or "")
        base_url = self._env.get(base_url_env) or str(cfg.get("default_base_url") or "")
        parsed = urlparse(base_url)
        host = parsed.hostname
        if not host:
            return False
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        try:
            with socket.create_connection((host, port), timeout=1.5):
                return True
        except OSError:
            return False

    def _resolve_selection(self, provider: str, model_hint: Optional[str] = None) -> ProviderSelection:
        cfg = self.PROVIDER_CONFIG[provider]
        model_env = str(cfg.get("model_env") or "")
        model = model_hint or self._env.get(model_env) or str(cfg.get("default_model") or "")
        return ProviderSelection(
            name=provider,
            model=model,
            api_key_env=cfg.get("api_key_env"),  # type: ignore[arg-type]
            base_url_env=cfg.get("base_url_env"),  # type: ignore[arg-type]
            default_base_url=cfg.get("default_base_url"),  # type: ignore[arg-type]
            requires_api_key=bool(cfg.get("requires_api_key", True)),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @staticmethod
    def provider_for_model(model_id: str) -> Optional[str]:
        """Infer the provider that serves ``model_id`` from its naming scheme."""
        model = (model_id or "").strip().lower()
        if not model:
            return None
        if model.startswith("claude"):
            return "anthropic"
        if model.startswith(("gpt-", "o1", "o3", "o4")):
            return "openai"
        if "/" in model:
            return "together"
        if ":" in model:
            return "local"
        return None

    def resolve_provider(self, provider: str, model_hint: Optional[str] = None) -> ProviderSelection:
        if provider not in self.PROVIDER_CONFIG:
            raise KeyError(provider)
        return self._resolve_selection(provider, model_hint)

    def select_provider(self, purpose: str = "scene_generation", model_hint: Optional[str] = None) -> ProviderSelection:
        """Return the provider selected for the supplied purpose.

        A model hint whose provider can be inferred pins that provider; when
        that provider is unavailable the hint is dropped and the policy order
        applies with each provider's default model.

        Raises
        ------
        RuntimeError
            If no provider configured for the purpose is currently available.
        """
        if model_hint:
            inferred = self.provider_for_model(model_hint)
            if inferred and self.provider_available(inferred):
                return self._resolve_selection(inferred, model_hint)
            if inferred:
                # pinned to a provider that is not available; fall back to defaults
                model_hint = None

        priority = list(self.ROUTING_POLICY.get(purpose, self.ROUTING_POLICY["scene_generation"]))
        if self._preferred_provider:
            priority = [self._preferred_provider] + [p for p in priority if p != self._preferred_provider]
        for provider in priority:
            if self.provider_available(provider):
                return self._resolve_selection(provider, model_hint)
        raise RuntimeError("No active model provider available for this task.")

    def maybe_select_provider(self, purpose: str = "scene_generation", model_hint: Optional[str] = None) -> Optional[ProviderSelection]:
        """Like :meth:`select_provider` but returns ``None`` on failure."""

        try:
            return self.select_provider(purpose, model_hint)
        except RuntimeError:
            return None
