"""Routing helpers for selecting the model provider per generation purpose.

The router does not couple directly to concrete SDK clients; it selects a
provider configuration that the generation client uses to instantiate the
LLM. This keeps the selection policy unit-testable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Set, Tuple


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider that should handle a task."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url_env: Optional[str] = None
    default_base_url: Optional[str] = None
    requires_api_key: bool = True


class ModelRouter:
    """Policy-based router: conversation, vision and site generation."""

    PROVIDER_CONFIG: Dict[str, Dict[str, object]] = {
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "default_base_url": "https://api.openai.com/v1",
            "models": {
                "conversation": ("OPENAI_MODEL", "gpt-4o-mini"),
                "vision": ("OPENAI_VISION_MODEL", "gpt-4o"),
                "site_generation": ("OPENAI_SITE_MODEL", "gpt-4o-mini"),
            },
        },
        "xai": {
            "api_key_env": "XAI_API_KEY",
            "base_url_env": "XAI_BASE_URL",
            "default_base_url": "https://api.x.ai/v1",
            "models": {
                "conversation": ("XAI_MODEL", "grok-2-latest"),
                "vision": ("XAI_VISION_MODEL", "grok-2-vision-latest"),
                "site_generation": ("XAI_SITE_MODEL", "grok-2-latest"),
            },
        },
        "local": {
            "api_key_env": "LOCAL_API_KEY",
            "base_url_env": "LOCAL_BASE_URL",
            "default_base_url": "http://127.0.0.1:11434",
            "requires_api_key": False,
            "models": {
                "conversation": ("LOCAL_MODEL", "llama3.1"),
                "vision": ("LOCAL_VISION_MODEL", "llava"),
                "site_generation": ("LOCAL_SITE_MODEL", "llama3.1"),
            },
        },
    }

    ROUTING_POLICY: Dict[str, Tuple[str, ...]] = {
        "conversation": ("openai", "xai", "local"),
        # Image analysis needs a vision-capable hosted model first.
        "vision": ("openai", "xai", "local"),
        "site_generation": ("openai", "xai", "local"),
    }

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._allowed: Optional[Set[str]] = set(allowed_providers) if allowed_providers else None
        preferred = (self._env.get("DEVBEAVER_MODEL_PROVIDER") or "").strip().lower()
        self._preferred_provider = preferred if preferred in self.PROVIDER_CONFIG else None

    @property
    def env(self) -> Mapping[str, str]:
        return self._env

    def provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if self._allowed is not None and provider not in self._allowed:
            return False
        if bool(cfg.get("requires_api_key", True)):
            api_key_env = cfg.get("api_key_env")
            return bool(api_key_env and self._env.get(str(api_key_env)))

        # Keyless providers (local) must be switched on explicitly
        enabled_flag = (self._env.get("DEVBEAVER_ENABLE_LOCAL_PROVIDER") or "").strip() == "1"
        base_url_env = cfg.get("base_url_env")
        return enabled_flag and bool(base_url_env and self._env.get(str(base_url_env)))

    def _resolve_selection(self, provider: str, purpose: str) -> ProviderSelection:
        cfg = self.PROVIDER_CONFIG[provider]
        models = cfg.get("models") or {}
        model_env, default_model = models.get(purpose) or models["conversation"]  # type: ignore[index,union-attr]
        return ProviderSelection(
            name=provider,
            model=self._env.get(model_env, default_model),
            api_key_env=cfg.get("api_key_env"),  # type: ignore[arg-type]
            base_url_env=cfg.get("base_url_env"),  # type: ignore[arg-type]
            default_base_url=cfg.get("default_base_url"),  # type: ignore[arg-type]
            requires_api_key=bool(cfg.get("requires_api_key", True)),
        )

    def select_provider(self, purpose: str) -> ProviderSelection:
        """Return the provider selected for the supplied purpose.

        Raises
        ------
        RuntimeError
            If no providers configured for the requested purpose are
            currently available.
        """

        priority = list(self.ROUTING_POLICY.get(purpose, self.ROUTING_POLICY["conversation"]))
        if self._preferred_provider:
            priority = [self._preferred_provider] + [p for p in priority if p != self._preferred_provider]
        for provider in priority:
            if self.provider_available(provider):
                return self._resolve_selection(provider, purpose)
        raise RuntimeError(f"No active model provider available for {purpose}.")

    def maybe_select_provider(self, purpose: str) -> Optional[ProviderSelection]:
        """Like :meth:`select_provider` but returns ``None`` on failure."""

        try:
            return self.select_provider(purpose)
        except RuntimeError:
            return None
