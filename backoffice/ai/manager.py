"""
AI Manager
Selects a provider and delegates completions to it.
"""

import logging
from typing import Any, Dict, List, Optional

from ..config import ServicesSettings, get_services_settings
from .anthropic import AnthropicProvider
from .base import AIProviderError, AIProviderInterface, AIResponse
from .openai import OpenAIProvider

logger = logging.getLogger(__name__)


class AIManager:
    """
    Facade over the configured AI providers.

    ``provider(name)`` returns the named provider; without a name it prefers
    the configured default, then the first available provider.
    """

    def __init__(
        self,
        providers: Optional[List[AIProviderInterface]] = None,
        default: Optional[str] = None,
        settings: Optional[ServicesSettings] = None,
    ):
        settings = settings or get_services_settings()
        if providers is None:
            providers = [OpenAIProvider(settings=settings), AnthropicProvider(settings=settings)]
        self.providers: Dict[str, AIProviderInterface] = {p.name: p for p in providers}
        self.default = default or settings.ai_default_provider

    def provider(self, name: Optional[str] = None) -> AIProviderInterface:
        if name:
            if name not in self.providers:
                raise AIProviderError(f"Unknown AI provider: {name}", provider=name)
            return self.providers[name]

        default = self.providers.get(self.default)
        if default is not None and default.is_available():
            return default

        for candidate in self.providers.values():
            if candidate.is_available():
                logger.debug(f"Default AI provider {self.default} unavailable, using {candidate.name}")
                return candidate

        raise AIProviderError("No AI provider is available")

    def is_available(self) -> bool:
        return any(p.is_available() for p in self.providers.values())

    def chat(self, messages: List[Dict[str, str]], provider: Optional[str] = None, **options) -> AIResponse:
        return self.provider(provider).chat(messages, **options)

    def chat_with_system(
        self, system: str, user: str, provider: Optional[str] = None, **options
    ) -> AIResponse:
        return self.provider(provider).chat_with_system(system, user, **options)

    def generate_json(
        self,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
        **options,
    ) -> AIResponse:
        return self.provider(provider).generate_json(prompt, schema, **options)
