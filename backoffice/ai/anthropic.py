"""
Anthropic Provider
Messages API over requests.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from ..config import ServicesSettings, get_services_settings
from .base import AIProviderError, AIProviderInterface, AIResponse, json_instructions

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"


class AnthropicProvider(AIProviderInterface):
    name = "anthropic"

    DEFAULT_MAX_TOKENS = 1024

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        settings: Optional[ServicesSettings] = None,
        http: Optional[requests.Session] = None,
    ):
        settings = settings or get_services_settings()
        self.api_key = api_key if api_key is not None else settings.anthropic_api_key
        self.model = model or settings.anthropic_model
        self.base_url = settings.anthropic_base_url.rstrip("/")
        self.timeout = settings.ai_timeout_seconds
        self.http = http or requests.Session()

    def is_available(self) -> bool:
        return bool(self.api_key)

    def chat(self, messages: List[Dict[str, str]], **options) -> AIResponse:
        if not self.is_available():
            raise AIProviderError("Anthropic API key is not configured", provider=self.name)

        # System prompts travel in their own field, not in the message list
        system_parts = [m["content"] for m in messages if m.get("role") == "system"]
        conversation = [m for m in messages if m.get("role") != "system"]

        payload: Dict[str, Any] = {
            "model": options.get("model") or self.model,
            "messages": conversation,
            "max_tokens": options.get("max_tokens") or self.DEFAULT_MAX_TOKENS,
            "temperature": options.get("temperature", 0.7),
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)

        try:
            response = self.http.post(
                f"{self.base_url}/messages",
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": API_VERSION,
                    "content-type": "application/json",
                },
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Anthropic request failed: {e}", extra={"feature": options.get("feature")})
            raise AIProviderError(f"Anthropic request failed: {e}", provider=self.name) from e

        if not response.ok:
            logger.warning(
                f"Anthropic returned {response.status_code}",
                extra={"feature": options.get("feature"), "status_code": response.status_code},
            )
            raise AIProviderError(
                f"Anthropic API error ({response.status_code}): {response.text[:500]}",
                provider=self.name,
                status_code=response.status_code,
            )

        data = response.json()
        content = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        return AIResponse(
            content=content,
            provider=self.name,
            model=data.get("model", payload["model"]),
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            raw=data,
        )

    def chat_with_system(self, system: str, user: str, **options) -> AIResponse:
        return self.chat(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            **options,
        )

    def generate_json(self, prompt: str, schema: Optional[Dict[str, Any]] = None, **options) -> AIResponse:
        return self.chat_with_system(json_instructions(schema), prompt, **options)
