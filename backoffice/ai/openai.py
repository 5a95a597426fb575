"""
OpenAI Provider
Chat Completions API over requests.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from ..config import ServicesSettings, get_services_settings
from .base import AIProviderError, AIProviderInterface, AIResponse, json_instructions

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProviderInterface):
    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        settings: Optional[ServicesSettings] = None,
        http: Optional[requests.Session] = None,
    ):
        settings = settings or get_services_settings()
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_model
        self.base_url = settings.openai_base_url.rstrip("/")
        self.timeout = settings.ai_timeout_seconds
        self.http = http or requests.Session()

    def is_available(self) -> bool:
        return bool(self.api_key)

    def chat(self, messages: List[Dict[str, str]], **options) -> AIResponse:
        if not self.is_available():
            raise AIProviderError("OpenAI API key is not configured", provider=self.name)

        payload: Dict[str, Any] = {
            "model": options.get("model") or self.model,
            "messages": messages,
            "temperature": options.get("temperature", 0.7),
        }
        if options.get("max_tokens"):
            payload["max_tokens"] = options["max_tokens"]
        if options.get("json"):
            payload["response_format"] = {"type": "json_object"}

        data = self._post("/chat/completions", payload, feature=options.get("feature"))

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise AIProviderError("OpenAI response has no message content", provider=self.name) from e

        usage = data.get("usage") or {}
        return AIResponse(
            content=content,
            provider=self.name,
            model=data.get("model", payload["model"]),
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            raw=data,
        )

    def chat_with_system(self, system: str, user: str, **options) -> AIResponse:
        return self.chat(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            **options,
        )

    def generate_json(self, prompt: str, schema: Optional[Dict[str, Any]] = None, **options) -> AIResponse:
        options["json"] = True
        return self.chat_with_system(json_instructions(schema), prompt, **options)

    def _post(self, endpoint: str, payload: Dict[str, Any], feature: Optional[str] = None) -> Dict[str, Any]:
        try:
            response = self.http.post(
                f"{self.base_url}{endpoint}",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"OpenAI request failed: {e}", extra={"feature": feature})
            raise AIProviderError(f"OpenAI request failed: {e}", provider=self.name) from e

        if not response.ok:
            logger.warning(
                f"OpenAI returned {response.status_code}",
                extra={"feature": feature, "status_code": response.status_code},
            )
            raise AIProviderError(
                f"OpenAI API error ({response.status_code}): {response.text[:500]}",
                provider=self.name,
                status_code=response.status_code,
            )

        return response.json()
