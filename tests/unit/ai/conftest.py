"""
AI test fixtures
"""

from typing import Any, Dict, List, Optional

import pytest

from backoffice.ai import AIProviderInterface, AIResponse


class StubProvider(AIProviderInterface):
    """Provider that records calls and answers with a canned completion."""

    def __init__(self, name: str, available: bool = True, content: str = "ok"):
        self.name = name
        self.available = available
        self.content = content
        self.calls: List[Dict[str, Any]] = []

    def is_available(self) -> bool:
        return self.available

    def chat(self, messages, **options) -> AIResponse:
        self.calls.append({"messages": messages, "options": options})
        return AIResponse(content=self.content, provider=self.name, model=f"{self.name}-model")

    def chat_with_system(self, system: str, user: str, **options) -> AIResponse:
        return self.chat([{"role": "system", "content": system}, {"role": "user", "content": user}], **options)

    def generate_json(self, prompt: str, schema: Optional[Dict[str, Any]] = None, **options) -> AIResponse:
        return self.chat([{"role": "user", "content": prompt}], **options)


@pytest.fixture
def stub_provider():
    """Factory for :class:`StubProvider` instances."""
    return StubProvider
