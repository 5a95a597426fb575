"""
AI Provider Interface
Common response type and contract for interchangeable chat-completion backends.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


class AIProviderError(Exception):
    """Raised when a provider is unavailable or returns an unusable response."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


@dataclass
class AIResponse:
    """A single completion returned by a provider."""

    content: str
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)

    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def json(self) -> Any:
        """Parse ``content`` as JSON, tolerating a Markdown code fence around it."""
        text = self.content.strip()
        match = _FENCE_PATTERN.match(text)
        if match:
            text = match.group(1)

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise AIProviderError(
                f"Response from {self.provider} is not valid JSON: {e}", provider=self.provider
            ) from e


class AIProviderInterface(ABC):
    """Operations every AI backend provides."""

    name: str = ""

    @abstractmethod
    def chat(self, messages: List[Dict[str, str]], **options) -> AIResponse:
        """Complete a conversation of ``{"role", "content"}`` messages."""

    @abstractmethod
    def chat_with_system(self, system: str, user: str, **options) -> AIResponse:
        pass

    @abstractmethod
    def generate_json(self, prompt: str, schema: Optional[Dict[str, Any]] = None, **options) -> AIResponse:
        """Ask for a JSON object, optionally describing the expected shape with ``schema``."""

    @abstractmethod
    def is_available(self) -> bool:
        pass


def json_instructions(schema: Optional[Dict[str, Any]]) -> str:
    instructions = "Respond with a single valid JSON object and nothing else."
    if schema:
        instructions += f"\nThe JSON must match this schema:\n{json.dumps(schema, indent=2)}"
    return instructions
