"""
AI Services
Provider facade and content generators.
"""

from .anthropic import AnthropicProvider
from .base import AIProviderError, AIProviderInterface, AIResponse
from .description import DescriptionGenerator, ListingSuggestion
from .manager import AIManager
from .openai import OpenAIProvider

__all__ = [
    "AIResponse",
    "AIProviderError",
    "AIProviderInterface",
    "OpenAIProvider",
    "AnthropicProvider",
    "AIManager",
    "DescriptionGenerator",
    "ListingSuggestion",
]
