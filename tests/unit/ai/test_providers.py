"""
Tests for the AI provider clients and the provider manager.
"""

from unittest.mock import MagicMock

import pytest
import requests

from backoffice.ai import (
    AIManager,
    AIProviderError,
    AIResponse,
    AnthropicProvider,
    OpenAIProvider,
)
from backoffice.config import get_services_settings


@pytest.fixture
def ai_http():
    return MagicMock(spec=requests.Session)


class TestAIResponse:
    def test_total_tokens(self):
        assert AIResponse("x", "openai", "gpt", input_tokens=12, output_tokens=30).total_tokens() == 42

    @pytest.mark.parametrize(
        "content",
        [
            '{"title": "Rope Chain"}',
            '```json\n{"title": "Rope Chain"}\n```',
            '```\n{"title": "Rope Chain"}\n```',
            '  {"title": "Rope Chain"}  ',
        ],
    )
    def test_json_tolerates_code_fences(self, content):
        assert AIResponse(content, "openai", "gpt").json() == {"title": "Rope Chain"}

    def test_invalid_json(self):
        with pytest.raises(AIProviderError) as exc_info:
            AIResponse("Sure! Here is your JSON", "anthropic", "claude").json()

        assert exc_info.value.provider == "anthropic"


class TestOpenAIProvider:
    def test_chat(self, ai_http, make_response):
        ai_http.post.return_value = make_response(
            200,
            {
                "model": "gpt-4o-mini-2024-07-18",
                "choices": [{"message": {"role": "assistant", "content": "A lovely chain."}}],
                "usage": {"prompt_tokens": 20, "completion_tokens": 5},
            },
        )
        provider = OpenAIProvider(api_key="sk-test", http=ai_http)

        response = provider.chat_with_system("You write copy.", "Describe a chain.", temperature=0.2, max_tokens=300)

        assert response.content == "A lovely chain."
        assert response.provider == "openai"
        assert response.model == "gpt-4o-mini-2024-07-18"
        assert response.total_tokens() == 25

        args, kwargs = ai_http.post.call_args
        assert args[0] == "https://api.openai.com/v1/chat/completions"
        assert kwargs["headers"] == {"Authorization": "Bearer sk-test"}
        assert kwargs["json"]["messages"][0] == {"role": "system", "content": "You write copy."}
        assert kwargs["json"]["temperature"] == 0.2
        assert kwargs["json"]["max_tokens"] == 300
        assert "response_format" not in kwargs["json"]

    def test_generate_json_requests_json_object(self, ai_http, make_response):
        ai_http.post.return_value = make_response(
            200, {"choices": [{"message": {"content": '{"price": 10}'}}]}
        )
        provider = OpenAIProvider(api_key="sk-test", http=ai_http)

        response = provider.generate_json("Suggest a price", schema={"price": "number"})

        assert response.json() == {"price": 10}
        payload = ai_http.post.call_args.kwargs["json"]
        assert payload["response_format"] == {"type": "json_object"}
        assert '"price": "number"' in payload["messages"][0]["content"]

    def test_http_error(self, ai_http, make_response):
        ai_http.post.return_value = make_response(429, {"error": {"message": "Rate limit"}})
        provider = OpenAIProvider(api_key="sk-test", http=ai_http)

        with pytest.raises(AIProviderError) as exc_info:
            provider.chat([{"role": "user", "content": "hi"}])

        assert exc_info.value.status_code == 429
        assert "Rate limit" in str(exc_info.value)

    def test_unavailable_without_key(self, ai_http):
        provider = OpenAIProvider(api_key="", http=ai_http)

        assert not provider.is_available()
        with pytest.raises(AIProviderError, match="not configured"):
            provider.chat([{"role": "user", "content": "hi"}])
        ai_http.post.assert_not_called()


class TestAnthropicProvider:
    def test_system_prompt_is_sent_separately(self, ai_http, make_response):
        ai_http.post.return_value = make_response(
            200,
            {
                "model": "claude-3-5-sonnet-20241022",
                "content": [
                    {"type": "text", "text": "Polished "},
                    {"type": "text", "text": "rope chain."},
                ],
                "usage": {"input_tokens": 15, "output_tokens": 4},
            },
        )
        provider = AnthropicProvider(api_key="sk-ant-test", http=ai_http)

        response = provider.chat_with_system("You write copy.", "Describe a chain.")

        assert response.content == "Polished rope chain."
        assert response.total_tokens() == 19

        args, kwargs = ai_http.post.call_args
        assert args[0] == "https://api.anthropic.com/v1/messages"
        assert kwargs["headers"]["x-api-key"] == "sk-ant-test"
        assert kwargs["headers"]["anthropic-version"] == "2023-06-01"
        assert kwargs["json"]["system"] == "You write copy."
        assert kwargs["json"]["messages"] == [{"role": "user", "content": "Describe a chain."}]
        assert kwargs["json"]["max_tokens"] == 1024

    def test_sdk_base_url_variable_is_ignored(self, ai_http, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_BASE_URL", "http://127.0.0.1:48271")
        get_services_settings.cache_clear()

        provider = AnthropicProvider(api_key="sk-ant-test", http=ai_http)

        assert provider.base_url == "https://api.anthropic.com/v1"

    def test_api_url_override(self, ai_http, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_URL", "https://gateway.example.com/anthropic/v1/")
        get_services_settings.cache_clear()

        provider = AnthropicProvider(api_key="sk-ant-test", http=ai_http)

        assert provider.base_url == "https://gateway.example.com/anthropic/v1"

    def test_transport_error(self, ai_http):
        ai_http.post.side_effect = requests.ConnectionError("refused")
        provider = AnthropicProvider(api_key="sk-ant-test", http=ai_http)

        with pytest.raises(AIProviderError, match="refused"):
            provider.chat([{"role": "user", "content": "hi"}])


class TestAIManager:
    def test_prefers_default(self, stub_provider):
        openai, anthropic = stub_provider("openai"), stub_provider("anthropic")
        manager = AIManager(providers=[openai, anthropic], default="anthropic")

        assert manager.provider() is anthropic

    def test_falls_back_to_first_available(self, stub_provider):
        openai, anthropic = stub_provider("openai", available=False), stub_provider("anthropic")
        manager = AIManager(providers=[openai, anthropic], default="openai")

        manager.chat([{"role": "user", "content": "hi"}])

        assert anthropic.calls and not openai.calls

    def test_named_provider(self, stub_provider):
        openai, anthropic = stub_provider("openai"), stub_provider("anthropic")
        manager = AIManager(providers=[openai, anthropic], default="openai")

        manager.chat_with_system("sys", "user", provider="anthropic", temperature=0.1)

        assert anthropic.calls[0]["options"] == {"temperature": 0.1}

    def test_unknown_provider(self, stub_provider):
        manager = AIManager(providers=[stub_provider("openai")])

        with pytest.raises(AIProviderError, match="Unknown AI provider"):
            manager.provider("gemini")

    def test_nothing_available(self, stub_provider):
        manager = AIManager(providers=[stub_provider("openai", available=False)])

        assert not manager.is_available()
        with pytest.raises(AIProviderError, match="No AI provider is available"):
            manager.provider()
