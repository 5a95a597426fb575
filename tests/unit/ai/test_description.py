"""
Tests for AI-written descriptions and titles.
"""

import pytest

from backoffice.ai import AIManager, DescriptionGenerator


@pytest.fixture
def make_generator(stub_provider):
    def factory(content: str):
        provider = stub_provider("openai", content=content)
        return DescriptionGenerator(AIManager(providers=[provider], default="openai")), provider

    return factory


class TestDescriptionGenerator:
    def test_generate_description(self, product, make_generator):
        generator, provider = make_generator("  Hand-finished 14K rope chain.  ")

        suggestion = generator.generate(product, platform="etsy", tone="luxury", length="short")

        assert suggestion.type == "description"
        assert suggestion.platform == "etsy"
        assert suggestion.original == "Solid 14K yellow gold rope chain."
        assert suggestion.suggested == "Hand-finished 14K rope chain."
        assert suggestion.metadata == {
            "tone": "luxury",
            "length": "short",
            "tokens_used": 0,
            "model": "openai-model",
            "provider": "openai",
        }

        system, user = (m["content"] for m in provider.calls[0]["messages"])
        assert "sophisticated and premium" in system
        assert "50-100 words" in system
        assert "Format for Etsy" in system
        assert "Title: 14K Gold Rope Chain" in user
        assert "SKU: ROPE-18" in user
        assert provider.calls[0]["options"]["feature"] == "description_generation"

    def test_unknown_tone_falls_back_to_professional(self, product, make_generator):
        generator, provider = make_generator("desc")

        generator.generate(product, tone="shouty", length="epic")

        system = provider.calls[0]["messages"][0]["content"]
        assert "professional and informative" in system
        assert "150-250 words" in system

    def test_title_is_unquoted_and_truncated_for_ebay(self, product, make_generator):
        generator, provider = make_generator('"' + "Solid 14K Yellow Gold Rope Chain " * 5 + '"')

        suggestion = generator.generate_title(product, platform="ebay")

        assert suggestion.type == "title"
        assert suggestion.original == "14K Gold Rope Chain"
        assert len(suggestion.suggested) == 80
        assert not suggestion.suggested.startswith('"')

        system, user = (m["content"] for m in provider.calls[0]["messages"])
        assert "Maximum 80 characters" in system
        assert "Variant Options: 18 inch" in user
        assert "Target Platform: ebay" in user

    def test_title_limit_without_platform(self, product, make_generator):
        generator, _ = make_generator("T" * 400)

        assert len(generator.generate_title(product).suggested) == 150
