"""
Description Generator
AI-written product descriptions and titles tuned per marketplace.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..db.models import Product
from .base import AIResponse
from .manager import AIManager

logger = logging.getLogger(__name__)

LENGTH_GUIDELINES = {
    "short": "50-100 words",
    "medium": "150-250 words",
    "long": "300-500 words",
}

TONE_GUIDELINES = {
    "professional": "professional and informative",
    "casual": "friendly and conversational",
    "luxury": "sophisticated and premium",
    "technical": "detailed and specification-focused",
}

PLATFORM_GUIDELINES = {
    "amazon": (
        "- Format for Amazon: Use HTML formatting where appropriate (<b>, <br>, <ul>/<li>)\n"
        "- Include relevant search terms\n"
        "- Focus on A9 algorithm optimization"
    ),
    "ebay": (
        "- Format for eBay: Use clean HTML formatting\n"
        "- Include item specifics and condition details\n"
        "- Emphasize trust signals and quality"
    ),
    "etsy": (
        "- Format for Etsy: Emphasize handmade/unique aspects\n"
        "- Use storytelling to connect with buyers\n"
        "- Include materials and process details"
    ),
    "shopify": (
        "- Format for Shopify: Use clean, semantic formatting\n"
        "- Focus on brand story and value proposition"
    ),
    "woocommerce": (
        "- Format for WooCommerce: Use simple HTML paragraphs and lists\n"
        "- Keep the opening sentence suitable as a short description"
    ),
    "walmart": (
        "- Format for Walmart: Focus on value and quality\n"
        "- Include product specifications\n"
        "- Keep language family-friendly"
    ),
}

# Marketplace title length limits
TITLE_LIMITS = {
    "amazon": 200,
    "ebay": 80,
    "etsy": 140,
    "shopify": 255,
    "woocommerce": 200,
    "walmart": 200,
}
DEFAULT_TITLE_LIMIT = 150


@dataclass
class ListingSuggestion:
    """Generated content offered as a replacement for a product field."""

    type: str
    platform: Optional[str]
    original: Optional[str]
    suggested: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class DescriptionGenerator:
    def __init__(self, ai: Optional[AIManager] = None):
        self.ai = ai or AIManager()

    def generate(
        self,
        product: Product,
        platform: Optional[str] = None,
        tone: str = "professional",
        length: str = "medium",
    ) -> ListingSuggestion:
        response = self.ai.chat_with_system(
            self.build_system_prompt(platform, tone, length),
            self.build_user_prompt(product),
            feature="description_generation",
            temperature=0.7,
        )

        logger.info(
            f"Generated description for product {product.id}",
            extra={"platform": platform, "tokens": response.total_tokens()},
        )
        return ListingSuggestion(
            type="description",
            platform=platform,
            original=product.description,
            suggested=response.content.strip(),
            metadata={"tone": tone, "length": length, **usage(response)},
        )

    def generate_title(self, product: Product, platform: Optional[str] = None) -> ListingSuggestion:
        response = self.ai.chat_with_system(
            self.build_title_system_prompt(platform),
            self.build_title_user_prompt(product, platform),
            feature="title_generation",
            temperature=0.6,
            max_tokens=256,
        )

        suggested = response.content.strip().strip('"')
        limit = TITLE_LIMITS.get(platform or "", DEFAULT_TITLE_LIMIT)
        return ListingSuggestion(
            type="title",
            platform=platform,
            original=product.title,
            suggested=suggested[:limit],
            metadata=usage(response),
        )

    def build_system_prompt(self, platform: Optional[str], tone: str, length: str) -> str:
        lines = [
            "You are an expert e-commerce copywriter specializing in creating compelling "
            "product descriptions that drive sales.",
            "",
            "Guidelines:",
            f"- Write in a {TONE_GUIDELINES.get(tone, TONE_GUIDELINES['professional'])} tone",
            f"- Target length: {LENGTH_GUIDELINES.get(length, LENGTH_GUIDELINES['medium'])}",
            "- Focus on benefits, not just features",
            "- Include relevant keywords naturally for SEO",
            "- Avoid hyperbole and unsubstantiated claims",
        ]
        if platform in PLATFORM_GUIDELINES:
            lines.append(PLATFORM_GUIDELINES[platform])
        lines += ["", "Respond with only the product description, no additional commentary."]
        return "\n".join(lines)

    def build_user_prompt(self, product: Product) -> str:
        lines = [
            "Write a compelling product description for the following product:",
            "",
            f"Title: {product.title}",
        ]
        if product.brand:
            lines.append(f"Brand: {product.brand}")
        if product.category_name:
            lines.append(f"Category: {product.category_name}")
        if product.condition:
            lines.append(f"Condition: {product.condition}")
        if product.description:
            lines.append(f"Current Description: {product.description}")

        variant = product.first_variant
        if variant is not None:
            lines.append(f"Price: ${variant.price}")
            lines.append(f"SKU: {variant.sku}")

        return "\n".join(lines)

    def build_title_system_prompt(self, platform: Optional[str]) -> str:
        limit = TITLE_LIMITS.get(platform or "", DEFAULT_TITLE_LIMIT)
        return "\n".join(
            [
                "You are an expert at creating SEO-optimized product titles for e-commerce platforms.",
                "",
                "Guidelines:",
                f"- Maximum {limit} characters",
                "- Include key product attributes (brand, model, size, color, etc.)",
                "- Front-load important keywords",
                "- Avoid all caps and excessive punctuation",
                "- Do not include price or promotional language",
                "",
                "Respond with only the product title, no additional commentary.",
            ]
        )

    def build_title_user_prompt(self, product: Product, platform: Optional[str]) -> str:
        lines = ["Create an optimized product title for:", "", f"Current Title: {product.title}"]
        if product.brand:
            lines.append(f"Brand: {product.brand}")
        if product.category_name:
            lines.append(f"Category: {product.category_name}")

        variant = product.first_variant
        if variant is not None:
            options = [o for o in (variant.option1, variant.option2, variant.option3) if o]
            if options:
                lines.append(f"Variant Options: {', '.join(options)}")

        if platform:
            lines += ["", f"Target Platform: {platform}"]
        return "\n".join(lines)


def usage(response: AIResponse) -> Dict[str, Any]:
    return {
        "tokens_used": response.total_tokens(),
        "model": response.model,
        "provider": response.provider,
    }
