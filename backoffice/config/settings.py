"""
Service credentials for marketplace, AI and search integrations.
Loads from .env file
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServicesSettings(BaseSettings):
    """Credentials and endpoints for external services"""

    # Encryption key for OAuth state and stored secrets (Fernet, urlsafe base64)
    app_key: Optional[str] = Field(default=None, alias="APP_KEY")

    # Shopify
    shopify_client_id: Optional[str] = Field(default=None, alias="SHOPIFY_CLIENT_ID")
    shopify_client_secret: Optional[str] = Field(default=None, alias="SHOPIFY_CLIENT_SECRET")
    shopify_api_version: str = Field(default="2024-01", alias="SHOPIFY_API_VERSION")

    # eBay
    ebay_client_id: Optional[str] = Field(default=None, alias="EBAY_CLIENT_ID")
    ebay_client_secret: Optional[str] = Field(default=None, alias="EBAY_CLIENT_SECRET")
    ebay_redirect_uri: Optional[str] = Field(default=None, alias="EBAY_REDIRECT_URI")
    ebay_sandbox: bool = Field(default=False, alias="EBAY_SANDBOX")

    # Etsy
    etsy_keystring: Optional[str] = Field(default=None, alias="ETSY_KEYSTRING")
    etsy_redirect_uri: Optional[str] = Field(default=None, alias="ETSY_REDIRECT_URI")

    # Amazon Selling Partner API
    amazon_app_id: Optional[str] = Field(default=None, alias="AMAZON_APP_ID")
    amazon_client_id: Optional[str] = Field(default=None, alias="AMAZON_CLIENT_ID")
    amazon_client_secret: Optional[str] = Field(default=None, alias="AMAZON_CLIENT_SECRET")
    amazon_aws_account_id: Optional[str] = Field(default=None, alias="AMAZON_AWS_ACCOUNT_ID")
    amazon_aws_region: str = Field(default="us-east-1", alias="AMAZON_AWS_REGION")

    # Walmart (credentials are per connection)
    walmart_api_url: str = Field(
        default="https://marketplace.walmartapis.com", alias="WALMART_API_URL"
    )

    # AI providers
    ai_default_provider: str = Field(default="openai", alias="AI_DEFAULT_PROVIDER")
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_API_URL")
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    anthropic_model: str = Field(default="claude-3-5-sonnet-latest", alias="ANTHROPIC_MODEL")
    # Not the SDK variables (OPENAI_BASE_URL, ANTHROPIC_BASE_URL), which differ on the /v1 suffix
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com/v1", alias="ANTHROPIC_API_URL"
    )
    ai_timeout_seconds: int = Field(default=60, alias="AI_TIMEOUT_SECONDS")

    # SerpAPI
    serpapi_base_url: str = Field(
        default="https://serpapi.com/search.json", alias="SERPAPI_BASE_URL"
    )

    # Outbound HTTP
    http_timeout_seconds: int = Field(default=30, alias="HTTP_TIMEOUT_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",  # Ignore extra fields in .env file
        populate_by_name=True,
    )


@lru_cache()
def get_services_settings() -> ServicesSettings:
    """Get cached settings instance"""
    return ServicesSettings()
