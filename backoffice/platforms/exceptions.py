"""
Platform integration errors.
"""

from typing import Optional

from fastapi import status

from ..api.errors import APIError


class PlatformAPIError(APIError):
    """A marketplace API call returned a non-2xx response or failed in transport."""

    def __init__(self, platform: str, status_code: Optional[int], body: str = ""):
        self.platform = platform
        self.upstream_status = status_code
        self.body = body or ""
        super().__init__(
            message=f"{platform} API error ({status_code}): {self.body[:500]}",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={
                "platform": platform,
                "status_code": status_code,
                "body": self.body[:500],
            },
        )


class UnsupportedPlatformError(APIError):
    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(
            message=f"Unsupported platform: {platform}",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"platform": platform},
        )

    def report(self) -> bool:
        return False


class PlatformNotConfiguredError(APIError):
    """Required credentials for a platform are missing from the environment."""

    def __init__(self, platform: str, missing: list):
        self.platform = platform
        self.missing = list(missing)
        super().__init__(
            message=(
                f"{platform} integration is not configured. "
                f"Missing environment variables: {', '.join(self.missing)}"
            ),
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"platform": platform, "missing": self.missing},
        )


class OAuthError(APIError):
    """OAuth handshake failed (token exchange, missing verifier, bad callback)."""

    def __init__(self, platform: str, message: str):
        self.platform = platform
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"platform": platform},
        )


class ListingSyncError(APIError):
    """A listing operation failed on the platform; the listing carries the error."""

    def __init__(self, listing_id: int, action: str, message: str):
        self.listing_id = listing_id
        self.action = action
        super().__init__(
            message=f"Failed to {action} listing {listing_id}: {message}",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"listing_id": listing_id, "action": action},
        )
