"""
Payload encryption for OAuth state and stored secrets.

Uses Fernet symmetric encryption keyed by ``APP_KEY``.
"""

import json
import logging
from typing import Any, Dict, Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from .config import get_services_settings

logger = logging.getLogger(__name__)


class InvalidStateError(Exception):
    """Raised when an encrypted payload cannot be decrypted or has expired."""

    pass


class MissingAppKeyError(Exception):
    """Raised when encryption is requested without an APP_KEY configured."""

    pass


def _fernet(key: Optional[Union[str, bytes]] = None) -> Fernet:
    key = key or get_services_settings().app_key
    if not key:
        raise MissingAppKeyError(
            "APP_KEY is not configured. Generate one with Fernet.generate_key()."
        )
    if isinstance(key, str):
        key = key.encode()
    return Fernet(key)


def encrypt_value(value: str, key: Optional[Union[str, bytes]] = None) -> str:
    """Encrypt a string and return the urlsafe token."""
    return _fernet(key).encrypt(value.encode()).decode()


def decrypt_value(
    token: str, key: Optional[Union[str, bytes]] = None, ttl: Optional[int] = None
) -> str:
    """
    Decrypt a token produced by :func:`encrypt_value`.

    Args:
        token: Encrypted token
        key: Fernet key (defaults to APP_KEY)
        ttl: Maximum token age in seconds

    Raises:
        InvalidStateError: If the token is malformed, tampered with or expired
    """
    try:
        return _fernet(key).decrypt(token.encode(), ttl=ttl).decode()
    except InvalidToken as e:
        raise InvalidStateError("Encrypted payload is invalid or expired") from e


def encrypt_payload(payload: Dict[str, Any], key: Optional[Union[str, bytes]] = None) -> str:
    return encrypt_value(json.dumps(payload, sort_keys=True), key=key)


def decrypt_payload(
    token: str, key: Optional[Union[str, bytes]] = None, ttl: Optional[int] = None
) -> Dict[str, Any]:
    data = decrypt_value(token, key=key, ttl=ttl)
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise InvalidStateError("Encrypted payload is not valid JSON") from e
    if not isinstance(payload, dict):
        raise InvalidStateError("Encrypted payload is not an object")
    return payload
