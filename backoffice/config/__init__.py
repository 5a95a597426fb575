"""
Configuration
Third-party service credentials loaded from the environment.
"""

from .settings import ServicesSettings, get_services_settings

__all__ = [
    "ServicesSettings",
    "get_services_settings",
]
