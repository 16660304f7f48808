"""
Authentication helpers for the API service.
"""

from .api_keys import generate_api_key, hash_secret, parse_api_key
from .principal import ApiKeyContext, Principal, PrincipalType
from .resolver import AuthResolver, client_ip

__all__ = [
    "ApiKeyContext",
    "AuthResolver",
    "Principal",
    "PrincipalType",
    "client_ip",
    "generate_api_key",
    "hash_secret",
    "parse_api_key",
]
