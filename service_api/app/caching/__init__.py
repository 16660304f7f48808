"""
Response caching package for the API service.

Cache-aside over GET responses with organization and permission scoped keys,
per-endpoint TTLs and explicit, coarse invalidation.
"""

from .response_cache import CachedResponse, ResponseCache, normalize_endpoint
from .ttl_config import ENDPOINT_TTLS, resolve_ttl

__all__ = ["CachedResponse", "ENDPOINT_TTLS", "ResponseCache", "normalize_endpoint", "resolve_ttl"]
