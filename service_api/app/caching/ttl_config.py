"""
Per-endpoint response cache TTLs (seconds).
"""

from typing import Dict, Optional

DEFAULT_TTL = 300
MAX_TTL = 3600

# ``{...}`` segments match any single path segment
ENDPOINT_TTLS: Dict[str, int] = {
    "/api/health": 60,
    "/api/docs": 3600,
    "/api/profile": 900,
    "/api/profile/{id}": 600,
    "/api/organization": 1800,
    "/api/organization/{id}": 1200,
    "/api/event": 300,
    "/api/event/{id}": 600,
    "/api/budget": 900,
    "/api/budget/{id}": 1200,
    "/api/admin/permissions": 300,
    "/api/admin/users": 180,
    "/api/admin/analytics": 120,
    "/api/document": 1800,
    "/api/document/{id}": 3600,
}


def _matches(pattern: str, path: str) -> bool:
    pattern_parts = pattern.strip("/").split("/")
    path_parts = path.strip("/").split("/")
    if len(pattern_parts) != len(path_parts):
        return False
    return all(
        expected.startswith("{") or expected == actual
        for expected, actual in zip(pattern_parts, path_parts)
    )


def resolve_ttl(
    path: str,
    override: Optional[int] = None,
    default_ttl: int = DEFAULT_TTL,
    max_ttl: int = MAX_TTL,
    table: Optional[Dict[str, int]] = None,
) -> int:
    """TTL for ``path``: exact match, then pattern match, then default; clamped to ``max_ttl``."""
    table = ENDPOINT_TTLS if table is None else table
    if override is not None:
        ttl = override
    elif path in table:
        ttl = table[path]
    else:
        ttl = next((value for pattern, value in table.items() if _matches(pattern, path)), default_ttl)
    return min(ttl, max_ttl)
