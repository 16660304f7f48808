"""
Authenticated actors.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class PrincipalType(str, Enum):
    USER = "user"
    API_KEY = "api_key"
    ANONYMOUS = "anonymous"


@dataclass
class ApiKeyContext:
    """Metadata of a verified API key."""

    id: str
    key_id: str
    name: str
    org_id: Optional[str]
    permissions: Dict[str, Any] = field(default_factory=dict)
    rate_limit_tier: str = "standard"
    created_by: Optional[str] = None
    expires_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ApiKeyContext":
        return cls(
            id=row["id"],
            key_id=row["key_id"],
            name=row.get("name") or row["key_id"],
            org_id=row.get("org_id"),
            permissions=row.get("permissions") or {},
            rate_limit_tier=row.get("rate_limit_tier") or "standard",
            created_by=row.get("created_by"),
            expires_at=row.get("expires_at"),
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "key_id": self.key_id,
            "name": self.name,
            "permissions": sorted(name for name, granted in self.permissions.items() if granted),
            "rate_limit_tier": self.rate_limit_tier,
            "expires_at": self.expires_at,
        }


@dataclass
class Principal:
    """Exactly one of: user, API key, anonymous."""

    type: PrincipalType
    user_id: Optional[str] = None
    email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    api_key: Optional[ApiKeyContext] = None

    @classmethod
    def anonymous(cls) -> "Principal":
        return cls(type=PrincipalType.ANONYMOUS)

    @classmethod
    def for_user(cls, user: Dict[str, Any]) -> "Principal":
        return cls(
            type=PrincipalType.USER,
            user_id=user["id"],
            email=user.get("email"),
            metadata=user.get("user_metadata") or {},
        )

    @classmethod
    def for_api_key(cls, api_key: ApiKeyContext) -> "Principal":
        return cls(type=PrincipalType.API_KEY, api_key=api_key)

    @property
    def is_authenticated(self) -> bool:
        return self.type != PrincipalType.ANONYMOUS

    @property
    def is_user(self) -> bool:
        return self.type == PrincipalType.USER

    @property
    def is_api_key(self) -> bool:
        return self.type == PrincipalType.API_KEY

    @property
    def principal_id(self) -> Optional[str]:
        """User id for users, public key id for API keys."""
        if self.is_api_key:
            return self.api_key.key_id
        return self.user_id
