"""
Request-scoped context produced by the gating pipeline.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request

from shared.errors import AuthenticationError
from ..auth.principal import Principal


@dataclass
class RequestContext:
    """Who is calling and on behalf of which organization.

    Lives on ``request.state.context`` and is never reused across requests.
    """

    principal: Principal
    org_id: Optional[str] = None
    role: Optional[str] = None
    profile: Optional[Dict[str, Any]] = None
    organization: Optional[Dict[str, Any]] = None
    tier: Optional[str] = None
    rate_limit: Optional[Any] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.principal.user_id

    @property
    def role_or_tier(self) -> str:
        """Permission-relevant discriminator used in cache keys."""
        if self.role:
            return self.role
        if self.principal.is_api_key:
            return self.principal.api_key.rate_limit_tier
        return "guest"


def get_context(request: Request) -> RequestContext:
    """Return the context of an authenticated route."""
    context = getattr(request.state, "context", None)
    if context is None:
        raise AuthenticationError()
    return context
