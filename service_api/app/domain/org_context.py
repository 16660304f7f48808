"""
Organizational context loader.

Every authenticated principal must resolve to exactly one organization; the
result is attached to the request and never cached across requests.
"""

from typing import Any, Callable, Dict, Optional

from fastapi import Request

from shared.errors import APIError, AuthorizationError, ErrorCode, NotFoundError
from shared.logging import get_logger, set_user_context
from ..adapters.supabase_client import SupabaseDataClient
from ..auth.principal import Principal
from .context import RequestContext, get_context

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")
ORG_SCOPED_METHODS = ("POST", "PUT", "PATCH")


class OrgContextLoader:
    """Loads ``org_id``, role and profile for a principal."""

    def __init__(self, data_client: SupabaseDataClient):
        self.data_client = data_client
        self.logger = get_logger("api.org_context")

    async def load(self, principal: Principal) -> RequestContext:
        if principal.is_api_key:
            context = await self._load_for_api_key(principal)
        elif principal.is_user:
            context = await self._load_for_user(principal)
        else:
            return RequestContext(principal=principal)

        set_user_context(user_id=principal.user_id, org_id=context.org_id, principal_type=principal.type.value)
        return context

    async def _load_for_user(self, principal: Principal) -> RequestContext:
        try:
            profile = await self.data_client.get_profile(principal.user_id)
        except APIError as e:
            self.logger.error("Error fetching user profile", user_id=principal.user_id, error=e.message)
            raise APIError(ErrorCode.DATABASE_ERROR, "Error fetching user profile") from e

        if profile is None:
            self.logger.warning("No profile found for user", user_id=principal.user_id)
            raise NotFoundError(message="User profile not found")

        org_id = profile.get("org_id")
        if not org_id:
            self.logger.warning("User has no organization", user_id=principal.user_id)
            raise AuthorizationError(message="User not associated with any organization")

        organization = await self.data_client.get_organization(org_id)
        return RequestContext(
            principal=principal,
            org_id=org_id,
            role=profile.get("role"),
            profile=profile,
            organization=organization,
        )

    async def _load_for_api_key(self, principal: Principal) -> RequestContext:
        org_id = principal.api_key.org_id
        if not org_id:
            self.logger.warning("API key has no organization", key_id=principal.api_key.key_id)
            raise AuthorizationError(message="API key not associated with any organization")

        organization = await self.data_client.get_organization(org_id)
        return RequestContext(principal=principal, org_id=org_id, organization=organization)


async def scoped_body(request: Request, context: RequestContext) -> Dict[str, Any]:
    """JSON body of a write request with ``org_id`` forced to the caller's organization."""
    body = await request.json() if await request.body() else {}
    if not isinstance(body, dict):
        raise APIError(ErrorCode.VALIDATION_ERROR, "Request body must be a JSON object")
    if context.org_id and request.method in ORG_SCOPED_METHODS:
        body["org_id"] = context.org_id
    return body


def validate_organizational_access(field: str = "org_id") -> Callable:
    """Reject requests that name another organization in ``field``."""

    async def dependency(request: Request) -> None:
        context = get_context(request)
        if not context.org_id:
            raise AuthorizationError(message="User organization context missing")

        body: Dict[str, Any] = {}
        if request.method in ORG_SCOPED_METHODS and await request.body():
            payload = await request.json()
            body = payload if isinstance(payload, dict) else {}

        resource_org_id: Optional[str] = (
            body.get(field) or request.path_params.get(field) or request.query_params.get(field)
        )
        if resource_org_id and resource_org_id != context.org_id:
            get_logger("api.org_context").warning(
                "Organizational access denied",
                resource_org_id=resource_org_id,
            )
            raise AuthorizationError(message="Access denied: Resource belongs to different organization")

    return dependency


class SubscriptionGuard:
    """Requires an active or trialing subscription for the caller's organization."""

    def __init__(self, data_client: SupabaseDataClient):
        self.data_client = data_client
        self.logger = get_logger("api.subscription")

    async def __call__(self, request: Request) -> None:
        context = get_context(request)
        subscription = await self.data_client.get_subscription(context.org_id) if context.org_id else None
        status = (subscription or {}).get("status")
        if status not in ACTIVE_SUBSCRIPTION_STATUSES:
            self.logger.info("Subscription required", status=status)
            raise APIError(
                ErrorCode.SUBSCRIPTION_REQUIRED,
                "An active subscription is required",
                details={"status": status},
            )
