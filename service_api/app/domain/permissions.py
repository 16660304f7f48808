"""
Permission evaluation.

Two mechanisms are layered:

- a static role hierarchy used by the ``require_*_role`` guards;
- per-organization permission overrides keyed by ``(org_id, permission_key)``
  that replace the global template's default minimum role.

The override is consulted first and the template only when the override is
absent; the two are never merged. A query failure is a 500, never an allow.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from fastapi import Request

from shared.errors import APIError, AuthorizationError, ErrorCode
from shared.logging import get_logger
from ..adapters.supabase_client import SupabaseDataClient
from ..ratelimit.tiers import TIER_LEVELS
from .context import RequestContext, get_context

ROLE_LEVELS: Dict[str, int] = {
    "admin": 5,
    "board_member": 4,
    "committee_lead": 3,
    "volunteer": 2,
    "parent_member": 1,
    "teacher": 1,
}

# Roles an organization may assign as a permission's minimum
OVERRIDE_ROLES = ("volunteer", "committee_lead", "board_member", "admin")

logger = get_logger("api.permissions")


def role_level(role: Optional[str]) -> int:
    """Hierarchy level of ``role``; unknown roles rank lowest."""
    return ROLE_LEVELS.get(role or "", 0)


def _insufficient(required: Any, current: Optional[str], message: str = "Insufficient permissions", **extra) -> APIError:
    return APIError(
        ErrorCode.INSUFFICIENT_PERMISSIONS,
        message,
        details={"required": required, "current": current, **extra},
    )


def _require_role(context: RequestContext) -> str:
    if not context.role:
        logger.warning("No user role in request context")
        raise AuthorizationError(message="User role not found in request context")
    return context.role


def require_min_role(min_role: str) -> Callable:
    """Pass iff the caller's level is at least ``min_role``'s level."""

    async def dependency(request: Request) -> None:
        role = _require_role(get_context(request))
        if role_level(role) < role_level(min_role):
            logger.warning("Role access denied", role=role, required=min_role)
            raise _insufficient(min_role, role)

    return dependency


def require_exact_role(exact_role: str) -> Callable:
    async def dependency(request: Request) -> None:
        role = _require_role(get_context(request))
        if role != exact_role:
            logger.warning("Role access denied", role=role, required=exact_role)
            raise _insufficient(exact_role, role)

    return dependency


def require_any_role(allowed_roles: Sequence[str]) -> Callable:
    allowed = list(allowed_roles)

    async def dependency(request: Request) -> None:
        role = _require_role(get_context(request))
        if role not in allowed:
            logger.warning("Role access denied", role=role, allowed=allowed)
            raise APIError(
                ErrorCode.INSUFFICIENT_PERMISSIONS,
                "Insufficient permissions",
                details={"allowed": allowed, "current": role},
            )

    return dependency


async def resource_owner_id(request: Request, owner_field: str) -> Optional[str]:
    """Owner id named by the request: path params, then query, then JSON body."""
    owner = request.path_params.get(owner_field) or request.query_params.get(owner_field)
    if owner:
        return owner
    if request.method in ("POST", "PUT", "PATCH", "DELETE") and await request.body():
        body = await request.json()
        if isinstance(body, dict):
            return body.get(owner_field)
    return None


def require_resource_ownership(owner_field: str = "created_by") -> Callable:
    """Pass when no owner is named or the caller is the owner."""

    async def dependency(request: Request) -> None:
        context = get_context(request)
        if not context.user_id:
            raise AuthorizationError(message="User context missing")

        owner = await resource_owner_id(request, owner_field)
        if owner and owner != context.user_id:
            logger.warning("Ownership access denied", owner=owner)
            raise AuthorizationError(message="Access denied: You can only access your own resources")

    return dependency


def require_ownership_or_role(owner_field: str = "created_by", min_role: str = "admin") -> Callable:
    """Owners may act on their own resources; others need ``min_role``."""

    async def dependency(request: Request) -> None:
        context = get_context(request)
        if not context.user_id or not context.role:
            raise AuthorizationError(message="User context missing")

        owner = await resource_owner_id(request, owner_field)
        if owner == context.user_id:
            return
        if role_level(context.role) >= role_level(min_role):
            return

        logger.warning("Ownership or role access denied", role=context.role, required=min_role)
        raise _insufficient(
            f"Own the resource or have role '{min_role}' or higher",
            context.role,
            message="Access denied: Insufficient permissions",
        )

    return dependency


require_admin = require_exact_role("admin")
require_board_member = require_min_role("board_member")
require_committee_lead = require_min_role("committee_lead")
require_volunteer = require_min_role("volunteer")


@dataclass
class PermissionRule:
    """Effective rule for one permission key in one organization."""

    permission_key: str
    min_role: str
    specific_users: List[str] = field(default_factory=list)
    is_enabled: bool = True
    source: str = "template"

    @classmethod
    def from_override(cls, row: Dict[str, Any]) -> "PermissionRule":
        return cls(
            permission_key=row["permission_key"],
            min_role=row["min_role_required"],
            specific_users=list(row.get("specific_users") or []),
            is_enabled=row.get("is_enabled", True) is not False,
            source="override",
        )

    @classmethod
    def from_template(cls, row: Dict[str, Any]) -> "PermissionRule":
        return cls(permission_key=row["permission_key"], min_role=row["default_min_role"])

    def allows(self, user_id: Optional[str], role: Optional[str]) -> bool:
        if not self.is_enabled:
            return False
        if user_id and user_id in self.specific_users:
            return True
        return role_level(role) >= role_level(self.min_role)


class PermissionEvaluator:
    """Two-tier lookup: organization override first, global template second."""

    def __init__(self, data_client: SupabaseDataClient):
        self.data_client = data_client
        self.logger = get_logger("api.permission_evaluator")

    async def rule_for(self, org_id: str, permission_key: str) -> Optional[PermissionRule]:
        override = await self.data_client.get_permission_override(org_id, permission_key)
        if override is not None:
            return PermissionRule.from_override(override)

        template = await self.data_client.get_permission_template(permission_key)
        if template is not None:
            return PermissionRule.from_template(template)
        return None

    async def check(self, context: RequestContext, permission_key: str) -> bool:
        """Decide one permission for the caller."""
        if context.principal.is_api_key:
            return bool(context.principal.api_key.permissions.get(permission_key))

        if not context.org_id:
            return False

        try:
            rule = await self.rule_for(context.org_id, permission_key)
        except APIError as e:
            self.logger.error("Permission check failed", permission=permission_key, error=e.message)
            raise APIError(
                ErrorCode.DATABASE_ERROR,
                "Permission check failed",
                details={"permission": permission_key},
            ) from e

        if rule is None:
            self.logger.warning("Unknown permission key", permission=permission_key)
            return False
        return rule.allows(context.user_id, context.role)

    def require(self, permission_key: str) -> Callable:
        """Dependency denying callers without ``permission_key``."""

        async def dependency(request: Request) -> None:
            context = get_context(request)
            if not await self.check(context, permission_key):
                self.logger.warning("Permission denied", permission=permission_key, role=context.role)
                raise APIError(
                    ErrorCode.INSUFFICIENT_PERMISSIONS,
                    f"Permission denied: {permission_key}",
                    details={"permission": permission_key, "current_role": context.role},
                )

        return dependency

    def require_all(self, permission_keys: Iterable[str], operator: str = "AND") -> Callable:
        """Combine several permissions with ``AND`` or ``OR``."""
        keys = list(permission_keys)
        operator = operator.upper()
        if operator not in ("AND", "OR"):
            raise ValueError(f"Unsupported operator: {operator}")

        async def dependency(request: Request) -> None:
            context = get_context(request)
            results = [await self.check(context, key) for key in keys]
            granted = all(results) if operator == "AND" else any(results)
            if not granted:
                self.logger.warning("Permissions denied", permissions=keys, operator=operator)
                raise APIError(
                    ErrorCode.INSUFFICIENT_PERMISSIONS,
                    "Insufficient permissions",
                    details={"permissions": keys, "operator": operator, "current_role": context.role},
                )

        return dependency

    async def effective_permissions(self, context: RequestContext) -> Dict[str, List[Dict[str, Any]]]:
        """Every template resolved for the caller, grouped by module."""
        templates = await self.data_client.list_permission_templates()
        overrides = {
            row["permission_key"]: row
            for row in await self.data_client.list_permission_overrides(context.org_id)
        }

        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for template in templates:
            key = template["permission_key"]
            if context.principal.is_api_key:
                allowed = bool(context.principal.api_key.permissions.get(key))
                rule = PermissionRule.from_template(template)
            else:
                override = overrides.get(key)
                rule = PermissionRule.from_override(override) if override else PermissionRule.from_template(template)
                allowed = rule.allows(context.user_id, context.role)

            grouped.setdefault(template.get("module_name") or "general", []).append({
                "permission_key": key,
                "permission_name": template.get("permission_name"),
                "min_role": rule.min_role,
                "source": rule.source,
                "allowed": allowed,
            })
        return grouped


def require_api_key(request: Request) -> None:
    """Only API-key principals may use the route."""
    context = getattr(request.state, "context", None)
    if context is None or not context.principal.is_api_key:
        raise APIError(ErrorCode.API_KEY_REQUIRED, "API key required for this endpoint")


def require_api_key_permission(permission: str) -> Callable:
    async def dependency(request: Request) -> None:
        require_api_key(request)
        api_key = get_context(request).principal.api_key
        if not api_key.permissions.get(permission):
            raise APIError(
                ErrorCode.INSUFFICIENT_PERMISSIONS,
                f"API key lacks required permission: {permission}",
                details={"required": permission, "current": sorted(k for k, v in api_key.permissions.items() if v)},
            )

    return dependency


def require_api_key_tier(min_tier: str) -> Callable:
    async def dependency(request: Request) -> None:
        require_api_key(request)
        tier = get_context(request).principal.api_key.rate_limit_tier
        if TIER_LEVELS.get(tier, 0) < TIER_LEVELS.get(min_tier, 0):
            raise APIError(
                ErrorCode.INSUFFICIENT_TIER,
                f"API key tier '{tier}' insufficient. Required: '{min_tier}'",
                details={"required": min_tier, "current": tier},
            )

    return dependency
