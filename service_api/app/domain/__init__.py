"""
Domain utilities for the API service.

Organization scoping and permission evaluation: the stages of the pipeline
that decide *who* the caller acts for and *what* they may do.
"""

from .context import RequestContext, get_context
from .org_context import OrgContextLoader, SubscriptionGuard, scoped_body, validate_organizational_access
from .permissions import (
    OVERRIDE_ROLES,
    ROLE_LEVELS,
    PermissionEvaluator,
    PermissionRule,
    require_admin,
    require_any_role,
    require_exact_role,
    require_min_role,
    require_ownership_or_role,
    require_resource_ownership,
    role_level,
)

__all__ = [
    "OVERRIDE_ROLES",
    "ROLE_LEVELS",
    "OrgContextLoader",
    "PermissionEvaluator",
    "PermissionRule",
    "RequestContext",
    "SubscriptionGuard",
    "get_context",
    "require_admin",
    "require_any_role",
    "require_exact_role",
    "require_min_role",
    "require_ownership_or_role",
    "require_resource_ownership",
    "role_level",
    "scoped_body",
    "validate_organizational_access",
]
