"""
Request body models for the API service.
"""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

OverrideRole = Literal["volunteer", "committee_lead", "board_member", "admin"]
RateLimitTier = Literal["free", "standard", "premium", "enterprise"]


class PermissionOverrideUpdate(BaseModel):
    """Organization override of one permission template."""
    min_role_required: OverrideRole = Field(..., description="Minimum role for the permission")
    specific_users: List[str] = Field(default_factory=list, description="Users always allowed")
    is_enabled: bool = Field(True, description="Disabled permissions deny everyone")


class PermissionOverrideItem(PermissionOverrideUpdate):
    permission_key: str = Field(..., min_length=1)


class BulkPermissionUpdate(BaseModel):
    updates: List[PermissionOverrideItem] = Field(..., min_length=1)


class ApiKeyCreate(BaseModel):
    """New API key for the caller's organization."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    permissions: Dict[str, bool] = Field(default_factory=dict)
    rate_limit_tier: RateLimitTier = "standard"
    expires_in_days: Optional[int] = Field(None, ge=1, le=3650)


class CacheClearRequest(BaseModel):
    """Invalidation target; with no field set the whole cache is cleared."""
    pattern: Optional[str] = None
    org_id: Optional[str] = None
    user_id: Optional[str] = None
    endpoint: Optional[str] = None


class RateLimitClearRequest(BaseModel):
    identity_type: Literal["api_key", "user", "ip"]
    identity: str = Field(..., min_length=1)
    tier: Optional[RateLimitTier] = None
