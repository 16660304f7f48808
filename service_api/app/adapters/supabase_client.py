"""
Supabase data client for the API service.

The supabase-py SDK is synchronous; every call is pushed to a worker thread
so the event loop never blocks on the datastore.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from supabase import Client, PostgrestAPIError, create_client

from shared.errors import DatabaseError, ServiceUnavailableError
from shared.logging import get_logger

PROFILE_COLUMNS = "id, org_id, role, first_name, last_name, email"
API_KEY_COLUMNS = (
    "id, key_id, name, description, org_id, created_by, permissions, "
    "rate_limit_tier, is_active, last_used_at, expires_at, created_at"
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first(rows: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    return rows[0] if rows else None


class SupabaseDataClient:
    """Query-builder access to profiles, organizations, keys and permissions."""

    def __init__(self, client: Client, auth_timeout: float = 5.0):
        self.client = client
        self.auth_timeout = auth_timeout
        self.logger = get_logger("api.supabase")

    @classmethod
    def from_settings(cls, url: str, service_role_key: str, auth_timeout: float = 5.0) -> "SupabaseDataClient":
        """Create a client from the service role credentials."""
        return cls(create_client(url, service_role_key), auth_timeout=auth_timeout)

    async def _execute(self, operation: str, query: Callable[[], Any]) -> List[Dict[str, Any]]:
        """Run a blocking query and normalize provider failures."""
        try:
            response = await asyncio.to_thread(query)
        except PostgrestAPIError as e:
            self.logger.error(
                "Supabase query failed",
                operation=operation,
                code=e.code,
                error=e.message,
            )
            raise DatabaseError(
                message=f"Database operation failed: {operation}",
                pg_code=e.code,
                details={"operation": operation},
            ) from e
        except (httpx.TransportError, ConnectionError) as e:
            self.logger.error("Supabase unreachable", operation=operation, error=str(e))
            raise ServiceUnavailableError(
                message="Datastore unavailable",
                details={"operation": operation},
            ) from e
        return response.data or []

    # Identity

    async def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Resolve a bearer token to the identity provider's user record."""
        response = await asyncio.wait_for(
            asyncio.to_thread(self.client.auth.get_user, token),
            timeout=self.auth_timeout,
        )
        user = getattr(response, "user", None)
        if user is None:
            return None
        return {
            "id": user.id,
            "email": getattr(user, "email", None),
            "user_metadata": getattr(user, "user_metadata", None) or {},
        }

    # Profiles and organizations

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._execute(
            "get_profile",
            lambda: self.client.table("profiles").select(PROFILE_COLUMNS).eq("id", user_id).limit(1).execute(),
        )
        return _first(rows)

    async def get_organization(self, org_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._execute(
            "get_organization",
            lambda: self.client.table("organizations").select("*").eq("id", org_id).limit(1).execute(),
        )
        return _first(rows)

    async def get_subscription(self, org_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._execute(
            "get_subscription",
            lambda: (
                self.client.table("subscriptions")
                .select("id, status, plan, current_period_end")
                .eq("org_id", org_id)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            ),
        )
        return _first(rows)

    async def list_org_profiles(self, org_id: str) -> List[Dict[str, Any]]:
        rows = await self._execute(
            "list_org_profiles",
            lambda: self.client.table("profiles").select(PROFILE_COLUMNS).eq("org_id", org_id).execute(),
        )
        for row in rows:
            names = [row.get("first_name"), row.get("last_name")]
            row["full_name"] = " ".join(name for name in names if name) or None
        return rows

    async def delete_profile(self, user_id: str, org_id: str) -> bool:
        rows = await self._execute(
            "delete_profile",
            lambda: self.client.table("profiles").delete().eq("id", user_id).eq("org_id", org_id).execute(),
        )
        return bool(rows)

    # API keys

    async def get_active_api_key(self, key_id: str, key_hash: str) -> Optional[Dict[str, Any]]:
        rows = await self._execute(
            "get_active_api_key",
            lambda: (
                self.client.table("api_keys")
                .select(API_KEY_COLUMNS)
                .eq("key_id", key_id)
                .eq("key_hash", key_hash)
                .eq("is_active", True)
                .limit(1)
                .execute()
            ),
        )
        return _first(rows)

    async def touch_api_key(self, api_key_row_id: str) -> None:
        await self._execute(
            "touch_api_key",
            lambda: (
                self.client.table("api_keys")
                .update({"last_used_at": utc_now_iso()})
                .eq("id", api_key_row_id)
                .execute()
            ),
        )

    async def record_api_key_usage(self, usage: Dict[str, Any]) -> None:
        record = {**usage, "created_at": usage.get("created_at") or utc_now_iso()}
        await self._execute(
            "record_api_key_usage",
            lambda: self.client.table("api_key_usage").insert(record).execute(),
        )

    async def list_api_keys(self, org_id: str) -> List[Dict[str, Any]]:
        return await self._execute(
            "list_api_keys",
            lambda: (
                self.client.table("api_keys")
                .select(API_KEY_COLUMNS)
                .eq("org_id", org_id)
                .order("created_at", desc=True)
                .execute()
            ),
        )

    async def create_api_key(self, row: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self._execute(
            "create_api_key",
            lambda: self.client.table("api_keys").insert(row).execute(),
        )
        return _first(rows) or row

    async def deactivate_api_key(self, api_key_row_id: str, org_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._execute(
            "deactivate_api_key",
            lambda: (
                self.client.table("api_keys")
                .update({"is_active": False, "updated_at": utc_now_iso()})
                .eq("id", api_key_row_id)
                .eq("org_id", org_id)
                .execute()
            ),
        )
        return _first(rows)

    async def get_api_key_usage(self, api_key_row_id: str, since: str) -> List[Dict[str, Any]]:
        return await self._execute(
            "get_api_key_usage",
            lambda: (
                self.client.table("api_key_usage")
                .select("endpoint, method, status_code, response_time_ms, created_at")
                .eq("api_key_id", api_key_row_id)
                .gte("created_at", since)
                .execute()
            ),
        )

    # Organization permissions

    async def get_permission_override(self, org_id: str, permission_key: str) -> Optional[Dict[str, Any]]:
        rows = await self._execute(
            "get_permission_override",
            lambda: (
                self.client.table("organization_permissions")
                .select("*")
                .eq("org_id", org_id)
                .eq("permission_key", permission_key)
                .limit(1)
                .execute()
            ),
        )
        return _first(rows)

    async def get_permission_template(self, permission_key: str) -> Optional[Dict[str, Any]]:
        rows = await self._execute(
            "get_permission_template",
            lambda: (
                self.client.table("organization_permission_templates")
                .select("*")
                .eq("permission_key", permission_key)
                .limit(1)
                .execute()
            ),
        )
        return _first(rows)

    async def list_permission_templates(self) -> List[Dict[str, Any]]:
        return await self._execute(
            "list_permission_templates",
            lambda: (
                self.client.table("organization_permission_templates")
                .select("*")
                .order("module_name")
                .order("permission_name")
                .execute()
            ),
        )

    async def list_permission_overrides(self, org_id: str) -> List[Dict[str, Any]]:
        return await self._execute(
            "list_permission_overrides",
            lambda: self.client.table("organization_permissions").select("*").eq("org_id", org_id).execute(),
        )

    async def upsert_permission_overrides(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return await self._execute(
            "upsert_permission_overrides",
            lambda: (
                self.client.table("organization_permissions")
                .upsert(rows, on_conflict="org_id,permission_key")
                .execute()
            ),
        )
