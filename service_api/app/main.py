"""
PTO Connect API service.

Wires the request-gating pipeline (authentication, organization context,
rate limiting, response caching and permission guards) in front of the
profile, organization, administration and monitoring routes.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Query, Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.envelope import paginated
from shared.errors import NotFoundError, ServiceUnavailableError, ValidationError
from .adapters.supabase_client import SupabaseDataClient
from .auth.api_keys import generate_api_key
from .auth.resolver import AuthResolver
from .caching.response_cache import CachedResponse, ResponseCache
from .domain.context import get_context
from .domain.org_context import OrgContextLoader
from .domain.permissions import PermissionEvaluator, require_admin, require_min_role
from .models import (
    ApiKeyCreate,
    BulkPermissionUpdate,
    CacheClearRequest,
    PermissionOverrideUpdate,
    RateLimitClearRequest,
)
from .pipeline import AUTH_API_KEY, RequestPipeline, identify
from .ratelimit.fixed_window import FixedWindowRateLimiter
from .storage import KeyValueStore, build_store

ADMIN_TIER = "premium"
API_KEY_ADMIN_PERMISSION = "can_edit_user_roles"
USAGE_WINDOW = timedelta(hours=24)


class ApiService(BaseService):
    """API service implementation."""

    def __init__(
        self,
        data_client: Optional[SupabaseDataClient] = None,
        store: Optional[KeyValueStore] = None,
        counter_store: Optional[KeyValueStore] = None,
        **config_overrides,
    ):
        super().__init__("api", 8000, **config_overrides)

        self.data_client = data_client or SupabaseDataClient.from_settings(
            self.config.supabase_url,
            self.config.supabase_service_role_key,
            auth_timeout=self.config.supabase_auth_timeout_seconds,
        )
        # Counters get their own store so cache churn never evicts them
        self.store = store or build_store(self.config, self.metrics)
        self.counter_store = counter_store or build_store(
            self.config, self.metrics, max_entries=self.config.rate_limit_memory_max_entries
        )

        self.rate_limiter = FixedWindowRateLimiter(
            self.counter_store,
            self.tasks,
            violation_log_size=self.config.rate_limit_violation_log_size,
            skip_paths=self.config.rate_limit_skip_paths,
            metrics=self.metrics,
        )
        self.cache = ResponseCache(
            self.store,
            self.tasks,
            version=self.config.api_version,
            enabled=self.config.cache_enabled,
            default_ttl=self.config.cache_default_ttl,
            max_ttl=self.config.cache_max_ttl,
            metrics=self.metrics,
        )
        self.evaluator = PermissionEvaluator(self.data_client)
        self.pipeline = RequestPipeline(
            AuthResolver(self.data_client, self.tasks, self.metrics, trust_proxy=self.config.trust_proxy_headers),
            OrgContextLoader(self.data_client),
            self.rate_limiter,
            self.cache,
            rate_limit_enabled=self.config.rate_limit_enabled,
        )

        self.app.state.api_service = self

        @self.app.exception_handler(CachedResponse)
        async def cached_response_handler(request: Request, exc: CachedResponse):
            return JSONResponse(content=exc.envelope, status_code=200, headers=exc.headers)

        @self.app.on_event("shutdown")
        async def _close_stores():
            await self.store.close()
            await self.counter_store.close()

        self._setup_api_routes()

    async def _ping(self, store: KeyValueStore) -> str:
        try:
            healthy = await store.ping()
        except Exception as e:
            self.logger.error("Store health check failed", backend=store.kind, error=str(e))
            healthy = False
        return "ok" if healthy else "error"

    async def _check_dependencies(self) -> Dict[str, Any]:
        return {
            f"cache:{self.store.kind}": await self._ping(self.store),
            f"rate_limit:{self.counter_store.kind}": await self._ping(self.counter_store),
        }

    def _setup_api_routes(self):
        """Set up API routes."""
        self._setup_account_routes()
        self._setup_user_admin_routes()
        self._setup_permission_admin_routes()
        self._setup_api_key_routes()
        self._setup_monitoring_routes()

    def _setup_account_routes(self):
        gate = self.pipeline.gate

        @self.app.get("/api/profile", dependencies=gate(cache=True))
        async def get_profile(request: Request):
            """Caller's own profile."""
            context = get_context(request)
            if context.profile is None:
                raise NotFoundError(message="User profile not found")
            return context.profile

        @self.app.get("/api/organization", dependencies=gate(cache=True))
        async def get_organization(request: Request):
            """Caller's organization."""
            context = get_context(request)
            if context.organization is None:
                raise NotFoundError(message="Organization not found")
            return context.organization

        @self.app.get("/api/permissions/me", dependencies=gate())
        async def get_my_permissions(request: Request):
            """Every permission resolved for the caller, grouped by module."""
            context = get_context(request)
            return {
                "role": context.role,
                "org_id": context.org_id,
                "permissions": await self.evaluator.effective_permissions(context),
            }

        @self.app.get("/api/api-key", dependencies=gate(auth=AUTH_API_KEY))
        async def get_api_key_info(request: Request):
            """Introspection for the calling API key."""
            context = get_context(request)
            info = context.principal.api_key.describe()
            info["organization"] = (context.organization or {}).get("name")
            return info

    def _setup_user_admin_routes(self):
        gate = self.pipeline.gate

        @self.app.get("/api/admin/users", dependencies=gate(require_admin, tier=ADMIN_TIER, cache=True))
        async def list_users(
            request: Request,
            page: int = Query(1, ge=1),
            limit: int = Query(20, ge=1, le=100),
        ):
            """Profiles of the caller's organization."""
            context = get_context(request)
            users = await self.data_client.list_org_profiles(context.org_id)
            start = (page - 1) * limit
            return paginated(users[start:start + limit], page=page, limit=limit, total=len(users))

        @self.app.delete(
            "/api/admin/users/{user_id}",
            dependencies=gate(require_min_role("admin"), tier=ADMIN_TIER),
        )
        async def delete_user(request: Request, user_id: str):
            """Remove a member of the caller's organization."""
            context = get_context(request)
            if user_id == context.user_id:
                raise ValidationError(message="Cannot delete your own account", field="user_id")

            if not await self.data_client.delete_profile(user_id, context.org_id):
                raise NotFoundError(message="User not found")

            await self.cache.invalidate_user(user_id)
            await self.cache.invalidate_org(context.org_id)
            self.logger.info("User deleted", deleted_user_id=user_id)
            return {"message": "User deleted successfully", "user_id": user_id}

    def _setup_permission_admin_routes(self):
        gate = self.pipeline.gate
        admin = gate(require_admin, tier=ADMIN_TIER)

        @self.app.get("/api/admin/organization-permissions/templates", dependencies=admin)
        async def list_permission_templates():
            """Global permission templates."""
            return await self.data_client.list_permission_templates()

        @self.app.get("/api/admin/organization-permissions", dependencies=admin)
        async def list_organization_permissions(request: Request):
            """Templates merged with the organization's overrides."""
            context = get_context(request)
            templates = await self.data_client.list_permission_templates()
            overrides = {
                row["permission_key"]: row
                for row in await self.data_client.list_permission_overrides(context.org_id)
            }
            merged = []
            for template in templates:
                override = overrides.get(template["permission_key"])
                merged.append({
                    **template,
                    "min_role_required": override["min_role_required"] if override else template["default_min_role"],
                    "specific_users": (override or {}).get("specific_users") or [],
                    "is_enabled": (override or {}).get("is_enabled", True) is not False,
                    "is_customized": override is not None,
                })
            return merged

        @self.app.put("/api/admin/organization-permissions/{permission_key}", dependencies=admin)
        async def update_organization_permission(
            request: Request,
            permission_key: str,
            update: PermissionOverrideUpdate,
        ):
            """Create or replace one override."""
            context = get_context(request)
            if await self.data_client.get_permission_template(permission_key) is None:
                raise NotFoundError(message=f"Permission not found: {permission_key}")

            rows = await self.data_client.upsert_permission_overrides([
                self._override_row(context.org_id, permission_key, update, context.user_id),
            ])
            await self.cache.invalidate_org(context.org_id)
            self.logger.info("Permission override updated", permission=permission_key)
            return rows[0] if rows else None

        @self.app.post("/api/admin/organization-permissions/bulk-update", dependencies=admin)
        async def bulk_update_organization_permissions(request: Request, body: BulkPermissionUpdate):
            """Create or replace several overrides at once."""
            context = get_context(request)
            known = {row["permission_key"] for row in await self.data_client.list_permission_templates()}
            unknown = sorted({item.permission_key for item in body.updates} - known)
            if unknown:
                raise ValidationError(message="Unknown permission keys", details={"permission_keys": unknown})

            rows = await self.data_client.upsert_permission_overrides([
                self._override_row(context.org_id, item.permission_key, item, context.user_id)
                for item in body.updates
            ])
            await self.cache.invalidate_org(context.org_id)
            self.logger.info("Permission overrides updated", count=len(body.updates))
            return {"updated": len(rows), "permissions": rows}

    @staticmethod
    def _override_row(org_id: str, permission_key: str, update: PermissionOverrideUpdate, user_id: Optional[str]) -> Dict[str, Any]:
        return {
            "org_id": org_id,
            "permission_key": permission_key,
            "min_role_required": update.min_role_required,
            "specific_users": update.specific_users,
            "is_enabled": update.is_enabled,
            "updated_by": user_id,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

    def _setup_api_key_routes(self):
        key_admin = self.pipeline.gate(self.evaluator.require(API_KEY_ADMIN_PERMISSION), tier=ADMIN_TIER)

        @self.app.get("/api/admin/api-keys", dependencies=key_admin)
        async def list_api_keys(request: Request):
            """API keys of the caller's organization; secrets are never returned."""
            return await self.data_client.list_api_keys(get_context(request).org_id)

        @self.app.post("/api/admin/api-keys", status_code=201, dependencies=key_admin)
        async def create_api_key(request: Request, body: ApiKeyCreate):
            """Issue a key. The full key is only ever returned here."""
            context = get_context(request)
            full_key, key_id, key_hash = generate_api_key()
            expires_at = None
            if body.expires_in_days:
                expires_at = (datetime.now(timezone.utc) + timedelta(days=body.expires_in_days)).isoformat()

            row = await self.data_client.create_api_key({
                "key_id": key_id,
                "key_hash": key_hash,
                "name": body.name,
                "description": body.description,
                "org_id": context.org_id,
                "created_by": context.user_id,
                "permissions": body.permissions,
                "rate_limit_tier": body.rate_limit_tier,
                "expires_at": expires_at,
                "is_active": True,
            })
            self.logger.info("API key created", key_id=key_id, tier=body.rate_limit_tier)

            created = {name: value for name, value in row.items() if name != "key_hash"}
            created["api_key"] = full_key
            return created

        @self.app.delete("/api/admin/api-keys/{api_key_id}", dependencies=key_admin)
        async def revoke_api_key(request: Request, api_key_id: str):
            """Deactivate a key of the caller's organization."""
            context = get_context(request)
            row = await self.data_client.deactivate_api_key(api_key_id, context.org_id)
            if row is None:
                raise NotFoundError(message="API key not found")
            self.logger.info("API key revoked", key_id=row.get("key_id"))
            return {"message": "API key revoked", "id": api_key_id}

        @self.app.get("/api/admin/api-keys/{api_key_id}/usage", dependencies=key_admin)
        async def get_api_key_usage(request: Request, api_key_id: str):
            """Usage summary for the last 24 hours."""
            context = get_context(request)
            owned = {row["id"] for row in await self.data_client.list_api_keys(context.org_id)}
            if api_key_id not in owned:
                raise NotFoundError(message="API key not found")

            since = (datetime.now(timezone.utc) - USAGE_WINDOW).isoformat()
            records = await self.data_client.get_api_key_usage(api_key_id, since)
            return summarize_usage(records)

    def _setup_monitoring_routes(self):
        monitor = self.pipeline.gate(require_admin, tier=ADMIN_TIER)

        @self.app.get("/api/admin/monitoring/cache", dependencies=monitor)
        async def cache_status():
            return {
                "stats": await self.cache.stats(),
                "health": await self.cache.health_check(),
            }

        @self.app.post("/api/admin/monitoring/cache/clear", dependencies=monitor)
        async def clear_cache(body: CacheClearRequest):
            if body.org_id:
                removed = await self.cache.invalidate_org(body.org_id)
            elif body.user_id:
                removed = await self.cache.invalidate_user(body.user_id)
            elif body.endpoint:
                removed = await self.cache.invalidate_endpoint(body.endpoint)
            elif body.pattern:
                removed = await self.cache.invalidate(body.pattern)
            else:
                removed = await self.cache.clear_all()
            return {"removed": removed}

        @self.app.get("/api/admin/monitoring/rate-limits", dependencies=monitor)
        async def rate_limit_status(request: Request, limit: int = Query(50, ge=1, le=1000)):
            """Caller's counter plus the most recent violations."""
            context = get_context(request)
            identity_type, identity = identify(request, context, self.config.trust_proxy_headers)
            try:
                status = await self.rate_limiter.status(identity_type, identity, context.tier or ADMIN_TIER)
                violations = await self.rate_limiter.violations(limit)
            except Exception as e:
                raise ServiceUnavailableError(message="Rate limit store unavailable") from e
            return {"status": status, "violations": violations}

        @self.app.post("/api/admin/monitoring/rate-limits/clear", dependencies=monitor)
        async def clear_rate_limit(body: RateLimitClearRequest):
            removed = await self.rate_limiter.clear(body.identity_type, body.identity, body.tier)
            return {"removed": removed}


def summarize_usage(records) -> Dict[str, Any]:
    """Aggregate raw ``api_key_usage`` rows."""
    total = len(records)
    failed = sum(1 for record in records if (record.get("status_code") or 0) >= 400)
    durations = [record["response_time_ms"] for record in records if record.get("response_time_ms") is not None]
    endpoints = Counter(record.get("endpoint") or "unknown" for record in records)
    return {
        "period": "24h",
        "total_requests": total,
        "successful_requests": total - failed,
        "failed_requests": failed,
        "avg_response_time_ms": round(sum(durations) / len(durations), 2) if durations else 0,
        "endpoints": dict(endpoints),
    }


def create_app(**kwargs):
    """Build the ASGI application."""
    return ApiService(**kwargs).app


if __name__ == "__main__":
    service = ApiService()
    service.run()
