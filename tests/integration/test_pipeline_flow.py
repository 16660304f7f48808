"""
End-to-end tests of the request-gating pipeline.

Requests travel through the real ASGI stack: authentication, organization
context, rate limiting, response caching, permission guards and the
envelope, backed by an in-memory datastore and store.
"""

import httpx
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from service_api.app.adapters.supabase_client import SupabaseDataClient
from service_api.app.main import ApiService
from service_api.app.storage import FailoverStore, MemoryStore, RedisStore
from shared.test_helpers import FakeSupabase, TestDataFactory


class UnreachableRedis(RedisStore):
    """Redis store whose every call fails to connect."""

    def __init__(self):
        super().__init__("redis://unreachable:6379/0")

    def _get_redis(self):
        raise RedisConnectionError("Error connecting to unreachable:6379")


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def factory(db):
    factory = TestDataFactory(db)
    factory.organization()
    factory.organization(org_id="org-2", name="Washington Middle PTO")
    return factory


@pytest.fixture
def service(db):
    return ApiService(data_client=SupabaseDataClient(db), store=MemoryStore(), env="test")


@pytest_asyncio.fixture
async def client(service):
    transport = httpx.ASGITransport(app=service.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    await service.tasks.drain()


class TestPublicAccess:
    """Anonymous callers on public and protected routes."""

    @pytest.mark.asyncio
    async def test_anonymous_health_check(self, client):
        response = await client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["errors"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/api/profile", "/api/organization", "/api/admin/users"])
    async def test_protected_routes_need_credentials(self, client, service, path):
        response = await client.get(path)

        assert response.status_code == 401
        assert response.json()["errors"][0]["code"] == "UNAUTHORIZED"


class TestResponseCaching:
    """Cache-aside behaviour across requests."""

    @pytest.mark.asyncio
    async def test_second_identical_request_is_a_hit(self, client, service, factory):
        member = factory.member("volunteer")

        first = await client.get("/api/profile", headers=member.headers)
        await service.tasks.drain()
        second = await client.get("/api/profile", headers=member.headers)

        assert first.json()["meta"]["cache_hit"] is False
        assert second.status_code == 200
        assert second.json()["meta"]["cache_hit"] is True
        assert second.json()["data"] == first.json()["data"]
        assert second.json()["meta"]["request_id"] == second.headers["X-Request-ID"]
        assert second.json()["meta"]["request_id"] != first.json()["meta"]["request_id"]
        assert second.headers["X-RateLimit-Remaining"] == "198"

    @pytest.mark.asyncio
    async def test_hit_skips_the_handler(self, client, service, factory):
        admin = factory.member("admin")
        calls = []
        list_org_profiles = service.data_client.list_org_profiles

        async def counting(org_id):
            calls.append(org_id)
            return await list_org_profiles(org_id)

        service.data_client.list_org_profiles = counting

        await client.get("/api/admin/users", headers=admin.headers)
        await service.tasks.drain()
        response = await client.get("/api/admin/users", headers=admin.headers)

        assert response.json()["meta"]["cache_hit"] is True
        assert calls == ["org-1"]

    @pytest.mark.asyncio
    async def test_other_organization_never_served_cached_entry(self, client, service, factory):
        first_admin = factory.member("admin")
        await client.get("/api/organization", headers=first_admin.headers)
        await service.tasks.drain()

        other_admin = factory.member("admin", org_id="org-2")
        response = await client.get("/api/organization", headers=other_admin.headers)

        assert response.json()["meta"]["cache_hit"] is False
        assert response.json()["data"]["id"] == "org-2"

    @pytest.mark.asyncio
    async def test_query_string_is_part_of_the_key(self, client, service, factory):
        admin = factory.member("admin")
        await client.get("/api/admin/users?page=1", headers=admin.headers)
        await service.tasks.drain()

        response = await client.get("/api/admin/users?page=2", headers=admin.headers)

        assert response.json()["meta"]["cache_hit"] is False

    @pytest.mark.asyncio
    async def test_errors_are_not_cached(self, client, service, db, factory):
        member = factory.member("volunteer")
        db.tables["organizations"] = [row for row in db.rows("organizations") if row["id"] != "org-1"]

        first = await client.get("/api/organization", headers=member.headers)
        await service.tasks.drain()

        assert first.status_code == 404
        assert await service.store.keys("api_cache:*") == []

    @pytest.mark.asyncio
    async def test_deleting_a_member_purges_cached_listing(self, client, service, factory):
        admin = factory.member("admin")
        volunteer = factory.member("volunteer")

        listing = await client.get("/api/admin/users", headers=admin.headers)
        await service.tasks.drain()
        assert listing.json()["meta"]["pagination"]["total"] == 2

        await client.delete(f"/api/admin/users/{volunteer.user_id}", headers=admin.headers)
        listing = await client.get("/api/admin/users", headers=admin.headers)

        assert listing.json()["meta"]["cache_hit"] is False
        assert listing.json()["meta"]["pagination"]["total"] == 1

    @pytest.mark.asyncio
    async def test_permission_override_write_purges_org_cache(self, client, service, factory):
        factory.template("can_create_events", default_min_role="committee_lead")
        admin = factory.member("admin")

        await client.get("/api/admin/users", headers=admin.headers)
        await service.tasks.drain()
        assert await service.store.keys("api_cache:*:org-1:*")

        await client.put(
            "/api/admin/organization-permissions/can_create_events",
            json={"min_role_required": "volunteer"},
            headers=admin.headers,
        )

        assert await service.store.keys("api_cache:*:org-1:*") == []


class TestRateLimiting:
    """Tier limits enforced across requests."""

    @pytest.mark.asyncio
    async def test_free_api_key_blocked_on_request_101(self, client, service, factory):
        key = factory.api_key(tier="free")

        for number in range(1, 101):
            response = await client.get("/api/organization", headers=key.headers)
            assert response.status_code == 200, number

        response = await client.get("/api/organization", headers=key.headers)
        await service.tasks.drain()

        assert response.status_code == 429
        body = response.json()
        assert body["success"] is False
        error = body["errors"][0]
        assert error["code"] == "RATE_LIMIT_EXCEEDED"
        assert error["details"]["tier"] == "free"
        assert error["details"]["limit"] == 100
        assert error["details"]["window_minutes"] == 15
        assert 1 <= error["details"]["retry_after"] <= 900
        assert response.headers["Retry-After"] == str(error["details"]["retry_after"])
        assert body["meta"]["rate_limit"]["window_ms"] == 900_000

        violations = await service.rate_limiter.violations()
        assert violations[0]["identity"] == key.row["key_id"]
        assert violations[0]["identity_type"] == "api_key"

    @pytest.mark.asyncio
    async def test_usage_recorded_once_per_routed_request(self, client, service, db, factory):
        key = factory.api_key(tier="standard")

        await client.get("/api/organization", headers=key.headers)
        await client.get("/api/nope/at/all", headers=key.headers)
        await service.tasks.drain()

        assert [row["status_code"] for row in db.rows("api_key_usage")] == [200]

    @pytest.mark.asyncio
    async def test_rejected_anonymous_requests_are_not_counted(self, client, service):
        for _ in range(2):
            await client.get("/api/organization")

        status = await service.rate_limiter.status("ip", "127.0.0.1", "free")
        assert status["current"] == 0

    @pytest.mark.asyncio
    async def test_cache_churn_keeps_counters(self, db, factory):
        service = ApiService(data_client=SupabaseDataClient(db), env="test", memory_store_max_entries=10)
        assert service.counter_store is not service.store

        for _ in range(5):
            assert (await service.rate_limiter.check("ip", "198.51.100.4", "free", "/api/auth/login")).allowed
        for index in range(10):
            service.cache.store_later(f"api_cache:v1:/api/admin/users:org-1:user-1:admin:{index}", {"success": True}, 60)
        await service.tasks.drain()

        assert len(await service.store.keys("api_cache:*")) == 10
        result = await service.rate_limiter.check("ip", "198.51.100.4", "free", "/api/auth/login")
        assert not result.allowed
        assert result.limit == 5
        await service.tasks.drain()


class TestPermissionGuards:
    """Role hierarchy enforced on admin routes."""

    @pytest.mark.asyncio
    async def test_committee_lead_cannot_delete_users(self, client, factory):
        lead = factory.member("committee_lead")
        target = factory.member("volunteer")

        response = await client.delete(f"/api/admin/users/{target.user_id}", headers=lead.headers)

        assert response.status_code == 403
        error = response.json()["errors"][0]
        assert error["code"] == "INSUFFICIENT_PERMISSIONS"
        assert error["details"] == {"required": "admin", "current": "committee_lead"}

    @pytest.mark.asyncio
    async def test_admin_at_boundary_can_delete_users(self, client, factory):
        admin = factory.member("admin")
        target = factory.member("volunteer")

        response = await client.delete(f"/api/admin/users/{target.user_id}", headers=admin.headers)

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_override_matches_template_decision(self, client, service, factory):
        factory.template("can_create_events", default_min_role="committee_lead", module_name="events")
        lead = factory.member("committee_lead")

        before = (await client.get("/api/permissions/me", headers=lead.headers)).json()["data"]
        factory.override("can_create_events", min_role="committee_lead")
        after = (await client.get("/api/permissions/me", headers=lead.headers)).json()["data"]

        assert before["permissions"]["events"][0]["allowed"] is True
        assert after["permissions"]["events"][0]["allowed"] is True


class TestStoreDegradation:
    """The pipeline keeps serving when the shared store is unreachable."""

    @pytest.mark.asyncio
    async def test_memory_fallback(self, db, factory):
        store = FailoverStore(UnreachableRedis(), MemoryStore())
        service = ApiService(data_client=SupabaseDataClient(db), store=store, env="test")
        member = factory.member("volunteer")

        transport = httpx.ASGITransport(app=service.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            first = await client.get("/api/profile", headers=member.headers)
            await service.tasks.drain()
            second = await client.get("/api/profile", headers=member.headers)
            health = await client.get("/api/health")

        assert first.status_code == 200
        assert second.json()["meta"]["cache_hit"] is True
        assert second.headers["X-RateLimit-Remaining"] == "198"
        assert store.degraded
        assert health.json()["data"]["dependencies"] == {"cache:memory": "ok", "rate_limit:memory": "ok"}
