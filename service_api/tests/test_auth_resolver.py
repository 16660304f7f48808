"""
Unit tests for bearer token and API key authentication.
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from service_api.app.auth import AuthResolver, PrincipalType, client_ip, generate_api_key, parse_api_key
from service_api.app.auth.api_keys import hash_secret, is_expired
from shared.errors import APIError, ErrorCode
from shared.test_helpers import postgrest_error
from .conftest import make_request


class TestApiKeyFormat:
    """Test cases for API key parsing and generation."""

    def test_parse_valid_key(self):
        assert parse_api_key("abcd1234." + "f" * 32) == ("abcd1234", "f" * 32)

    @pytest.mark.parametrize("raw,message", [
        ("no-separator", "API key must be in format: keyId.secret"),
        ("a.b.c", "Invalid API key format"),
        ("short." + "f" * 32, "Invalid API key format"),
        ("abcd1234.short", "Invalid API key format"),
    ])
    def test_parse_rejects_malformed_keys(self, raw, message):
        with pytest.raises(APIError) as exc_info:
            parse_api_key(raw)
        assert exc_info.value.code == ErrorCode.API_KEY_INVALID_FORMAT
        assert exc_info.value.status_code == 400
        assert exc_info.value.message == message

    def test_generated_key_parses_and_hashes(self):
        full_key, key_id, secret_hash = generate_api_key()
        parsed_id, secret = parse_api_key(full_key)
        assert parsed_id == key_id
        assert hash_secret(secret) == secret_hash

    def test_expiry(self):
        assert not is_expired(None)
        assert is_expired("2020-01-01T00:00:00Z")
        assert not is_expired("2999-01-01T00:00:00")


class TestClientIp:
    """Test cases for caller IP extraction."""

    def test_forwarded_for_first_hop_behind_trusted_proxy(self):
        request = make_request(headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.2", "X-Real-IP": "198.51.100.1"})
        assert client_ip(request, trust_proxy=True) == "203.0.113.9"

    def test_real_ip_behind_trusted_proxy(self):
        request = make_request(headers={"X-Real-IP": "198.51.100.1"})
        assert client_ip(request, trust_proxy=True) == "198.51.100.1"

    def test_forwarding_headers_ignored_by_default(self):
        request = make_request(headers={"X-Forwarded-For": "203.0.113.9", "X-Real-IP": "198.51.100.1"}, client="192.0.2.44")
        assert client_ip(request) == "192.0.2.44"

    def test_socket_peer(self):
        assert client_ip(make_request(client="192.0.2.44")) == "192.0.2.44"


class TestAuthResolver:
    """Test cases for AuthResolver."""

    @pytest.fixture
    def resolver(self, data_client, tasks):
        return AuthResolver(data_client, tasks)

    @pytest.mark.asyncio
    async def test_no_credentials_is_anonymous(self, resolver):
        principal = await resolver.resolve(make_request())
        assert principal.type == PrincipalType.ANONYMOUS
        assert not principal.is_authenticated

    @pytest.mark.asyncio
    async def test_valid_bearer_token(self, resolver, factory):
        member = factory.member("board_member")

        principal = await resolver.resolve(make_request(headers=member.headers))

        assert principal.is_user
        assert principal.user_id == member.user_id
        assert principal.email == f"{member.user_id}@example.org"

    @pytest.mark.asyncio
    async def test_malformed_authorization_header(self, resolver):
        with pytest.raises(APIError) as exc_info:
            await resolver.resolve(make_request(headers={"Authorization": "Token abc"}))
        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Invalid authorization header format"

    @pytest.mark.asyncio
    async def test_unknown_token_rejected(self, resolver):
        with pytest.raises(APIError) as exc_info:
            await resolver.resolve(make_request(headers={"Authorization": "Bearer nope"}))
        assert exc_info.value.code == ErrorCode.UNAUTHORIZED
        assert exc_info.value.message == "Invalid or expired token"

    @pytest.mark.asyncio
    async def test_provider_failure_rejected(self, resolver, db, factory):
        member = factory.member()
        db.auth.error = RuntimeError("provider down")

        with pytest.raises(APIError) as exc_info:
            await resolver.resolve(make_request(headers=member.headers))
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_api_key_wins_over_bearer(self, resolver, factory):
        member = factory.member()
        key = factory.api_key(tier="premium")

        principal = await resolver.resolve(make_request(headers={**member.headers, **key.headers}))

        assert principal.is_api_key
        assert principal.api_key.key_id == key.row["key_id"]
        assert principal.api_key.rate_limit_tier == "premium"
        assert principal.principal_id == key.row["key_id"]

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, resolver, factory):
        key = factory.api_key()
        key_id = key.row["key_id"]

        with pytest.raises(APIError) as exc_info:
            await resolver.resolve(make_request(headers={"x-api-key": f"{key_id}.{'0' * 32}"}))
        assert exc_info.value.code == ErrorCode.API_KEY_INVALID
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_inactive_key_rejected(self, resolver, factory):
        key = factory.api_key()
        key.row["is_active"] = False

        with pytest.raises(APIError) as exc_info:
            await resolver.resolve(make_request(headers=key.headers))
        assert exc_info.value.code == ErrorCode.API_KEY_INVALID

    @pytest.mark.asyncio
    async def test_expired_key_rejected(self, resolver, factory):
        key = factory.api_key(expires_in=timedelta(days=-1))

        with pytest.raises(APIError) as exc_info:
            await resolver.resolve(make_request(headers=key.headers))
        assert exc_info.value.code == ErrorCode.API_KEY_EXPIRED
        assert exc_info.value.message == "API key has expired"

    @pytest.mark.asyncio
    async def test_lookup_failure_is_internal_error(self, resolver, db, factory):
        key = factory.api_key()
        db.fail("api_keys", postgrest_error("08006", "connection failure"))

        with pytest.raises(APIError) as exc_info:
            await resolver.resolve(make_request(headers=key.headers))
        assert exc_info.value.code == ErrorCode.INTERNAL_SERVER_ERROR
        assert exc_info.value.message == "Internal server error during API key authentication"

    @pytest.mark.asyncio
    async def test_key_use_touched_and_recorded(self, resolver, db, factory, tasks):
        key = factory.api_key()
        request = make_request(path="/api/organization", headers={**key.headers, "user-agent": "pytest"})

        await resolver.resolve(request)
        for callback in request.state.response_callbacks:
            callback(200)
        await tasks.drain()

        assert key.row.get("last_used_at")
        usage = db.rows("api_key_usage")
        assert len(usage) == 1
        assert usage[0]["api_key_id"] == key.row["id"]
        assert usage[0]["endpoint"] == "/api/organization"
        assert usage[0]["status_code"] == 200
        assert usage[0]["user_agent"] == "pytest"

    @pytest.mark.asyncio
    async def test_usage_failure_does_not_fail_request(self, resolver, data_client, factory, tasks):
        key = factory.api_key()
        data_client.touch_api_key = AsyncMock(side_effect=RuntimeError("write failed"))

        principal = await resolver.resolve(make_request(headers=key.headers))
        await tasks.drain()

        assert principal.is_api_key
        assert tasks.failures == 1
