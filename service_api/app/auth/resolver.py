"""
Authentication resolver.

Determines the principal of a request: an ``x-api-key`` header wins over an
``Authorization: Bearer`` token; with neither the request is anonymous.
Verification failures are terminal; there are no retries.
"""

import time
from typing import Optional

from fastapi import Request

from shared.errors import APIError, AuthenticationError, ErrorCode
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector
from shared.tasks import TaskSupervisor
from ..adapters.supabase_client import SupabaseDataClient
from .api_keys import hash_secret, is_expired, parse_api_key
from .principal import ApiKeyContext, Principal

API_KEY_HEADER = "x-api-key"


def client_ip(request: Request, trust_proxy: bool = False) -> str:
    """Caller IP; forwarding headers are only read behind a trusted proxy."""
    if trust_proxy:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip
    if request.client:
        return request.client.host
    return "unknown"


class AuthResolver:
    """Resolves bearer tokens and API keys into principals."""

    def __init__(
        self,
        data_client: SupabaseDataClient,
        tasks: TaskSupervisor,
        metrics: Optional[MetricsCollector] = None,
        trust_proxy: bool = False,
    ):
        self.data_client = data_client
        self.tasks = tasks
        self.metrics = metrics
        self.trust_proxy = trust_proxy
        self.logger = get_logger("api.auth")

    def _count(self, method: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("auth_attempts_total", method=method, outcome=outcome)

    async def resolve(self, request: Request) -> Principal:
        """Return the request's principal, raising on rejected credentials."""
        api_key = request.headers.get(API_KEY_HEADER)
        if api_key:
            return await self.authenticate_api_key(request, api_key)

        auth_header = request.headers.get("Authorization")
        if auth_header:
            return await self.authenticate_bearer(auth_header)

        return Principal.anonymous()

    async def authenticate_bearer(self, auth_header: str) -> Principal:
        """Verify a bearer token with the identity provider."""
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            self._count("bearer", "malformed")
            raise AuthenticationError(message="Invalid authorization header format")

        try:
            user = await self.data_client.verify_token(token.strip())
        except Exception as e:
            self.logger.warning("Token verification failed", error=str(e), error_type=type(e).__name__)
            self._count("bearer", "rejected")
            raise AuthenticationError(message="Invalid or expired token") from e

        if not user:
            self._count("bearer", "rejected")
            raise AuthenticationError(message="Invalid or expired token")

        principal = Principal.for_user(user)
        set_user_context(user_id=principal.user_id)
        self._count("bearer", "accepted")
        return principal

    async def authenticate_api_key(self, request: Request, raw_key: str) -> Principal:
        """Verify ``keyId.secret`` against the key store."""
        try:
            key_id, secret = parse_api_key(raw_key)
        except APIError:
            self._count("api_key", "malformed")
            raise

        try:
            row = await self.data_client.get_active_api_key(key_id, hash_secret(secret))
        except APIError as e:
            self.logger.error("API key lookup failed", key_id=key_id, error=e.message)
            raise APIError(
                ErrorCode.INTERNAL_SERVER_ERROR,
                "Internal server error during API key authentication",
            ) from e

        if row is None:
            self.logger.warning("Invalid API key attempt", key_id=key_id)
            self._count("api_key", "rejected")
            raise APIError(ErrorCode.API_KEY_INVALID, "Invalid API key")

        if is_expired(row.get("expires_at")):
            self.logger.warning("Expired API key used", key_id=key_id)
            self._count("api_key", "expired")
            raise APIError(ErrorCode.API_KEY_EXPIRED, "API key has expired")

        api_key = ApiKeyContext.from_row(row)
        principal = Principal.for_api_key(api_key)
        self._count("api_key", "accepted")

        self.tasks.spawn(self.data_client.touch_api_key(api_key.id), name="api_key.touch")
        self._register_usage_record(request, api_key)

        self.logger.info(
            "Request authenticated with API key",
            key_id=api_key.key_id,
            org_id=api_key.org_id,
            tier=api_key.rate_limit_tier,
        )
        return principal

    def _register_usage_record(self, request: Request, api_key: ApiKeyContext) -> None:
        """Append a usage row once the response status is known."""
        started = time.time()

        def record(status_code: int) -> None:
            usage = {
                "api_key_id": api_key.id,
                "endpoint": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "response_time_ms": int((time.time() - started) * 1000),
                "ip_address": client_ip(request, self.trust_proxy),
                "user_agent": request.headers.get("user-agent"),
                "request_size_bytes": int(request.headers.get("content-length") or 0),
            }
            self.tasks.spawn(self.data_client.record_api_key_usage(usage), name="api_key.usage")

        callbacks = getattr(request.state, "response_callbacks", None)
        if callbacks is None:
            callbacks = []
            request.state.response_callbacks = callbacks
        callbacks.append(record)
