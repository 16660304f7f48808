"""
Request-gating pipeline.

``RequestPipeline.gate`` returns the ordered FastAPI dependencies that run
before a route handler:

    authenticate -> organization context -> rate limit -> response cache -> guards

Each stage raises an ``APIError`` for its own expected failures; the global
handlers render them as envelopes.
"""

from typing import Callable, List, Optional, Tuple

from fastapi import Depends, Request, Response

from shared.errors import APIError, AuthenticationError, ErrorCode
from shared.logging import get_logger
from .auth.resolver import AuthResolver, client_ip
from .caching.response_cache import CachedResponse, ResponseCache
from .domain.context import RequestContext, get_context
from .domain.org_context import OrgContextLoader
from .ratelimit.fixed_window import FixedWindowRateLimiter
from .ratelimit.tiers import resolve_tier

AUTH_REQUIRED = "required"
AUTH_OPTIONAL = "optional"
AUTH_API_KEY = "api_key"


def identify(request: Request, context: RequestContext, trust_proxy: bool = False) -> Tuple[str, str]:
    """Rate-limit identity: API key id, then user id, then client IP."""
    principal = context.principal
    if principal.is_api_key:
        return "api_key", principal.api_key.key_id
    if principal.is_user:
        return "user", principal.user_id
    return "ip", client_ip(request, trust_proxy)


def tier_for(context: RequestContext) -> str:
    principal = context.principal
    return resolve_tier(
        api_key_tier=principal.api_key.rate_limit_tier if principal.is_api_key else None,
        is_user=principal.is_user,
        role=context.role,
        organization=context.organization,
    )


class RequestPipeline:
    """Builds per-route dependency chains."""

    def __init__(
        self,
        resolver: AuthResolver,
        org_loader: OrgContextLoader,
        rate_limiter: FixedWindowRateLimiter,
        cache: ResponseCache,
        rate_limit_enabled: bool = True,
    ):
        self.resolver = resolver
        self.org_loader = org_loader
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.rate_limit_enabled = rate_limit_enabled
        self.logger = get_logger("api.pipeline")

    def _authenticate(self, mode: str) -> Callable:
        async def authenticate(request: Request) -> None:
            principal = await self.resolver.resolve(request)
            if mode == AUTH_API_KEY and not principal.is_api_key:
                raise APIError(ErrorCode.API_KEY_REQUIRED, "API key required for this endpoint")
            if mode == AUTH_REQUIRED and not principal.is_authenticated:
                raise AuthenticationError(message="Authentication required")
            request.state.principal = principal

        return authenticate

    async def _load_organization(self, request: Request) -> None:
        request.state.context = await self.org_loader.load(request.state.principal)

    def _rate_limit(self, tier: Optional[str], burst: bool) -> Callable:
        async def rate_limit(request: Request, response: Response) -> None:
            path = request.url.path
            if not self.rate_limit_enabled or self.rate_limiter.is_skipped(path):
                return

            context = get_context(request)
            context.tier = tier or tier_for(context)
            identity_type, identity = identify(request, context, self.resolver.trust_proxy)
            client = {
                "ip": client_ip(request, self.resolver.trust_proxy),
                "user_agent": request.headers.get("user-agent"),
            }

            result = await self.rate_limiter.check(
                identity_type, identity, context.tier, path, method=request.method, client=client
            )
            context.rate_limit = result
            if not result.allowed:
                raise result.to_error()

            if burst:
                burst_result = await self.rate_limiter.check(
                    identity_type, identity, context.tier, path, method=request.method, burst=True, client=client
                )
                if not burst_result.allowed:
                    raise burst_result.to_error()

            for name, value in result.headers().items():
                response.headers[name] = value

        return rate_limit

    def _cache(self, ttl_override: Optional[int]) -> Callable:
        async def response_cache(request: Request) -> None:
            if not self.cache.enabled or request.method != "GET":
                return

            ttl = self.cache.ttl_for(request.url.path, ttl_override)
            if ttl <= 0:
                return

            context = get_context(request)
            route = request.scope.get("route")
            key = self.cache.build_key(
                getattr(route, "path", request.url.path),
                context.org_id,
                context.principal.principal_id,
                context.role_or_tier,
                query=request.query_params.multi_items(),
                path_params=request.path_params,
            )

            envelope = await self.cache.lookup(key)
            if envelope is not None:
                headers = context.rate_limit.headers() if context.rate_limit else {}
                raise CachedResponse(
                    self.cache.replay(envelope, ttl, getattr(request.state, "request_id", None)),
                    headers,
                )

            def store(envelope: dict, status_code: int) -> None:
                if self.cache.cacheable(envelope, status_code):
                    self.cache.store_later(key, envelope, ttl)

            hooks = getattr(request.state, "envelope_hooks", None)
            if hooks is None:
                hooks = []
                request.state.envelope_hooks = hooks
            hooks.append(store)

        return response_cache

    def gate(
        self,
        *guards: Callable,
        auth: str = AUTH_REQUIRED,
        rate_limit: bool = True,
        tier: Optional[str] = None,
        burst: bool = False,
        cache: bool = False,
        cache_ttl: Optional[int] = None,
    ) -> List:
        """Dependencies for one route, in pipeline order."""
        dependencies = [
            Depends(self._authenticate(auth)),
            Depends(self._load_organization),
        ]
        if rate_limit:
            dependencies.append(Depends(self._rate_limit(tier, burst)))
        if cache:
            dependencies.append(Depends(self._cache(cache_ttl)))
        dependencies.extend(Depends(guard) for guard in guards)
        return dependencies
