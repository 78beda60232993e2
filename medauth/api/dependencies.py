from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Header, Request, Response

from medauth.logging import log_security_event
from medauth.service.auth import AuthContext, ClientContext
from medauth.service.authorization import authorize, require_ownership
from medauth.service.errors import RateLimitedError
from medauth.service.rate_limit import RateLimitPolicy, RateLimitResult
from medauth.service.runtime import Runtime, get_runtime
from medauth.storage.models import Role


def client_context(request: Request) -> ClientContext:
    settings = get_runtime().settings
    ip_addr = request.client.host if request.client else None
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            ip_addr = first_hop
    return ClientContext(
        ip_addr=ip_addr or "unknown",
        user_agent=request.headers.get("user-agent"),
        path=request.url.path,
    )


async def _enforce(
    runtime: Runtime,
    policy: RateLimitPolicy,
    key: str,
    request: Request,
    response: Response,
    client: ClientContext,
) -> RateLimitResult:
    result = await runtime.rate_limiter.hit(policy, key)
    if not result.allowed:
        log_security_event(
            "rate_limit_exceeded",
            client=client,
            policy=policy.name,
            key=key,
            retry_after=result.retry_after,
        )
        raise RateLimitedError(
            policy.message,
            detail={"retryAfter": result.retry_after},
            headers=result.headers(),
        )
    # Advertise whichever applied limit is closest to rejecting
    current: Optional[RateLimitResult] = getattr(request.state, "rate_limit", None)
    if current is None or result.remaining <= current.remaining:
        request.state.rate_limit = result
        result.apply_headers(response)
    return result


async def global_rate_limit(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(default=None),
    client: ClientContext = Depends(client_context),
) -> None:
    runtime = get_runtime()
    subject = runtime.tokens.peek_subject(authorization)
    key = f"user:{subject}" if subject else f"ip:{client.ip_addr}"
    await _enforce(runtime, runtime.rate_policies["global"], key, request, response, client)
    if runtime.settings.progressive_rate_limit_enabled:
        await _enforce(
            runtime, runtime.rate_policies["progressive"], key, request, response, client
        )


def strict_rate_limit(endpoint: str) -> Callable:
    """Per-IP limiter for credential endpoints, counted before any validation."""

    async def _dependency(
        request: Request,
        response: Response,
        client: ClientContext = Depends(client_context),
    ) -> None:
        runtime = get_runtime()
        policy = runtime.rate_policies[endpoint]
        await _enforce(runtime, policy, f"{client.ip_addr}:{endpoint}", request, response, client)

    return _dependency


async def get_current_user(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(default=None),
    client: ClientContext = Depends(client_context),
) -> AuthContext:
    runtime = get_runtime()
    identity = await runtime.auth.authenticate(authorization, client)
    await _enforce(
        runtime, runtime.rate_policies["user"], f"user:{identity.user_id}", request, response, client
    )
    return identity


def require_roles(*roles: Role) -> Callable:
    async def _dependency(
        identity: AuthContext = Depends(get_current_user),
        client: ClientContext = Depends(client_context),
    ) -> AuthContext:
        return authorize(identity, roles, resource=client.path, client=client)

    return _dependency


def require_resource_owner(param: str = "user_id") -> Callable:
    async def _dependency(
        request: Request,
        identity: AuthContext = Depends(get_current_user),
        client: ClientContext = Depends(client_context),
    ) -> AuthContext:
        owner_id = str(request.path_params.get(param, ""))
        return require_ownership(identity, owner_id, resource=client.path, client=client)

    return _dependency
