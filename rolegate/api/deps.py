from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from rolegate.service.errors import RateLimitedError
from rolegate.service.runtime import RATE_LIMIT_RULES, RateLimitRule, check_rate_limit, get_runtime
from rolegate.service.tokens import AccessClaims


async def require_user(request: Request, authorization: Optional[str] = Header(None)) -> AccessClaims:
    claims = get_runtime().access_gate.check(authorization)
    request.state.user = claims
    return claims


async def require_bot(authorization: Optional[str] = Header(None)) -> None:
    get_runtime().bot_guard.check(authorization)


async def require_admin(authorization: Optional[str] = Header(None)) -> None:
    get_runtime().admin_guard.check(authorization)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def enforce_rate_limit(rule: RateLimitRule, identifier: str) -> None:
    allowed, retry_after = await check_rate_limit(get_runtime(), rule, identifier)
    if not allowed:
        raise RateLimitedError(
            "Too many requests. Please try again later.",
            detail={"retry_after_seconds": retry_after},
        )


async def public_rate_limit(request: Request) -> None:
    await enforce_rate_limit(RATE_LIMIT_RULES["public_api"], client_ip(request))
