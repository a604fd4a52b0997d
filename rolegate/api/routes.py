from __future__ import annotations

import json
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import RedirectResponse

from rolegate.api.deps import (
    client_ip,
    enforce_rate_limit,
    public_rate_limit,
    require_admin,
    require_bot,
    require_user,
)
from rolegate.api.schemas import (
    ChallengeView,
    CompletedVerificationResponse,
    CompleteVerificationRequest,
    CurrentUserResponse,
    Envelope,
    InitiateVerificationRequest,
    InitiateVerificationResponse,
    RefreshTokenRequest,
    TokenPairResponse,
)
from rolegate.logging import get_logger
from rolegate.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    RevokedTokenError,
    ValidationError,
)
from rolegate.service.runtime import RATE_LIMIT_RULES, check_rate_limit, get_runtime
from rolegate.service.tokens import AccessClaims
from rolegate.service.verification import ensure_token_shape
from rolegate.service.wallet import verify_wallet_signature

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_TOKEN_PATH = Path(..., min_length=1, max_length=128, description="Verification token")


def _pair_response(pair) -> dict:
    return TokenPairResponse(
        access_token=pair.access_token, refresh_token=pair.refresh_token
    ).model_dump(by_alias=True)


# ── Discord login ──────────────────────────────────────────────────────────


@router.get("/auth/discord", tags=["auth"], dependencies=[Depends(public_rate_limit)])
async def discord_login():
    """Redirect the browser to Discord's consent screen with a one-time state."""
    runtime = get_runtime()
    state = await runtime.oauth_states.issue()
    return RedirectResponse(runtime.discord.authorization_url(state), status_code=302)


@router.get("/auth/discord/callback", tags=["auth"])
async def discord_callback(
    request: Request,
    code: str = Query(..., min_length=1, max_length=512),
    state: str = Query(..., min_length=1, max_length=128),
):
    """Complete the OAuth flow and hand the token pair to the dashboard.

    Tokens travel in the URL fragment so they never reach intermediary
    access logs or the Referer header.
    """
    runtime = get_runtime()
    await enforce_rate_limit(RATE_LIMIT_RULES["auth_callback"], client_ip(request))
    if not await runtime.oauth_states.redeem(state):
        raise ValidationError("Invalid or expired OAuth state")

    discord_token = await runtime.discord.exchange_code(code)
    identity = await runtime.discord.fetch_user(discord_token)
    pair = await runtime.refresh_tokens.issue(identity.id, identity.username)
    logger.info("discord_login_completed", subject=identity.id)

    fragment = urlencode({"accessToken": pair.access_token, "refreshToken": pair.refresh_token})
    return RedirectResponse(
        f"{runtime.settings.frontend_url}/auth/callback#{fragment}", status_code=302
    )


# ── Session tokens ─────────────────────────────────────────────────────────


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshTokenRequest, request: Request):
    runtime = get_runtime()
    await enforce_rate_limit(RATE_LIMIT_RULES["auth_refresh"], client_ip(request))
    try:
        pair = await runtime.refresh_tokens.rotate(body.refresh_token)
    except RevokedTokenError:
        raise AuthenticationError("Refresh token has been revoked") from None
    except InvalidTokenError:
        raise AuthenticationError("Invalid refresh token") from None
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: RefreshTokenRequest, principal: AccessClaims = Depends(require_user)):
    """Revoke the presented refresh token. Succeeds even if it was already invalid."""
    runtime = get_runtime()
    await enforce_rate_limit(RATE_LIMIT_RULES["authenticated_api"], principal.subject)
    await runtime.refresh_tokens.logout(body.refresh_token)
    return Envelope(status="ok", data={"loggedOut": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def current_user(principal: AccessClaims = Depends(require_user)):
    await enforce_rate_limit(RATE_LIMIT_RULES["authenticated_api"], principal.subject)
    return Envelope(
        status="ok",
        data=CurrentUserResponse(
            subject=principal.subject,
            display_name=principal.display_name,
            expires_at=principal.expires_at,
        ).model_dump(by_alias=True),
    )


# ── Wallet verification ────────────────────────────────────────────────────


@router.post(
    "/verify/initiate",
    response_model=Envelope,
    tags=["verify"],
    dependencies=[Depends(require_bot)],
)
async def initiate_verification(body: InitiateVerificationRequest):
    """Bot-internal: mint a verification link for a guild member."""
    runtime = get_runtime()
    await enforce_rate_limit(
        RATE_LIMIT_RULES["verification_initiation"], f"{body.guild_id}:{body.user_discord_id}"
    )
    project = runtime.projects.get_project_by_guild(body.guild_id)
    if project is None:
        raise NotFoundError("No project configured for this server. Run /setup first.")

    token = await runtime.challenges.create(
        project.id, project.name, body.guild_id, body.user_discord_id
    )
    return Envelope(
        status="ok",
        data=InitiateVerificationResponse(
            token=token, verify_url=f"{runtime.settings.frontend_url}/verify/{token}"
        ).model_dump(by_alias=True),
    )


@router.get(
    "/verify/{token}",
    response_model=Envelope,
    tags=["verify"],
    dependencies=[Depends(public_rate_limit)],
)
async def get_verification(token: str = _TOKEN_PATH):
    challenge = await get_runtime().challenges.peek(token)
    return Envelope(
        status="ok",
        data=ChallengeView(
            project_name=challenge.project_name, message=challenge.message
        ).model_dump(by_alias=True),
    )


@router.post(
    "/verify/{token}/complete",
    response_model=Envelope,
    status_code=202,
    tags=["verify"],
    dependencies=[Depends(public_rate_limit)],
)
async def complete_verification(body: CompleteVerificationRequest, token: str = _TOKEN_PATH):
    """Check the wallet signature, then claim the challenge and queue the role job.

    A bad signature leaves the challenge in place; the completion rate limit
    bounds how often it can be retried.
    """
    runtime = get_runtime()
    ensure_token_shape(token)

    allowed, retry_after = await check_rate_limit(
        runtime, RATE_LIMIT_RULES["verification_completion"], token
    )
    if not allowed:
        # Burn the link so a brute-forced token cannot be retried
        await runtime.challenges.discard(token)
        raise RateLimitedError(
            "Too many requests. Please try again later.",
            detail={"retry_after_seconds": retry_after},
        )

    challenge = await runtime.challenges.peek(token)
    wallet_address = verify_wallet_signature(
        challenge.message, body.signature, body.wallet_address
    )
    job = {
        "challenge": challenge.to_dict(),
        "message": challenge.message,
        "signature": body.signature,
        "walletAddress": wallet_address,
    }
    await runtime.challenges.complete_and_enqueue(
        token, challenge, runtime.verification_queue, json.dumps(job, separators=(",", ":"))
    )
    logger.info(
        "verification_job_enqueued",
        project_id=challenge.project_id,
        user_discord_id=challenge.user_discord_id,
    )
    return Envelope(
        status="ok",
        data=CompletedVerificationResponse(
            project_id=challenge.project_id,
            guild_id=challenge.guild_id,
            user_discord_id=challenge.user_discord_id,
            wallet_address=wallet_address,
        ).model_dump(by_alias=True),
    )


# ── Admin ──────────────────────────────────────────────────────────────────


@router.delete(
    "/admin/refresh-tokens/{token_id}",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)
async def admin_revoke_refresh_token(token_id: str = Path(..., min_length=1, max_length=64)):
    await get_runtime().refresh_tokens.revoke(token_id)
    return Envelope(status="ok", data={"revoked": token_id})
