from __future__ import annotations

import uuid
from dataclasses import dataclass

from rolegate.logging import get_logger
from rolegate.service.errors import RevokedTokenError, ServiceError
from rolegate.service.tokens import RefreshClaims, TokenCodec
from rolegate.storage.errors import StoreUnavailableError
from rolegate.storage.models import KeyValueStore

logger = get_logger(__name__)

UNKNOWN_DISPLAY_NAME = "unknown"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str

    def as_dict(self) -> dict[str, str]:
        return {"accessToken": self.access_token, "refreshToken": self.refresh_token}


class RefreshTokenRegistry:
    """Lifecycle of refresh-token identities kept in the ephemeral store.

    A refresh token is valid only while both its signature verifies and the
    ``rt:<token_id>`` record exists. Rotation claims the record with the
    store's atomic ``take`` so a captured token can be exchanged once at most.
    """

    def __init__(self, store: KeyValueStore, codec: TokenCodec, *, key_prefix: str = "") -> None:
        self.store = store
        self.codec = codec
        self.key_prefix = key_prefix

    def _token_key(self, token_id: str) -> str:
        return f"{self.key_prefix}rt:{token_id}"

    def _display_name_key(self, subject: str) -> str:
        return f"{self.key_prefix}user:{subject}:username"

    async def issue(self, subject: str, display_name: str) -> TokenPair:
        token_id = str(uuid.uuid4())
        pair = TokenPair(
            access_token=self.codec.issue_access_token(subject, display_name),
            refresh_token=self.codec.issue_refresh_token(subject, token_id),
        )
        # Tokens are useless until this write lands; a crash before it only
        # yields a refresh token that fails validation.
        await self.store.set_many(
            {
                self._token_key(token_id): subject,
                self._display_name_key(subject): display_name,
            },
            self.codec.refresh_ttl_seconds,
        )
        logger.info("refresh_token_issued", subject=subject, token_id=token_id)
        return pair

    async def validate(self, refresh_token: str) -> RefreshClaims:
        claims = self.codec.verify_refresh(refresh_token)
        if await self.store.get(self._token_key(claims.token_id)) is None:
            raise RevokedTokenError()
        return claims

    async def consume(self, refresh_token: str) -> RefreshClaims:
        claims = self.codec.verify_refresh(refresh_token)
        if await self.store.take(self._token_key(claims.token_id)) is None:
            logger.warning(
                "refresh_token_replay_or_revoked",
                subject=claims.subject,
                token_id=claims.token_id,
            )
            raise RevokedTokenError()
        logger.info("refresh_token_consumed", subject=claims.subject, token_id=claims.token_id)
        return claims

    async def display_name(self, subject: str) -> str:
        cached = await self.store.get(self._display_name_key(subject))
        if cached is None:
            logger.warning("display_name_cache_miss", subject=subject)
            return UNKNOWN_DISPLAY_NAME
        return cached

    async def rotate(self, refresh_token: str) -> TokenPair:
        claims = await self.consume(refresh_token)
        return await self.issue(claims.subject, await self.display_name(claims.subject))

    async def revoke(self, token_id: str) -> None:
        removed = await self.store.delete(self._token_key(token_id))
        logger.info("refresh_token_revoked", token_id=token_id, removed=bool(removed))

    async def logout(self, refresh_token: str) -> None:
        """Revoke the presented refresh token; never raises to the caller."""
        try:
            claims = await self.validate(refresh_token)
            await self.revoke(claims.token_id)
        except (ServiceError, StoreUnavailableError) as exc:
            logger.info("logout_ignored_failure", error_type=type(exc).__name__)
