from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import httpx

from rolegate.logging import get_logger
from rolegate.service.errors import ServerError, UpstreamError
from rolegate.storage.models import KeyValueStore

logger = get_logger(__name__)

DISCORD_OAUTH_SCOPES = ("identify", "guilds")
STATE_MARKER = "1"


class OAuthStateGuard:
    """One-time ``state`` values protecting the identity-provider redirect."""

    def __init__(self, store: KeyValueStore, *, ttl_seconds: int = 5 * 60, key_prefix: str = "") -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, state: str) -> str:
        return f"{self.key_prefix}oauth:{state}"

    async def issue(self) -> str:
        state = secrets.token_hex(16)
        await self.store.set(self._key(state), STATE_MARKER, self.ttl_seconds)
        return state

    async def redeem(self, state: str) -> bool:
        if not state:
            return False
        redeemed = await self.store.take(self._key(state)) is not None
        if not redeemed:
            logger.warning("oauth_state_rejected")
        return redeemed


@dataclass(frozen=True)
class DiscordIdentity:
    id: str
    username: str


class DiscordOAuthClient:
    """Authorization-code flow against the Discord API."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        *,
        api_base: str = "https://discord.com/api/v10",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _require_credentials(self) -> tuple[str, str]:
        if not self.client_id or not self.client_secret:
            logger.error("discord_oauth_not_configured")
            raise ServerError("Discord OAuth is not configured")
        return self.client_id, self.client_secret

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def authorization_url(self, state: str) -> str:
        client_id, _ = self._require_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(DISCORD_OAUTH_SCOPES),
            "state": state,
        }
        return f"{self.api_base}/oauth2/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str) -> str:
        """Trade an authorization code for a Discord access token."""
        client_id, client_secret = self._require_credentials()
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.api_base}/oauth2/token",
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "grant_type": "authorization_code",
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                    },
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "discord_token_exchange_http_error",
                status_code=exc.response.status_code,
            )
            raise UpstreamError("Discord token exchange failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("discord_token_exchange_error", error=str(exc))
            raise UpstreamError("Discord token exchange failed") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            logger.error("discord_token_exchange_missing_token")
            raise UpstreamError("Discord token exchange failed")
        return access_token

    async def fetch_user(self, access_token: str) -> DiscordIdentity:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.api_base}/users/@me",
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                response.raise_for_status()
                profile = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error("discord_profile_http_error", status_code=exc.response.status_code)
            raise UpstreamError("Failed to fetch Discord user") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("discord_profile_error", error=str(exc))
            raise UpstreamError("Failed to fetch Discord user") from exc

        if not isinstance(profile, dict) or not profile.get("id"):
            logger.error("discord_profile_invalid")
            raise UpstreamError("Failed to fetch Discord user")
        return DiscordIdentity(id=str(profile["id"]), username=str(profile.get("username") or ""))
