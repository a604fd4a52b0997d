from __future__ import annotations

import json
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from rolegate.logging import get_logger
from rolegate.service.errors import ChallengeNotFoundError, ValidationError
from rolegate.storage.models import KeyValueStore

logger = get_logger(__name__)

TOKEN_BYTES = 32
NONCE_BYTES = 16

_TOKEN_PATTERN = re.compile(r"[0-9a-f]{64}")


def build_verification_message(project_name: str, nonce: str) -> str:
    """Exact text the holder's wallet signs for a challenge."""
    return f"Verify Discord account for {project_name}\nNonce: {nonce}"


@dataclass(frozen=True)
class VerificationChallenge:
    project_id: str
    project_name: str
    guild_id: str
    user_discord_id: str
    nonce: str
    created_at: int

    @property
    def message(self) -> str:
        return build_verification_message(self.project_name, self.nonce)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "projectName": self.project_name,
            "guildId": self.guild_id,
            "userDiscordId": self.user_discord_id,
            "nonce": self.nonce,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_json(cls, raw: str) -> "VerificationChallenge":
        data = json.loads(raw)
        return cls(
            project_id=str(data["projectId"]),
            project_name=str(data["projectName"]),
            guild_id=str(data["guildId"]),
            user_discord_id=str(data["userDiscordId"]),
            nonce=str(data["nonce"]),
            created_at=int(data["createdAt"]),
        )


def ensure_token_shape(token: str) -> str:
    if not isinstance(token, str) or not _TOKEN_PATTERN.fullmatch(token):
        raise ValidationError("Invalid verification token")
    return token


class VerificationChallenges:
    """Single-use challenges binding (project, guild, user) to a signing nonce.

    ``peek`` is repeatable so the signing prompt can be re-rendered;
    ``complete`` removes the record with the store's atomic ``take``.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int = 15 * 60,
        key_prefix: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self._clock = clock

    def key_for(self, token: str) -> str:
        return f"{self.key_prefix}vn:{token}"

    async def create(
        self, project_id: str, project_name: str, guild_id: str, user_discord_id: str
    ) -> str:
        token = secrets.token_hex(TOKEN_BYTES)
        challenge = VerificationChallenge(
            project_id=project_id,
            project_name=project_name,
            guild_id=guild_id,
            user_discord_id=user_discord_id,
            nonce=secrets.token_hex(NONCE_BYTES),
            created_at=int(self._clock() * 1000),
        )
        await self.store.set(self.key_for(token), challenge.to_json(), self.ttl_seconds)
        logger.info(
            "verification_challenge_created",
            project_id=project_id,
            guild_id=guild_id,
            user_discord_id=user_discord_id,
        )
        return token

    def _decode(self, raw: Optional[str]) -> VerificationChallenge:
        if raw is None:
            raise ChallengeNotFoundError()
        try:
            return VerificationChallenge.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.error("verification_challenge_corrupt")
            raise ChallengeNotFoundError() from None

    async def peek(self, token: str) -> VerificationChallenge:
        ensure_token_shape(token)
        return self._decode(await self.store.get(self.key_for(token)))

    async def complete(self, token: str) -> VerificationChallenge:
        ensure_token_shape(token)
        challenge = self._decode(await self.store.take(self.key_for(token)))
        logger.info(
            "verification_challenge_completed",
            project_id=challenge.project_id,
            user_discord_id=challenge.user_discord_id,
        )
        return challenge

    async def complete_and_enqueue(
        self, token: str, challenge: VerificationChallenge, queue: str, job: str
    ) -> None:
        """Claim a previously peeked challenge and queue ``job`` in one store step.

        Either the challenge is gone and the job is queued, or neither
        happened. ``ChallengeNotFoundError`` means another request completed
        or burned the challenge (or it expired) after it was read.
        """
        ensure_token_shape(token)
        claimed = await self.store.take_and_enqueue(
            self.key_for(token), challenge.to_json(), queue, job
        )
        if not claimed:
            raise ChallengeNotFoundError()
        logger.info(
            "verification_challenge_completed",
            project_id=challenge.project_id,
            user_discord_id=challenge.user_discord_id,
        )

    async def discard(self, token: str) -> None:
        """Burn a challenge without completing it."""
        await self.store.delete(self.key_for(token))
        logger.info("verification_challenge_discarded")
