from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "server_error",
    "upstream_error",
    "store_unavailable",
})

MAX_TOKEN_LENGTH = 2048


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelRequest(BaseModel):
    # Clients send camelCase; handlers read snake_case attributes
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class RefreshTokenRequest(_CamelRequest):
    refresh_token: str = Field(..., alias="refreshToken", min_length=1, max_length=MAX_TOKEN_LENGTH)


class InitiateVerificationRequest(_CamelRequest):
    guild_id: str = Field(..., alias="guildId", min_length=1, max_length=20)
    user_discord_id: str = Field(..., alias="userDiscordId", min_length=1, max_length=20)


class CompleteVerificationRequest(_CamelRequest):
    signature: str = Field(..., pattern=r"^0x[0-9a-fA-F]+$", max_length=1024)
    wallet_address: str = Field(..., alias="walletAddress", pattern=r"^0x[0-9a-fA-F]{40}$")


class TokenPairResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")


class InitiateVerificationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str
    verify_url: str = Field(..., alias="verifyUrl")


class ChallengeView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_name: str = Field(..., alias="projectName")
    message: str


class CompletedVerificationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId")
    guild_id: str = Field(..., alias="guildId")
    user_discord_id: str = Field(..., alias="userDiscordId")
    wallet_address: str = Field(..., alias="walletAddress")
    status: str = "queued"


class CurrentUserResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: str
    display_name: str = Field(..., alias="username")
    expires_at: int = Field(..., alias="expiresAt")
