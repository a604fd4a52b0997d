from __future__ import annotations

import hmac
from typing import Optional

from rolegate.service.errors import AuthenticationError, ForbiddenError, InvalidTokenError
from rolegate.service.tokens import AccessClaims, TokenCodec

BEARER = "Bearer "
BOT = "Bot "
ADMIN = "Admin "

_GENERIC_UNAUTHORIZED = "Invalid or expired access token"


def extract_credential(header: Optional[str], scheme: str) -> Optional[str]:
    """Strip an exact, case-sensitive scheme prefix such as ``"Bot "``."""
    if not header or not header.startswith(scheme):
        return None
    return header[len(scheme):]


class AccessTokenGate:
    """Bearer access-token check. Every failure looks the same to the caller."""

    def __init__(self, codec: TokenCodec) -> None:
        self.codec = codec

    def check(self, header: Optional[str]) -> AccessClaims:
        token = extract_credential(header, BEARER)
        if not token:
            raise AuthenticationError(_GENERIC_UNAUTHORIZED)
        try:
            return self.codec.verify_access(token)
        except InvalidTokenError:
            raise AuthenticationError(_GENERIC_UNAUTHORIZED) from None


class SharedSecretGuard:
    """Fixed-secret check for an internal process identity (bot or admin)."""

    def __init__(self, scheme: str, secret: str, *, label: str) -> None:
        if not secret:
            raise ValueError(f"{label} secret is required")
        self.scheme = scheme
        self.label = label
        self._secret = secret.encode("utf-8")

    def check(self, header: Optional[str]) -> None:
        provided = extract_credential(header, self.scheme)
        if provided is None:
            raise AuthenticationError(f"Missing or invalid {self.label} authorization")
        if not hmac.compare_digest(provided.encode("utf-8"), self._secret):
            raise ForbiddenError(f"Invalid {self.label} secret")
