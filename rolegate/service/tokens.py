from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal

from rolegate.logging import get_logger
from rolegate.service.errors import InvalidTokenError

logger = get_logger(__name__)

TokenKind = Literal["access", "refresh"]

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    display_name: str
    issued_at: int
    expires_at: int
    kind: str = ACCESS


@dataclass(frozen=True)
class RefreshClaims:
    subject: str
    token_id: str
    issued_at: int
    expires_at: int
    kind: str = REFRESH


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


class TokenCodec:
    """HS256 compact JWS codec for the two token kinds.

    Access and refresh tokens are signed with different secrets and carry a
    ``type`` claim, so neither can be replayed as the other. Verification
    failures of every sort raise one ``InvalidTokenError`` with the same
    message.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        access_ttl_seconds: int = 60 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("both token secrets are required")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def _encode(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(secret, signing_input)}"

    def issue_access_token(self, subject: str, display_name: str) -> str:
        now = self._now()
        return self._encode(
            {
                "sub": subject,
                "username": display_name,
                "type": ACCESS,
                "iat": now,
                "exp": now + self.access_ttl_seconds,
            },
            self.access_secret,
        )

    def issue_refresh_token(self, subject: str, token_id: str) -> str:
        now = self._now()
        return self._encode(
            {
                "sub": subject,
                "jti": token_id,
                "type": REFRESH,
                "iat": now,
                "exp": now + self.refresh_ttl_seconds,
            },
            self.refresh_secret,
        )

    def verify(self, token: str, expected_kind: TokenKind, secret: str) -> dict[str, Any]:
        """Return the payload of ``token`` or raise ``InvalidTokenError``."""
        if not isinstance(token, str):
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError() from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError, RecursionError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        # Reject "none" and asymmetric algorithms outright
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", kind=expected_kind)
            raise InvalidTokenError()

        expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError, RecursionError):
            logger.warning("jwt_payload_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(payload, dict):
            raise InvalidTokenError()

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidTokenError()
        if exp <= self._now():
            raise InvalidTokenError()
        if payload.get("type") != expected_kind:
            logger.warning("jwt_kind_mismatch", expected=expected_kind)
            raise InvalidTokenError()
        if not isinstance(payload.get("sub"), str) or not payload["sub"]:
            raise InvalidTokenError()
        return payload

    def verify_access(self, token: str) -> AccessClaims:
        payload = self.verify(token, ACCESS, self.access_secret)
        return AccessClaims(
            subject=payload["sub"],
            display_name=str(payload.get("username", "")),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self.verify(token, REFRESH, self.refresh_secret)
        token_id = payload.get("jti")
        if not isinstance(token_id, str) or not token_id:
            raise InvalidTokenError()
        return RefreshClaims(
            subject=payload["sub"],
            token_id=token_id,
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )
