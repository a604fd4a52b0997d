from __future__ import annotations

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import is_checksum_address, to_checksum_address

from rolegate.logging import get_logger
from rolegate.service.errors import ValidationError

logger = get_logger(__name__)

SIGNATURE_MISMATCH = (
    "Signature verification failed. The message was not signed by the provided address."
)


def checksum_address(address: str) -> str:
    """Return the EIP-55 form of ``address``.

    All-lowercase and all-uppercase addresses carry no checksum and are
    accepted; mixed case must match the checksum exactly.
    """
    body = address[2:]
    if body != body.lower() and body != body.upper() and not is_checksum_address(address):
        raise ValidationError("Invalid wallet address checksum")
    return to_checksum_address(address)


def recover_signer(message: str, signature: str) -> str:
    """Recover the EIP-191 ``personal_sign`` signer of ``message``."""
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as exc:
        # eth-account and eth-keys raise several error types for malformed signatures
        logger.warning("wallet_signature_unrecoverable", error_type=type(exc).__name__)
        raise ValidationError(SIGNATURE_MISMATCH) from None


def verify_wallet_signature(message: str, signature: str, address: str) -> str:
    """Check that ``address`` signed ``message``; returns the checksummed address."""
    expected = checksum_address(address)
    if recover_signer(message, signature) != expected:
        logger.warning("wallet_signature_mismatch", wallet_address=expected)
        raise ValidationError(SIGNATURE_MISMATCH)
    return expected
