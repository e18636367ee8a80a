import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from settlement.config.env import JWT_SECRET, WALLET_NUMBER_ENCRYPTION_KEY
from settlement.utils.errors import LedgerInvariantViolation, ValidationError


def _build_fernet() -> Fernet:
    seed = (WALLET_NUMBER_ENCRYPTION_KEY or JWT_SECRET or "").strip()
    if not seed:
        raise LedgerInvariantViolation("Wallet number encryption key is not configured")
    key = base64.urlsafe_b64encode(hashlib.sha256(seed.encode("utf-8")).digest())
    return Fernet(key)


def encrypt_sensitive_value(value: str) -> str:
    if not value:
        raise ValidationError("Sensitive value missing")
    token = _build_fernet().encrypt(value.encode("utf-8"))
    return token.decode("utf-8")


def decrypt_sensitive_value(token: str) -> str:
    if not token:
        raise ValidationError("Encrypted sensitive value missing")
    try:
        raw = _build_fernet().decrypt(token.encode("utf-8"))
    except InvalidToken:
        raise LedgerInvariantViolation("Stored wallet number cannot be decrypted")
    return raw.decode("utf-8")


def mask_wallet_number(value: str) -> str:
    """Keep the last four digits: 01012345678 -> *******5678."""
    return "*" * max(len(value) - 4, 0) + value[-4:]
