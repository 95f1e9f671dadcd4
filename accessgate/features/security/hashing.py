"""
Secret hashing for finance PINs and reset tokens.

PIN digests are HMAC-SHA256 keyed by the server-held salt, so the same PIN
always maps to the same hex digest for a given deployment. Reset tokens are
stored as a plain SHA-256 digest: they already carry 256 bits of entropy.
"""
from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from typing import Optional

from accessgate.core.config import settings
from accessgate.core.errors import ValidationError

PIN_LENGTH = 4
DIGEST_HEX_LENGTH = 64
RESET_TOKEN_BYTES = 32

_PIN_RE = re.compile(r"^[0-9]{4}$")


class InvalidPinFormat(ValidationError):
    code = "invalid_pin_format"


def validate_pin_format(pin: Optional[str]) -> str:
    """Return the PIN unchanged, or raise InvalidPinFormat if it is not exactly 4 digits."""
    if not isinstance(pin, str) or not _PIN_RE.match(pin):
        raise InvalidPinFormat(f"PIN must be exactly {PIN_LENGTH} digits")
    return pin


def _salt(salt: Optional[str]) -> bytes:
    return (salt if salt is not None else settings.FINANCE_PIN_SALT).encode("utf-8")


def hash_pin(pin: str, salt: Optional[str] = None) -> str:
    validate_pin_format(pin)
    return hmac.new(_salt(salt), pin.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_pin(pin: str, digest: Optional[str], salt: Optional[str] = None) -> bool:
    """Constant-time check of a PIN attempt against a stored digest.

    Malformed attempts and missing digests are simply False; callers that
    need to report a format problem call validate_pin_format first.
    """
    if not digest or len(digest) != DIGEST_HEX_LENGTH:
        return False
    if not isinstance(pin, str) or not _PIN_RE.match(pin):
        return False
    candidate = hmac.new(_salt(salt), pin.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(candidate, digest)


def generate_reset_token() -> str:
    return secrets.token_urlsafe(RESET_TOKEN_BYTES)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
