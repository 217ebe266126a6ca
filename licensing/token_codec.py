from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

from cryptography.hazmat.primitives.asymmetric import ec

from . import license_crypto
from .errors import InvalidTermError, TokenDecodeError
from .models import Term

TOKEN_SEPARATOR: Final[str] = "_"
_BASE36_ALPHABET: Final[str] = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_BASE36_RE = re.compile(r"^[0-9A-Za-z]+$")
_SIGNATURE_RE = re.compile(r"^[0-9a-fA-F]+$")
# Seconds since the epoch fit in 13 base36 digits well past year 9999.
_MAX_PURCHASE_DIGITS: Final[int] = 13


@dataclass(frozen=True)
class DecodedToken:
    purchase_time_ms: int
    term: str
    signature_hex: str

    @property
    def purchase_seconds(self) -> int:
        return self.purchase_time_ms // 1000


@dataclass(frozen=True)
class VerifiedToken:
    identity: str
    term: Term
    purchase_seconds: int
    code: str


def to_base36(value: int) -> str:
    number = int(value)
    if number < 0:
        raise ValueError("base36 value must be non-negative")
    if number == 0:
        return "0"
    digits: list[str] = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def coerce_term(term: str | Term) -> Term:
    if isinstance(term, Term):
        return term
    try:
        return Term(str(term or "").strip())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in Term)
        raise InvalidTermError(f'invalid term "{term}", allowed: {allowed}') from exc


def encode(purchase_time_ms: int, term: str | Term, signature_hex: str) -> str:
    """
    Serialize a token as ``BASE36(seconds)_term_signatureHex``.

    Purchase time is truncated to whole seconds.
    """

    normalized_term = coerce_term(term)
    millis = int(purchase_time_ms)
    if millis < 0:
        raise TokenDecodeError("purchase time must be non-negative")
    signature = str(signature_hex or "").strip()
    if not signature or not _SIGNATURE_RE.fullmatch(signature):
        raise TokenDecodeError("signature must be a hex string")
    seconds = millis // 1000
    return TOKEN_SEPARATOR.join((to_base36(seconds), normalized_term.value, signature))


def decode(token: str) -> DecodedToken:
    """Split a token into its fields. The signature is NOT verified here."""

    raw = str(token or "").strip()
    if not raw or TOKEN_SEPARATOR not in raw:
        raise TokenDecodeError("token is malformed")
    parts = raw.split(TOKEN_SEPARATOR)
    if len(parts) != 3:
        raise TokenDecodeError(f"token must have 3 parts, got {len(parts)}")
    encoded_purchase, term, signature = parts
    if not _BASE36_RE.fullmatch(encoded_purchase):
        raise TokenDecodeError("purchase time is not base36")
    if len(encoded_purchase) > _MAX_PURCHASE_DIGITS:
        raise TokenDecodeError("purchase time is out of range")
    if not term or not signature:
        raise TokenDecodeError("token is missing term or signature")
    seconds = int(encoded_purchase, 36)
    return DecodedToken(purchase_time_ms=seconds * 1000, term=term, signature_hex=signature)


def issue_token(
    identity: str,
    term: str | Term,
    purchase_time_ms: int,
    private_key: ec.EllipticCurvePrivateKey,
) -> str:
    normalized_term = coerce_term(term)
    seconds = int(purchase_time_ms) // 1000
    message = license_crypto.build_message(identity, seconds, normalized_term.value)
    signature = license_crypto.sign(message, private_key)
    return encode(seconds * 1000, normalized_term, signature)


def verify_token(identity: str, token: str, public_key: ec.EllipticCurvePublicKey) -> VerifiedToken | None:
    """Decode and verify a token for ``identity``; None when either step fails."""

    try:
        decoded = decode(token)
    except TokenDecodeError:
        return None
    message = license_crypto.build_message(identity, decoded.purchase_seconds, decoded.term)
    if not license_crypto.verify(message, decoded.signature_hex, public_key):
        return None
    try:
        term = Term(decoded.term)
    except ValueError:
        return None
    return VerifiedToken(
        identity=identity,
        term=term,
        purchase_seconds=decoded.purchase_seconds,
        code=str(token).strip(),
    )
