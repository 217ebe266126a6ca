from __future__ import annotations

import re
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

CURVE = ec.SECP256K1()
SIGNATURE_ALGORITHM = ec.ECDSA(hashes.SHA256())

_PRIVATE_HEX_RE = re.compile(r"^[0-9a-fA-F]{1,64}$")
_HEX_RE = re.compile(r"^(?:[0-9a-fA-F]{2})+$")


class LicenseKeyError(ValueError):
    pass


@dataclass(frozen=True)
class KeyPair:
    private_key_hex: str
    public_key_hex: str


def _normalize_pem(value: str) -> str:
    pem = str(value or "").strip()
    if not pem:
        return ""
    # Allow storing PEM in env vars with literal "\n" separators.
    if "\\n" in pem and "BEGIN" in pem:
        pem = pem.replace("\\n", "\n")
    return pem


def _read_text(path: str) -> str:
    if not path:
        return ""
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read()


def load_key_material(*, value: str = "", path: str = "") -> str:
    material = _normalize_pem(value)
    if material:
        return material
    if path:
        return _normalize_pem(_read_text(path))
    return ""


def load_private_key(material: str) -> ec.EllipticCurvePrivateKey:
    """
    Parse a secp256k1 private key.

    Accepts a raw scalar as hex (the format printed by scripts/generate_keys.py)
    or a PEM encoded PKCS8 / SEC1 key.
    """

    raw = _normalize_pem(material)
    if not raw:
        raise LicenseKeyError("missing license private key")
    if "BEGIN" in raw:
        key = serialization.load_pem_private_key(raw.encode("utf-8"), password=None)
        if not isinstance(key, ec.EllipticCurvePrivateKey) or key.curve.name != CURVE.name:
            raise LicenseKeyError("license private key must be a secp256k1 EC key")
        return key
    if not _PRIVATE_HEX_RE.fullmatch(raw):
        raise LicenseKeyError("license private key must be hex or PEM")
    scalar = int(raw, 16)
    if scalar <= 0:
        raise LicenseKeyError("license private key scalar must be positive")
    try:
        return ec.derive_private_key(scalar, CURVE)
    except ValueError as exc:
        raise LicenseKeyError(f"invalid license private key: {exc}") from exc


def load_public_key(material: str) -> ec.EllipticCurvePublicKey:
    """Parse a SEC1 hex point (04…/02…/03…) or a SubjectPublicKeyInfo PEM."""

    raw = _normalize_pem(material)
    if not raw:
        raise LicenseKeyError("missing license public key")
    if "BEGIN" in raw:
        key = serialization.load_pem_public_key(raw.encode("utf-8"))
        if not isinstance(key, ec.EllipticCurvePublicKey) or key.curve.name != CURVE.name:
            raise LicenseKeyError("license public key must be a secp256k1 EC key")
        return key
    if not _HEX_RE.fullmatch(raw):
        raise LicenseKeyError("license public key must be hex or PEM")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, bytes.fromhex(raw))
    except ValueError as exc:
        raise LicenseKeyError(f"invalid license public key: {exc}") from exc


def public_key_hex(key: ec.EllipticCurvePrivateKey | ec.EllipticCurvePublicKey) -> str:
    public = key.public_key() if isinstance(key, ec.EllipticCurvePrivateKey) else key
    point = public.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    return point.hex()


def generate_key_pair() -> KeyPair:
    key = ec.generate_private_key(CURVE)
    private_hex = format(key.private_numbers().private_value, "064x")
    return KeyPair(private_key_hex=private_hex, public_key_hex=public_key_hex(key))


def build_message(identity: str, purchase_seconds: int, term: str) -> bytes:
    return f"{identity}|{int(purchase_seconds)}|{term}".encode("utf-8")


def sign(message: bytes, private_key: ec.EllipticCurvePrivateKey) -> str:
    """ECDSA/SHA-256 over secp256k1; returns the DER signature as lowercase hex."""

    signature = private_key.sign(message, SIGNATURE_ALGORITHM)
    return signature.hex()


def verify(message: bytes, signature_hex: str, public_key: ec.EllipticCurvePublicKey) -> bool:
    """
    Verify a DER hex signature.

    Malformed hex, malformed DER and a wrong signature all yield False.
    """

    candidate = str(signature_hex or "").strip()
    if not candidate or not _HEX_RE.fullmatch(candidate):
        return False
    try:
        public_key.verify(bytes.fromhex(candidate), message, SIGNATURE_ALGORITHM)
    except (InvalidSignature, ValueError):
        return False
    return True
