from __future__ import annotations

import pytest

from licensing.errors import InvalidTermError, TokenDecodeError
from licensing.license_crypto import generate_key_pair, load_private_key
from licensing.models import Term
from licensing.token_codec import decode, encode, issue_token, to_base36, verify_token

PURCHASE_MS = 1_700_000_000_123


def _key():
    return load_private_key(generate_key_pair().private_key_hex)


def test_encode_uses_uppercase_base36_seconds() -> None:
    token = encode(PURCHASE_MS, "1y", "30450221abcdef")
    assert token == f"{to_base36(1_700_000_000)}_1y_30450221abcdef"
    assert token.split("_")[0] == token.split("_")[0].upper()
    assert to_base36(0) == "0"
    assert to_base36(35) == "Z"
    assert to_base36(36) == "10"


def test_decode_truncates_to_whole_seconds() -> None:
    decoded = decode(encode(PURCHASE_MS, Term.LIFETIME, "ab01"))
    assert decoded.purchase_time_ms == 1_700_000_000_000
    assert decoded.purchase_seconds == 1_700_000_000
    assert decoded.term == "Lifetime"
    assert decoded.signature_hex == "ab01"


def test_encode_rejects_unknown_term_and_bad_signature() -> None:
    with pytest.raises(InvalidTermError):
        encode(PURCHASE_MS, "2w", "ab")
    with pytest.raises(TokenDecodeError):
        encode(PURCHASE_MS, "1m", "not-hex")
    with pytest.raises(TokenDecodeError):
        encode(-1, "1m", "ab")


@pytest.mark.parametrize(
    "token",
    ["", "abc", "A_1m", "A_1m_ab_cd", "A-B_1m_ab", "_1m_ab", "A__ab", "A_1m_"],
)
def test_decode_rejects_malformed_tokens(token: str) -> None:
    with pytest.raises(TokenDecodeError):
        decode(token)


def test_issued_token_verifies_only_for_its_identity() -> None:
    key = _key()
    token = issue_token("alice", "1m", PURCHASE_MS, key)

    verified = verify_token("alice", token, key.public_key())
    assert verified is not None
    assert verified.term == Term.MONTH
    assert verified.purchase_seconds == 1_700_000_000
    assert verified.code == token

    assert verify_token("bob", token, key.public_key()) is None
    assert verify_token("alice", token, _key().public_key()) is None


def test_tampered_fields_fail_verification() -> None:
    key = _key()
    token = issue_token("alice", "1m", PURCHASE_MS, key)
    purchase, _, signature = token.split("_")

    assert verify_token("alice", f"{purchase}_1y_{signature}", key.public_key()) is None
    shifted = to_base36(int(purchase, 36) + 1)
    assert verify_token("alice", f"{shifted}_1m_{signature}", key.public_key()) is None
    assert verify_token("alice", "garbage", key.public_key()) is None


def test_oversized_purchase_field_is_a_decode_error() -> None:
    huge = "1" * 5000 + "_1y_3045"
    with pytest.raises(TokenDecodeError):
        decode(huge)
    with pytest.raises(TokenDecodeError):
        decode("1" * 14 + "_1m_ab")
    assert decode("1" * 13 + "_1m_ab").term == "1m"
    assert verify_token("alice", huge, _key().public_key()) is None
