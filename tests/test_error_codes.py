from __future__ import annotations

import pytest

from errors import ERROR_CODE_MAP, explain_error
from licensing.errors import (
    ALL_ERROR_TYPES,
    InvalidRequestError,
    LicenseError,
    RateLimitedError,
    SignatureMismatchError,
    UnauthorizedError,
)


@pytest.mark.parametrize("error_type", ALL_ERROR_TYPES)
def test_every_license_error_has_a_message(error_type) -> None:
    assert issubclass(error_type, LicenseError)
    assert error_type.error_code in ERROR_CODE_MAP
    assert 400 <= error_type.status_code < 600
    explained = explain_error(error_type.error_code)
    assert explained is not None
    assert explained["message"]


def test_error_codes_are_unique() -> None:
    codes = [item.error_code for item in ALL_ERROR_TYPES]
    assert len(codes) == len(set(codes))


def test_error_instances_keep_message_and_code() -> None:
    exc = InvalidRequestError("缺少必要参数: userId")
    assert str(exc) == "缺少必要参数: userId"
    assert exc.error_code == "INVALID_REQUEST"
    assert exc.status_code == 400

    assert SignatureMismatchError("sign error").status_code == 400
    assert UnauthorizedError("无权限").status_code == 403

    limited = RateLimitedError("slow down", retry_after_seconds=12, limit=60)
    assert limited.retry_after_seconds == 12
    assert limited.limit == 60


def test_unknown_codes_are_not_explained() -> None:
    assert explain_error(None) is None
    assert explain_error("NOT_A_CODE") is None
    assert explain_error("INTERNAL_SERVER_ERROR") is not None
