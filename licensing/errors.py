from __future__ import annotations

from typing import Final


class LicenseError(RuntimeError):
    """Base class for every failure the licensing core reports to a caller."""

    error_code: str = "LICENSE_ERROR"
    status_code: int = 400

    def __init__(self, message: str = "", *, error_code: str | None = None) -> None:
        super().__init__(message or self.error_code)
        if error_code:
            self.error_code = error_code


class InvalidRequestError(LicenseError):
    error_code = "INVALID_REQUEST"
    status_code = 400


class InvalidTermError(LicenseError):
    error_code = "INVALID_TERM"
    status_code = 400


class TokenDecodeError(LicenseError):
    error_code = "TOKEN_DECODE_ERROR"
    status_code = 400


class SignatureMismatchError(LicenseError):
    error_code = "SIGNATURE_MISMATCH"
    status_code = 400


class OrderNotFoundError(LicenseError):
    error_code = "ORDER_NOT_FOUND"
    status_code = 404


class GatewayRejectedError(LicenseError):
    error_code = "GATEWAY_REJECTED"
    status_code = 502


class GatewayUnavailableError(LicenseError):
    error_code = "GATEWAY_UNAVAILABLE"
    status_code = 502


class PaymentValidationError(LicenseError):
    error_code = "PAYMENT_VALIDATION_FAILED"
    status_code = 400


class TrialAlreadyUsedError(LicenseError):
    error_code = "TRIAL_ALREADY_USED"
    status_code = 409


class RateLimitedError(LicenseError):
    error_code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str = "", *, retry_after_seconds: int = 0, limit: int = 0) -> None:
        super().__init__(message)
        self.retry_after_seconds = max(0, int(retry_after_seconds))
        self.limit = int(limit)


class UnauthorizedError(LicenseError):
    error_code = "UNAUTHORIZED"
    status_code = 403


class ConfigurationError(LicenseError):
    error_code = "CONFIGURATION_ERROR"
    status_code = 503


ALL_ERROR_TYPES: Final[tuple[type[LicenseError], ...]] = (
    InvalidRequestError,
    InvalidTermError,
    TokenDecodeError,
    SignatureMismatchError,
    OrderNotFoundError,
    GatewayRejectedError,
    GatewayUnavailableError,
    PaymentValidationError,
    TrialAlreadyUsedError,
    RateLimitedError,
    UnauthorizedError,
    ConfigurationError,
)
