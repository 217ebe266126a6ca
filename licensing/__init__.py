from .accumulator import AccumulatedSubscription, TokenClaim, accumulate, term_duration_seconds
from .db import (
    ENGINE,
    SessionLocal,
    build_session_factory,
    init_license_db,
    session_scope,
)
from .errors import (
    ConfigurationError,
    GatewayRejectedError,
    GatewayUnavailableError,
    InvalidRequestError,
    InvalidTermError,
    LicenseError,
    OrderNotFoundError,
    PaymentValidationError,
    RateLimitedError,
    SignatureMismatchError,
    TokenDecodeError,
    TrialAlreadyUsedError,
    UnauthorizedError,
)
from .gateway import (
    BasePaymentGateway,
    GatewayOrder,
    GatewayOrderStatus,
    MockGateway,
    ZPayGateway,
    get_payment_gateway,
)
from .gateway_sign import canonical_string, sign_gateway_params, verify_gateway_signature
from .models import (
    ActivationToken,
    Base,
    LicenseAuditLog,
    LicenseOrder,
    OrderStatus,
    SubscriptionRecord,
    Term,
    TokenSource,
    TrialRecord,
)
from .rate_limit import FixedWindowRateLimiter, RateLimitResult
from .repository import LicenseRepository, LicenseStateError
from .service import (
    CheckoutResult,
    ConfirmResult,
    LicenseService,
    NotifyOutcome,
    PaymentStatus,
    SubscriptionView,
    build_license_service,
)
from .token_codec import DecodedToken, VerifiedToken, decode, encode, issue_token, verify_token
from .verifier import VipStatus, calculate_status

__all__ = [
    "Base",
    "ENGINE",
    "SessionLocal",
    "Term",
    "OrderStatus",
    "TokenSource",
    "LicenseOrder",
    "ActivationToken",
    "TrialRecord",
    "SubscriptionRecord",
    "LicenseAuditLog",
    "LicenseError",
    "InvalidRequestError",
    "InvalidTermError",
    "TokenDecodeError",
    "SignatureMismatchError",
    "OrderNotFoundError",
    "GatewayRejectedError",
    "GatewayUnavailableError",
    "PaymentValidationError",
    "TrialAlreadyUsedError",
    "RateLimitedError",
    "UnauthorizedError",
    "ConfigurationError",
    "DecodedToken",
    "VerifiedToken",
    "encode",
    "decode",
    "issue_token",
    "verify_token",
    "canonical_string",
    "sign_gateway_params",
    "verify_gateway_signature",
    "TokenClaim",
    "AccumulatedSubscription",
    "accumulate",
    "term_duration_seconds",
    "VipStatus",
    "calculate_status",
    "BasePaymentGateway",
    "GatewayOrder",
    "GatewayOrderStatus",
    "MockGateway",
    "ZPayGateway",
    "get_payment_gateway",
    "FixedWindowRateLimiter",
    "RateLimitResult",
    "LicenseRepository",
    "LicenseStateError",
    "LicenseService",
    "CheckoutResult",
    "ConfirmResult",
    "PaymentStatus",
    "NotifyOutcome",
    "SubscriptionView",
    "build_license_service",
    "build_session_factory",
    "init_license_db",
    "session_scope",
]
