"""Agon pre-funded payment authorization for HTTP APIs (Python)."""

from __future__ import annotations

from .client import AgonClient
from .config import PlatformConfig
from .constants import (
    CURRENCY,
    DEFAULT_TOKEN_TTL,
    HEADER_CONSUMER_KEY,
    HEADER_CONSUMER_TOKEN,
    HEADER_OVERRIDE_MESSAGE,
    HEADER_OVERRIDE_SIGNATURE,
    HEADER_PAYMENT_REQUIRED,
    MAX_TOKEN_TTL,
    USDC_DECIMALS,
    parse_price,
    units_to_usdc,
    usdc_to_units,
)
from .errors import DENIAL_REASONS, ERROR_CODES, AgonError
from .platform import Admission, AgonPlatformCore
from .schemas import (
    AccountBalance,
    AuthorizeResponse,
    CreateTokenResponse,
    LimitExceededDetails,
    PaymentReply,
    ProxyTransaction,
    ReservationResult,
    SpendingControls,
    SpendingOverride,
)
from .signer import (
    DelegatedSigner,
    KeypairSigner,
    build_override_challenge,
    parse_override_challenge,
    verify_override,
)
from .transport import AgonHttpClient

__all__ = [
    "AgonClient",
    "AgonPlatformCore",
    "AgonHttpClient",
    "Admission",
    "PlatformConfig",
    "AgonError",
    "ERROR_CODES",
    "DENIAL_REASONS",
    "KeypairSigner",
    "DelegatedSigner",
    "build_override_challenge",
    "parse_override_challenge",
    "verify_override",
    "AccountBalance",
    "AuthorizeResponse",
    "CreateTokenResponse",
    "LimitExceededDetails",
    "PaymentReply",
    "ProxyTransaction",
    "ReservationResult",
    "SpendingControls",
    "SpendingOverride",
    "CURRENCY",
    "USDC_DECIMALS",
    "DEFAULT_TOKEN_TTL",
    "MAX_TOKEN_TTL",
    "HEADER_CONSUMER_KEY",
    "HEADER_CONSUMER_TOKEN",
    "HEADER_OVERRIDE_SIGNATURE",
    "HEADER_OVERRIDE_MESSAGE",
    "HEADER_PAYMENT_REQUIRED",
    "parse_price",
    "usdc_to_units",
    "units_to_usdc",
]

try:  # Optional: HTTP wrappers need fastapi or flask at call time
    from .http import (
        fastapi_payment_middleware_from_config,
        flask_payment_middleware_from_config,
    )

    __all__.extend(
        [
            "fastapi_payment_middleware_from_config",
            "flask_payment_middleware_from_config",
        ]
    )
except ImportError:
    fastapi_payment_middleware_from_config = None  # type: ignore[assignment]
    flask_payment_middleware_from_config = None  # type: ignore[assignment]
