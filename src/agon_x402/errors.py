"""Error taxonomy shared by the consumer and merchant sides.

Every error body returned by the Agon backend has the shape
``{"error": <code>, "message": <str>, "details": {...}}``. Both SDK halves
turn those bodies (and local transport failures) into :class:`AgonError`.
"""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, Literal, Mapping, Optional, get_args

ErrorCode = Literal[
    # account / auth
    "account_not_found",
    "account_already_exists",
    "wallet_address_invalid",
    "invalid_api_key",
    "api_key_revoked",
    "api_key_not_found",
    # balance
    "insufficient_balance",
    "insufficient_available_balance",
    "withdrawal_exceeds_available",
    # deposits
    "deposit_tx_not_found",
    "deposit_tx_invalid_destination",
    "deposit_tx_invalid_mint",
    "deposit_tx_already_credited",
    "deposit_tx_not_confirmed",
    # platform
    "platform_not_found",
    "platform_inactive",
    "invalid_platform_key",
    # tokens / reservations
    "reservation_not_found",
    "reservation_already_consumed",
    "reservation_already_released",
    "reservation_expired",
    "duplicate_request_id",
    # auto-refill
    "refill_not_active",
    "refill_monthly_limit_reached",
    "refill_delegation_insufficient",
    "refill_wallet_insufficient",
    # passthrough
    "proxy_payment_required_invalid",
    "proxy_merchant_unreachable",
    "proxy_x402_payment_failed",
    "proxy_unsupported_network",
    "proxy_disabled",
    "proxy_domain_blocked",
    # spending controls
    "spending_limit_exceeded",
    "spending_override_invalid",
    "spending_override_expired",
    "spending_override_signature_mismatch",
    # general
    "payment_required",
    "validation_error",
    "rate_limited",
    "internal_error",
]

DenialReason = Literal[
    "insufficient_balance",
    "invalid_consumer_token",
    "consumer_key_revoked",
    "token_already_used",
    "amount_exceeds_token_cap",
    "duplicate_request",
    "platform_not_found",
    "spending_limit_exceeded",
    "rate_limited",
]

ERROR_CODES: FrozenSet[str] = frozenset(get_args(ErrorCode))
DENIAL_REASONS: FrozenSet[str] = frozenset(get_args(DenialReason))

_BALANCE_CODES = frozenset(
    {"insufficient_balance", "insufficient_available_balance", "withdrawal_exceeds_available"}
)
_AUTH_CODES = frozenset({"invalid_api_key", "api_key_revoked", "invalid_platform_key"})


class AgonError(RuntimeError):
    """A protocol failure: HTTP status, closed error code, message and details."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        details = dict(details or {})
        if code not in ERROR_CODES and code not in DENIAL_REASONS:
            details["backend_error"] = code
            code = "internal_error"
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def __repr__(self) -> str:
        return f"AgonError({self.status_code}, {self.code!r}, {self.message!r})"

    @classmethod
    def from_body(cls, status_code: int, body: Mapping[str, Any]) -> "AgonError":
        details = body.get("details")
        return cls(
            status_code,
            str(body.get("error") or "internal_error"),
            str(body.get("message") or f"Agon API returned {status_code}"),
            details if isinstance(details, Mapping) else None,
        )

    def is_code(self, code: str) -> bool:
        return self.code == code

    def is_insufficient_balance(self) -> bool:
        return self.code in _BALANCE_CODES

    def is_auth_error(self) -> bool:
        return self.code in _AUTH_CODES

    def is_spending_limit_exceeded(self) -> bool:
        return self.code == "spending_limit_exceeded"

    def is_override_available(self) -> bool:
        return self.is_spending_limit_exceeded() and self.details.get("override_available") is True

    def override_sign_message(self) -> Optional[str]:
        """The challenge the backend wants signed, if an override is on offer."""
        if not self.is_override_available():
            return None
        message = self.details.get("sign_message")
        return message if isinstance(message, str) and message else None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = dict(self.details)
        return body
