"""Wire payloads exchanged with the Agon backend.

Bodies on the wire are ``snake_case`` JSON. Monetary amounts are integers in
USDC smallest units; numeric strings are accepted on input so that backends
which string-encode 64-bit values parse without loss.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional

from .constants import CURRENCY

ReservationStatus = Literal["reserved", "consumed", "released", "expired", "settled"]
AuthorizeStatus = Literal["approved", "denied"]


def _pick(payload: Mapping[str, Any], keys: Iterable[str], default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def to_units(value: Any, *, field_name: str = "amount") -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer amount")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip(), 10)
        except ValueError as exc:
            raise ValueError(f"{field_name} must be an integer amount") from exc
    raise ValueError(f"{field_name} must be an integer amount")


def _optional_units(value: Any, field_name: str) -> Optional[int]:
    return None if value is None else to_units(value, field_name=field_name)


@dataclass
class CreateTokenResponse:
    token: str
    expires_in: int
    max_amount: Optional[int] = None
    budget: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CreateTokenResponse":
        token = payload.get("token")
        if not token:
            raise ValueError("create-token response missing token")
        return cls(
            token=str(token),
            expires_in=int(_pick(payload, ["expires_in", "expiresIn"], 0)),
            max_amount=_optional_units(_pick(payload, ["max_amount", "maxAmount"]), "max_amount"),
            budget=_optional_units(payload.get("budget"), "budget"),
        )


@dataclass
class AuthorizeResponse:
    reservation_id: Optional[str]
    status: AuthorizeStatus
    amount: int
    expires_at: Optional[str] = None
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.status == "approved" and self.reservation_id is not None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AuthorizeResponse":
        status = payload.get("status")
        if status not in ("approved", "denied"):
            raise ValueError(f"authorize response has unknown status {status!r}")
        reservation_id = payload.get("reservation_id")
        details = payload.get("details")
        return cls(
            reservation_id=str(reservation_id) if reservation_id is not None else None,
            status=status,
            amount=to_units(payload.get("amount", 0)),
            expires_at=payload.get("expires_at"),
            reason=payload.get("reason"),
            details=dict(details) if isinstance(details, Mapping) else {},
        )


@dataclass
class ReservationResult:
    """Response to /consume and /release."""

    reservation_id: str
    status: ReservationStatus
    amount: int

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ReservationResult":
        return cls(
            reservation_id=str(payload.get("reservation_id") or ""),
            status=payload.get("status", "reserved"),
            amount=to_units(payload.get("amount", 0)),
        )


@dataclass(frozen=True)
class SpendingOverride:
    signature: str
    message: str

    def to_payload(self) -> Dict[str, str]:
        return {"signature": self.signature, "message": self.message}

    @classmethod
    def from_payload(cls, payload: Any) -> "SpendingOverride":
        if isinstance(payload, SpendingOverride):
            return payload
        if isinstance(payload, Mapping):
            signature = payload.get("signature")
            message = payload.get("message")
            if signature and message:
                return cls(signature=str(signature), message=str(message))
        raise ValueError("override signer must return a signature and message")


@dataclass
class LimitExceededDetails:
    """What the override-decision callback gets to see."""

    limit_type: Optional[str]
    requested: Optional[int]
    limit: Optional[int]
    daily_spent: Optional[int] = None
    merchant_domain: Optional[str] = None
    sign_message: Optional[str] = None

    @classmethod
    def from_details(
        cls, details: Mapping[str, Any], sign_message: Optional[str]
    ) -> "LimitExceededDetails":
        return cls(
            limit_type=details.get("limit_type"),
            requested=_optional_units(details.get("requested"), "requested"),
            limit=_optional_units(details.get("limit"), "limit"),
            daily_spent=_optional_units(details.get("daily_spent"), "daily_spent"),
            merchant_domain=details.get("merchant_domain"),
            sign_message=sign_message,
        )


@dataclass
class ProxyResponse:
    status: int
    headers: Dict[str, str]
    body: str
    amount_charged: int
    tx_signature: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProxyResponse":
        if "status" not in payload:
            raise ValueError("proxy response missing status")
        headers = payload.get("headers") or {}
        body = payload.get("body")
        return cls(
            status=int(payload["status"]),
            headers={str(k): str(v) for k, v in dict(headers).items()},
            body="" if body is None else str(body),
            amount_charged=to_units(_pick(payload, ["amount_charged", "amountCharged"], 0)),
            tx_signature=_pick(payload, ["tx_signature", "txSignature"]),
        )


@dataclass(frozen=True)
class ProxyTransaction:
    """Record of one passthrough payment, attached to the rebuilt response."""

    request_id: str
    method: str
    url: str
    amount_charged: int
    tx_signature: Optional[str]


@dataclass
class AccountBalance:
    account_id: str
    owner_wallet: str
    deposit_address: Optional[str]
    balance: int
    reserved_balance: int
    consumed_balance: int
    available_balance: int
    auto_refill: Optional[Dict[str, Any]] = None
    currency: str = CURRENCY

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AccountBalance":
        return cls(
            account_id=str(payload["account_id"]),
            owner_wallet=str(payload.get("wallet_address") or ""),
            deposit_address=payload.get("deposit_address"),
            balance=to_units(payload.get("balance", 0), field_name="balance"),
            reserved_balance=to_units(payload.get("reserved_balance", 0), field_name="reserved_balance"),
            consumed_balance=to_units(payload.get("consumed_balance", 0), field_name="consumed_balance"),
            available_balance=to_units(payload.get("available_balance", 0), field_name="available_balance"),
            auto_refill=payload.get("auto_refill"),
        )


@dataclass
class RegisterAccountResponse:
    account_id: str
    api_key: str
    deposit_address: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RegisterAccountResponse":
        if not payload.get("api_key") or not payload.get("account_id"):
            raise ValueError("register response missing api_key or account_id")
        return cls(
            account_id=str(payload["account_id"]),
            api_key=str(payload["api_key"]),
            deposit_address=payload.get("deposit_address"),
            raw=dict(payload),
        )


@dataclass
class SpendingControls:
    max_per_request: int
    daily_spending_limit: int
    daily_spent: int
    daily_reset_at: Optional[str]
    proxy_enabled: bool
    proxy_allowed_domains: Optional[List[str]]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SpendingControls":
        domains = payload.get("proxy_allowed_domains")
        return cls(
            max_per_request=to_units(payload.get("max_per_request", 0)),
            daily_spending_limit=to_units(payload.get("daily_spending_limit", 0)),
            daily_spent=to_units(payload.get("daily_spent", 0)),
            daily_reset_at=payload.get("daily_reset_at"),
            proxy_enabled=bool(payload.get("proxy_enabled", False)),
            proxy_allowed_domains=list(domains) if domains is not None else None,
        )


@dataclass
class WithdrawalResult:
    account_id: str
    tx_signature: str
    withdrawn_amount: int
    balance: int
    available_balance: int
    currency: str = CURRENCY

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WithdrawalResult":
        return cls(
            account_id=str(payload["account_id"]),
            tx_signature=str(payload.get("tx_signature") or ""),
            withdrawn_amount=to_units(payload.get("withdrawn_amount", 0)),
            balance=to_units(payload.get("balance", 0)),
            available_balance=to_units(payload.get("available_balance", 0)),
        )


@dataclass
class DepositResult:
    account_id: str
    tx_signature: str
    deposit_amount: int
    balance: int
    available_balance: int
    currency: str = CURRENCY

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "DepositResult":
        return cls(
            account_id=str(payload["account_id"]),
            tx_signature=str(payload.get("tx_signature") or ""),
            deposit_amount=to_units(payload.get("deposit_amount", 0)),
            balance=to_units(payload.get("balance", 0)),
            available_balance=to_units(payload.get("available_balance", 0)),
        )


@dataclass
class PaymentReply:
    """A response the merchant interceptor produced itself, instead of the handler."""

    status: int
    body: Dict[str, Any]
