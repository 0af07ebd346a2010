"""Shared constants for the Agon payment protocol."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Tuple, Union

from .errors import AgonError

# Consumer API key. Only ever sent on direct consumer -> Agon backend calls.
HEADER_CONSUMER_KEY = "X-AGON-KEY"
# Short-lived capability token forwarded by merchants to /authorize.
HEADER_CONSUMER_TOKEN = "X-AGON-TOKEN"
HEADER_OVERRIDE_SIGNATURE = "X-AGON-OVERRIDE-SIG"
HEADER_OVERRIDE_MESSAGE = "X-AGON-OVERRIDE-MSG"

HEADER_WALLET = "X-AGON-WALLET"
HEADER_WALLET_SIGNATURE = "X-AGON-SIGNATURE"
HEADER_WALLET_TIMESTAMP = "X-AGON-TIMESTAMP"

# Generic x402 headers, only used in passthrough mode.
HEADER_PAYMENT_REQUIRED = "PAYMENT-REQUIRED"
HEADER_PAYMENT_SIGNATURE = "PAYMENT-SIGNATURE"
HEADER_PAYMENT_RESPONSE = "PAYMENT-RESPONSE"

PAYMENT_HEADERS: Tuple[str, ...] = (
    HEADER_CONSUMER_KEY,
    HEADER_CONSUMER_TOKEN,
    HEADER_OVERRIDE_SIGNATURE,
    HEADER_OVERRIDE_MESSAGE,
    HEADER_PAYMENT_REQUIRED,
    HEADER_PAYMENT_SIGNATURE,
    HEADER_PAYMENT_RESPONSE,
)

USDC_DECIMALS = 6
USDC_ONE = 10**USDC_DECIMALS
CURRENCY = "USDC"

USDC_MINTS: Dict[str, str] = {
    "devnet": "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
    "mainnet": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
}

DEFAULT_CLIENT_TIMEOUT = 10.0
DEFAULT_PLATFORM_TIMEOUT = 5.0

DEFAULT_TOKEN_TTL = 60
MIN_TOKEN_TTL = 1
MAX_TOKEN_TTL = 300

OVERRIDE_PREFIX = "agon:override"
WALLET_AUTH_PREFIX = "agon:auth"

Price = Union[str, int, float, Decimal]


def _invalid_price(price: object) -> AgonError:
    return AgonError(400, "validation_error", f'Invalid price string: "{price}"')


def parse_price(price: Price) -> int:
    """Convert a price into USDC smallest units.

    ``"$0.001"`` is read as dollars (1000 units). Bare numbers and numeric
    strings are already in smallest units.
    """
    if isinstance(price, bool):
        raise _invalid_price(price)
    if isinstance(price, int):
        if price < 0:
            raise _invalid_price(price)
        return price
    if isinstance(price, (float, Decimal)):
        amount = Decimal(str(price))
        dollars = False
    elif isinstance(price, str):
        clean = price.strip()
        dollars = clean.startswith("$")
        if dollars:
            clean = clean[1:].strip()
        try:
            amount = Decimal(clean)
        except InvalidOperation as exc:
            raise _invalid_price(price) from exc
    else:
        raise AgonError(400, "validation_error", f"Invalid price type: {type(price)}")

    if not amount.is_finite() or amount < 0:
        raise _invalid_price(price)
    if dollars:
        amount = amount * USDC_ONE
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def usdc_to_units(amount_usdc: Union[int, float, str, Decimal]) -> int:
    return parse_price(f"${amount_usdc}")


def units_to_usdc(units: int) -> Decimal:
    return Decimal(units) / USDC_ONE


def clamp_ttl(ttl: int | None) -> int:
    if ttl is None:
        return DEFAULT_TOKEN_TTL
    return max(MIN_TOKEN_TTL, min(MAX_TOKEN_TTL, int(ttl)))
