"""Configuration objects and environment lookup."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

import httpx

from .constants import DEFAULT_PLATFORM_TIMEOUT, Price
from .errors import AgonError

PricingFunction = Callable[[Any], Union[Price, Awaitable[Price]]]


def env_value(
    keys: Union[str, Sequence[str]],
    *,
    required: bool = True,
    default: Optional[str] = None,
) -> Optional[str]:
    """Return the first non-blank environment value among ``keys``."""
    key_list = (keys,) if isinstance(keys, str) else tuple(keys)
    for key in key_list:
        value = os.environ.get(key)
        if value is not None and value.strip():
            return value.strip()

    if not required:
        return default

    joined = "/".join(key_list)
    raise AgonError(400, "validation_error", f"Missing configuration for {joined}")


def env_float(keys: Union[str, Sequence[str]], default: float) -> float:
    raw = env_value(keys, required=False)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise AgonError(400, "validation_error", f"{keys} must be a number, got {raw!r}") from exc


@dataclass
class PlatformConfig:
    """Merchant-side settings for :class:`~agon_x402.platform.AgonPlatformCore`."""

    agon_url: str
    platform_key: str
    pricing: Union[Price, PricingFunction]
    description: Optional[str] = None
    mime_type: Optional[str] = None
    timeout: float = DEFAULT_PLATFORM_TIMEOUT
    http_client: Optional[httpx.AsyncClient] = None
    on_payment_required: Optional[Callable[[Any], None]] = None
    on_authorized: Optional[Callable[[str, int], None]] = None
    on_consumed: Optional[Callable[[str, int], None]] = None

    def __post_init__(self) -> None:
        if not self.agon_url:
            raise AgonError(400, "validation_error", "agon_url is required")
        if not self.platform_key:
            raise AgonError(400, "validation_error", "platform_key is required")

    @classmethod
    def from_env(cls, **overrides: Any) -> "PlatformConfig":
        values = dict(overrides)
        if "agon_url" not in values:
            values["agon_url"] = env_value("AGON_URL")
        if "platform_key" not in values:
            values["platform_key"] = env_value("AGON_PLATFORM_KEY")
        if "pricing" not in values:
            values["pricing"] = env_value("AGON_PRICE", required=False, default="$0.001")
        if "timeout" not in values:
            values["timeout"] = env_float("AGON_TIMEOUT", DEFAULT_PLATFORM_TIMEOUT)
        return cls(**values)
