"""Spending-override signers and the override challenge format.

A spending override is an ed25519 signature (base58-encoded) over a challenge
of the form::

    agon:override:<account_id>:<request_id>:<amount>:<merchant_domain>:<timestamp>

The challenge binds account, request, amount, merchant and time, so a captured
signature is useless for any other request.
"""

from __future__ import annotations

import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

import base58
from nacl import signing
from nacl.exceptions import BadSignatureError

from .constants import (
    HEADER_WALLET,
    HEADER_WALLET_SIGNATURE,
    HEADER_WALLET_TIMESTAMP,
    OVERRIDE_PREFIX,
    WALLET_AUTH_PREFIX,
)
from .errors import AgonError
from .schemas import SpendingOverride

SignFunction = Callable[[str], Union[Awaitable[Any], Any]]


class OverrideSigner(Protocol):
    async def sign(self, message: str) -> SpendingOverride: ...


class KeypairSigner:
    """Signs locally with an ed25519 keypair held in memory."""

    def __init__(self, signing_key: signing.SigningKey) -> None:
        self._key = signing_key

    @classmethod
    def generate(cls) -> "KeypairSigner":
        return cls(signing.SigningKey.generate())

    @classmethod
    def from_secret_key(cls, secret: Union[str, bytes]) -> "KeypairSigner":
        """Load a 32-byte seed or a 64-byte ``seed || public key`` secret (raw or base58)."""
        try:
            raw = base58.b58decode(secret) if isinstance(secret, str) else bytes(secret)
        except ValueError as exc:
            raise AgonError(400, "validation_error", "Wallet secret key is not valid base58") from exc
        if len(raw) == 64:
            raw = raw[:32]
        if len(raw) != 32:
            raise AgonError(
                400,
                "validation_error",
                f"Wallet secret key must be 32 or 64 bytes, got {len(raw)}",
            )
        return cls(signing.SigningKey(raw))

    @property
    def public_key(self) -> str:
        return base58.b58encode(bytes(self._key.verify_key)).decode()

    @property
    def secret_key(self) -> str:
        return base58.b58encode(bytes(self._key) + bytes(self._key.verify_key)).decode()

    def sign_text(self, message: str) -> str:
        signed = self._key.sign(message.encode("utf-8"))
        return base58.b58encode(signed.signature).decode()

    async def sign(self, message: str) -> SpendingOverride:
        return SpendingOverride(signature=self.sign_text(message), message=message)

    def auth_headers(self, timestamp_ms: Optional[int] = None) -> Dict[str, str]:
        """Wallet-signature headers for backend calls made without an API key."""
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)
        return {
            HEADER_WALLET: self.public_key,
            HEADER_WALLET_SIGNATURE: self.sign_text(f"{WALLET_AUTH_PREFIX}:{timestamp_ms}"),
            HEADER_WALLET_TIMESTAMP: str(timestamp_ms),
        }


class DelegatedSigner:
    """Delegates signing to an injected function, e.g. a browser or custody wallet.

    The function receives the challenge and returns a :class:`SpendingOverride`
    or a ``{"signature", "message"}`` mapping, either directly or as an awaitable.
    """

    def __init__(self, sign_fn: SignFunction) -> None:
        if not callable(sign_fn):
            raise AgonError(400, "validation_error", "Delegated signer must be callable")
        self._sign_fn = sign_fn

    async def sign(self, message: str) -> SpendingOverride:
        result = self._sign_fn(message)
        if inspect.isawaitable(result):
            result = await result
        try:
            override = SpendingOverride.from_payload(result)
        except ValueError as exc:
            raise AgonError(400, "validation_error", str(exc)) from exc
        if override.message != message:
            raise AgonError(
                400,
                "validation_error",
                "Delegated signer returned a signature for a different message",
            )
        return override


@dataclass(frozen=True)
class OverrideChallenge:
    account_id: str
    request_id: str
    amount: int
    merchant_domain: str
    timestamp: int

    @property
    def message(self) -> str:
        return ":".join(
            [
                OVERRIDE_PREFIX,
                self.account_id,
                self.request_id,
                str(self.amount),
                self.merchant_domain,
                str(self.timestamp),
            ]
        )


def build_override_challenge(
    account_id: str,
    request_id: str,
    amount: int,
    merchant_domain: str,
    timestamp: Optional[int] = None,
) -> str:
    if timestamp is None:
        timestamp = int(time.time())
    return OverrideChallenge(account_id, request_id, int(amount), merchant_domain, timestamp).message


def parse_override_challenge(message: str) -> OverrideChallenge:
    prefix = OVERRIDE_PREFIX + ":"
    invalid = AgonError(400, "spending_override_invalid", "Malformed override challenge")
    if not message.startswith(prefix):
        raise invalid
    parts = message[len(prefix):].split(":")
    # merchant domain may carry a port, so it takes whatever sits between amount and timestamp
    if len(parts) < 5 or not all(parts):
        raise invalid
    try:
        amount = int(parts[2])
        timestamp = int(parts[-1])
    except ValueError as exc:
        raise invalid from exc
    return OverrideChallenge(
        account_id=parts[0],
        request_id=parts[1],
        amount=amount,
        merchant_domain=":".join(parts[3:-1]),
        timestamp=timestamp,
    )


def _timestamp_seconds(timestamp: int) -> float:
    return timestamp / 1000 if timestamp > 10**11 else float(timestamp)


def verify_override(
    public_key: str,
    override: SpendingOverride,
    *,
    account_id: Optional[str] = None,
    request_id: Optional[str] = None,
    amount: Optional[int] = None,
    merchant_domain: Optional[str] = None,
    max_age_seconds: Optional[float] = None,
    now: Optional[float] = None,
) -> bool:
    """Check the signature and that the challenge is bound to the expected request."""
    try:
        verify_key = signing.VerifyKey(base58.b58decode(public_key))
        verify_key.verify(override.message.encode("utf-8"), base58.b58decode(override.signature))
    except (BadSignatureError, ValueError):
        return False

    try:
        challenge = parse_override_challenge(override.message)
    except AgonError:
        return False

    expected = {
        "account_id": account_id,
        "request_id": request_id,
        "amount": amount,
        "merchant_domain": merchant_domain,
    }
    for name, value in expected.items():
        if value is not None and getattr(challenge, name) != value:
            return False

    if max_age_seconds is not None:
        current = time.time() if now is None else now
        if current - _timestamp_seconds(challenge.timestamp) > max_age_seconds:
            return False
    return True
