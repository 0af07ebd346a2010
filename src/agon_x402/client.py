"""Consumer-side Agon client.

``AgonClient.fetch`` drives one paid call:

1. issue a fresh single-use token and send it as ``X-AGON-TOKEN``;
2. anything other than a 402 is returned unchanged;
3. a 402 carrying ``PAYMENT-REQUIRED`` is a generic x402 merchant: pay through
   the Agon passthrough proxy;
4. any other 402 is an Agon denial; a spending-limit denial with an override on
   offer is retried exactly once with a signed override, if the
   ``on_limit_exceeded`` callback approves.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import inspect
import json
import logging
import secrets
import time
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Union
from urllib.parse import urlparse

import httpx
from nacl import signing

from .config import env_float, env_value
from .constants import (
    DEFAULT_CLIENT_TIMEOUT,
    HEADER_CONSUMER_TOKEN,
    HEADER_OVERRIDE_MESSAGE,
    HEADER_OVERRIDE_SIGNATURE,
    HEADER_PAYMENT_REQUIRED,
    PAYMENT_HEADERS,
    clamp_ttl,
    usdc_to_units,
)
from .errors import AgonError
from .schemas import (
    AccountBalance,
    CreateTokenResponse,
    DepositResult,
    LimitExceededDetails,
    ProxyResponse,
    ProxyTransaction,
    RegisterAccountResponse,
    SpendingControls,
    SpendingOverride,
    WithdrawalResult,
)
from .signer import DelegatedSigner, KeypairSigner, OverrideSigner, SignFunction
from .transport import AgonHttpClient

logger = logging.getLogger(__name__)

Decision = Literal["approve", "reject"]
OnLimitExceeded = Callable[[LimitExceededDetails], Union[Decision, str, Awaitable[Union[Decision, str]]]]
Content = Union[str, bytes, None]

# Headers that must not be copied onto a rebuilt passthrough response.
_UNREPLAYABLE_HEADERS = frozenset(
    {"content-encoding", "content-length", "transfer-encoding", "connection"}
)

_UNSET: Any = object()


def generate_proxy_request_id() -> str:
    return f"proxy_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _coerce_wallet(wallet: Any) -> KeypairSigner:
    if isinstance(wallet, KeypairSigner):
        return wallet
    if isinstance(wallet, signing.SigningKey):
        return KeypairSigner(wallet)
    if isinstance(wallet, (str, bytes)):
        return KeypairSigner.from_secret_key(wallet)
    raise AgonError(400, "validation_error", f"Unsupported wallet type: {type(wallet)!r}")


def _decode_challenge(raw: str) -> Dict[str, Any]:
    """Decode a PAYMENT-REQUIRED header (base64 JSON, or bare JSON)."""
    candidates: List[str] = []
    try:
        candidates.append(base64.b64decode(raw, validate=True).decode("utf-8"))
    except (binascii.Error, ValueError):
        pass
    candidates.append(raw)
    for text in candidates:
        try:
            decoded = json.loads(text)
        except ValueError:
            continue
        if isinstance(decoded, dict) and ("accepts" in decoded or "x402Version" in decoded):
            return decoded
    raise AgonError(
        400,
        "proxy_payment_required_invalid",
        "Merchant returned an unrecognised PAYMENT-REQUIRED header",
    )


def _content_text(content: Content) -> Optional[str]:
    if content is None:
        return None
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return content


def _error_from_402(response: httpx.Response, default_code: str, default_message: str) -> AgonError:
    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return AgonError(402, default_code, default_message)

    code = body.get("error") or default_code
    # merchant 402s carry the backend's reason next to the generic error
    if code == "payment_required" and body.get("denial_reason"):
        code = body["denial_reason"]
    details = body.get("details") or body.get("payment_info")
    return AgonError(
        402,
        str(code),
        str(body.get("message") or default_message),
        details if isinstance(details, Mapping) else None,
    )


class AgonClient:
    """Consumer SDK: paid ``fetch`` plus account management.

    Construct in exactly one mode:

    * keypair mode, ``wallet=`` (a :class:`KeypairSigner`, ``nacl`` signing key,
      or base58 secret): signs overrides locally and can register;
    * signer mode, ``signer=`` (an object with ``async sign(message)`` or a plain
      function): delegates override signing, e.g. to a custody wallet.

    ``set_api_key`` / ``set_account_id`` only affect calls started afterwards;
    a ``fetch`` already in flight keeps the credential it started with.
    """

    def __init__(
        self,
        base_url: str,
        *,
        wallet: Any = None,
        signer: Union[OverrideSigner, SignFunction, None] = None,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_CLIENT_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
        merchant_client: Optional[httpx.AsyncClient] = None,
        on_limit_exceeded: Optional[OnLimitExceeded] = None,
        decision_timeout: Optional[float] = None,
    ) -> None:
        if (wallet is None) == (signer is None):
            raise AgonError(
                400,
                "validation_error",
                "AgonClient needs exactly one of wallet= (keypair mode) or signer= (signer mode)",
            )

        self._wallet: Optional[KeypairSigner] = None
        self._signer: OverrideSigner
        if wallet is not None:
            self._wallet = _coerce_wallet(wallet)
            self._signer = self._wallet
        elif hasattr(signer, "sign"):
            self._signer = signer  # type: ignore[assignment]
        else:
            self._signer = DelegatedSigner(signer)  # type: ignore[arg-type]

        self._timeout = float(timeout)
        self._backend = AgonHttpClient(
            base_url,
            api_key=api_key,
            wallet=self._wallet,
            timeout=self._timeout,
            http_client=http_client,
        )
        self._merchant = merchant_client
        self._owns_merchant = merchant_client is None
        self._on_limit_exceeded = on_limit_exceeded
        self._decision_timeout = decision_timeout if decision_timeout is not None else self._timeout

        self._api_key = api_key
        self._account_id: Optional[str] = None
        self._deposit_address: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides: Any) -> "AgonClient":
        """Build a client from ``AGON_URL``, ``AGON_API_KEY``, ``AGON_WALLET_SECRET`` and ``AGON_TIMEOUT``."""
        base_url = overrides.pop("base_url", None) or env_value("AGON_URL")
        if "api_key" not in overrides:
            overrides["api_key"] = env_value("AGON_API_KEY", required=False)
        if "wallet" not in overrides and "signer" not in overrides:
            overrides["wallet"] = env_value("AGON_WALLET_SECRET")
        if "timeout" not in overrides:
            overrides["timeout"] = env_float("AGON_TIMEOUT", DEFAULT_CLIENT_TIMEOUT)
        return cls(base_url, **overrides)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key

    @property
    def account_id(self) -> Optional[str]:
        return self._account_id

    @property
    def deposit_address(self) -> Optional[str]:
        return self._deposit_address

    @property
    def wallet(self) -> Optional[KeypairSigner]:
        return self._wallet

    def set_api_key(self, api_key: Optional[str]) -> None:
        self._api_key = api_key
        self._backend.set_api_key(api_key)

    def set_account_id(self, account_id: str) -> None:
        self._account_id = account_id

    def set_deposit_address(self, address: str) -> None:
        self._deposit_address = address

    def _require_auth(self) -> str:
        api_key = self._api_key
        if not api_key:
            raise AgonError(
                401,
                "invalid_api_key",
                "API key not set. Call register() first or set_api_key() with an existing key.",
            )
        return api_key

    def _require_keypair(self, method: str) -> KeypairSigner:
        if self._wallet is None:
            raise AgonError(
                400,
                "validation_error",
                f"{method}() requires a keypair. Construct AgonClient with wallet= instead of signer=.",
            )
        return self._wallet

    def _require_account_id(self) -> str:
        if not self._account_id:
            raise AgonError(
                400,
                "validation_error",
                "Account ID not set. Call register(), get_account(), or set_account_id() first.",
            )
        return self._account_id

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    async def register(self) -> RegisterAccountResponse:
        """Create an account for this wallet and store the returned API key."""
        wallet = self._require_keypair("register")
        payload = await self._backend.post("/account/register", {"wallet_address": wallet.public_key})
        result = RegisterAccountResponse.from_payload(payload)
        self.set_api_key(result.api_key)
        self._account_id = result.account_id
        self._deposit_address = result.deposit_address
        return result

    async def get_account(self) -> AccountBalance:
        """Resolve the account behind the current API key."""
        api_key = self._require_auth()
        payload = await self._backend.get("/account/me", api_key=api_key)
        balance = AccountBalance.from_payload(payload)
        self._account_id = balance.account_id
        self._deposit_address = balance.deposit_address
        return balance

    async def get_balance(self) -> AccountBalance:
        api_key = self._require_auth()
        account_id = self._require_account_id()
        payload = await self._backend.get(f"/account/{account_id}", api_key=api_key)
        balance = AccountBalance.from_payload(payload)
        if balance.deposit_address:
            self._deposit_address = balance.deposit_address
        return balance

    async def get_spending_controls(self) -> SpendingControls:
        api_key = self._require_auth()
        payload = await self._backend.get("/account/spending-controls", api_key=api_key)
        return SpendingControls.from_payload(payload)

    async def set_spending_controls(
        self,
        *,
        max_per_request: Optional[int] = _UNSET,
        daily_spending_limit: Optional[int] = _UNSET,
        proxy_enabled: Optional[bool] = _UNSET,
        proxy_allowed_domains: Optional[List[str]] = _UNSET,
    ) -> SpendingControls:
        """Partial update: only the arguments passed are sent."""
        api_key = self._require_auth()
        fields = {
            "max_per_request": max_per_request,
            "daily_spending_limit": daily_spending_limit,
            "proxy_enabled": proxy_enabled,
            "proxy_allowed_domains": proxy_allowed_domains,
        }
        body = {name: value for name, value in fields.items() if value is not _UNSET}
        payload = await self._backend.post("/account/spending-controls", body, api_key=api_key)
        return SpendingControls.from_payload(payload)

    async def credit_deposit(self, tx_signature: str) -> DepositResult:
        """Credit an on-chain USDC transfer that was already sent to the deposit address."""
        api_key = self._require_auth()
        if not tx_signature:
            raise AgonError(400, "validation_error", "tx_signature is required")
        payload = await self._backend.post(
            "/account/deposit", {"tx_signature": tx_signature}, api_key=api_key
        )
        return DepositResult.from_payload(payload)

    async def withdraw(self, amount_usdc: Union[int, float, str]) -> WithdrawalResult:
        """Withdraw to the registered owner wallet. ``amount_usdc`` is in whole USDC."""
        api_key = self._require_auth()
        amount = usdc_to_units(amount_usdc)
        if amount <= 0:
            raise AgonError(400, "validation_error", "Withdrawal amount must be positive")
        payload = await self._backend.post("/account/withdraw", {"amount": amount}, api_key=api_key)
        return WithdrawalResult.from_payload(payload)

    async def rotate_key(self) -> str:
        api_key = self._require_auth()
        payload = await self._backend.post("/keys/rotate", {}, api_key=api_key)
        new_key = payload.get("api_key") if isinstance(payload, dict) else None
        if not new_key:
            raise AgonError(502, "internal_error", "Key rotation response missing api_key")
        self.set_api_key(str(new_key))
        return str(new_key)

    async def revoke_key(self) -> None:
        api_key = self._require_auth()
        await self._backend.post("/keys/revoke", {}, api_key=api_key)
        self.set_api_key(None)

    # ------------------------------------------------------------------
    # Capability tokens
    # ------------------------------------------------------------------

    async def create_auth_token(
        self,
        ttl: Optional[int] = None,
        max_amount: Optional[int] = None,
        budget: Optional[int] = None,
        *,
        api_key: Optional[str] = None,
    ) -> CreateTokenResponse:
        """Issue a short-lived token for a merchant; the merchant never sees the API key.

        Without ``budget`` the token authorizes a single reservation. ``ttl`` is
        clamped to 1..300 seconds.
        """
        key = api_key or self._require_auth()
        body: Dict[str, Any] = {"ttl": clamp_ttl(ttl)}
        if max_amount is not None:
            body["max_amount"] = int(max_amount)
        if budget is not None:
            body["budget"] = int(budget)
        payload = await self._backend.post("/account/create-token", body, api_key=key)
        try:
            token = CreateTokenResponse.from_payload(payload)
        except ValueError as exc:
            raise AgonError(502, "internal_error", str(exc)) from exc
        logger.info("issued auth token ttl=%s", token.expires_in)
        return token

    # ------------------------------------------------------------------
    # Paid fetch
    # ------------------------------------------------------------------

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        content: Content = None,
        idempotency_key: Optional[str] = None,
    ) -> httpx.Response:
        """Call a merchant URL, paying through Agon.

        ``idempotency_key`` pins the passthrough request id; pass the same key
        when retrying one logical call so the backend charges it once.
        """
        api_key = self._require_auth()
        method = method.upper()

        issued = await self.create_auth_token(api_key=api_key)
        response = await self._dispatch(method, url, self._merchant_headers(headers, issued.token), content)

        if response.status_code != 402:
            return response

        challenge = response.headers.get(HEADER_PAYMENT_REQUIRED)
        if challenge:
            return await self._proxy(api_key, method, url, headers, content, challenge, idempotency_key)

        error = _error_from_402(response, "insufficient_balance", "Payment required")
        if error.is_override_available() and self._on_limit_exceeded is not None:
            return await self._override_retry(api_key, method, url, headers, content, error)
        raise error

    async def _override_retry(
        self,
        api_key: str,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]],
        content: Content,
        error: AgonError,
    ) -> httpx.Response:
        override = await self._approve_override(error)

        retry_token = await self.create_auth_token(api_key=api_key)
        retry_headers = self._merchant_headers(headers, retry_token.token, override)
        response = await self._dispatch(method, url, retry_headers, content)

        if response.status_code == 402:
            try:
                response.json()
            except ValueError:
                raise error
            raise _error_from_402(response, "spending_limit_exceeded", "Spending limit override failed")
        return response

    async def _approve_override(self, error: AgonError) -> SpendingOverride:
        """Ask ``on_limit_exceeded`` once; raise ``error`` unless it approves."""
        sign_message = error.override_sign_message()
        if self._on_limit_exceeded is None:
            raise error

        details = LimitExceededDetails.from_details(error.details, sign_message)
        try:
            decision = self._on_limit_exceeded(details)
            if inspect.isawaitable(decision):
                decision = await asyncio.wait_for(decision, timeout=self._decision_timeout)
        except asyncio.TimeoutError:
            logger.warning("override decision timed out after %ss", self._decision_timeout)
            raise error

        if decision != "approve" or not sign_message:
            logger.info("spending override rejected limit_type=%s", details.limit_type)
            raise error

        logger.info(
            "spending override approved limit_type=%s requested=%s",
            details.limit_type,
            details.requested,
        )
        return await self._sign_override(sign_message)

    async def _sign_override(self, message: str) -> SpendingOverride:
        return await self._signer.sign(message)

    async def _proxy(
        self,
        api_key: str,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]],
        content: Content,
        challenge: str,
        idempotency_key: Optional[str],
    ) -> httpx.Response:
        _decode_challenge(challenge)
        request_id = idempotency_key or generate_proxy_request_id()
        body: Dict[str, Any] = {
            "url": url,
            "method": method,
            "payment_required": base64.b64encode(challenge.encode("utf-8")).decode("ascii"),
            "request_id": request_id,
        }
        forwarded = self._forwarded_headers(headers)
        if forwarded:
            body["headers"] = forwarded
        text = _content_text(content)
        if text is not None:
            body["body"] = text

        logger.info(
            "merchant %s answered with a generic x402 challenge, paying via proxy request=%s",
            urlparse(url).netloc,
            request_id,
        )
        try:
            payload = await self._backend.post("/proxy", body, api_key=api_key)
        except AgonError as err:
            if not err.is_override_available() or self._on_limit_exceeded is None:
                raise
            denial = err
        else:
            return self._rebuild_proxy_response(method, url, request_id, payload)

        # same request_id: the denied attempt reserved nothing
        override = await self._approve_override(denial)
        payload = await self._backend.post(
            "/proxy", {**body, "override": override.to_payload()}, api_key=api_key
        )
        return self._rebuild_proxy_response(method, url, request_id, payload)

    def _rebuild_proxy_response(
        self, method: str, url: str, request_id: str, payload: Any
    ) -> httpx.Response:
        try:
            proxied = ProxyResponse.from_payload(payload)
        except (TypeError, ValueError) as exc:
            raise AgonError(502, "internal_error", f"Invalid proxy response: {exc}") from exc

        record = ProxyTransaction(
            request_id=request_id,
            method=method,
            url=url,
            amount_charged=proxied.amount_charged,
            tx_signature=proxied.tx_signature,
        )
        headers = {
            name: value
            for name, value in proxied.headers.items()
            if name.lower() not in _UNREPLAYABLE_HEADERS
        }
        return httpx.Response(
            status_code=proxied.status,
            headers=headers,
            content=proxied.body.encode("utf-8"),
            request=httpx.Request(method, url),
            extensions={"agon_proxy": record},
        )

    # ------------------------------------------------------------------
    # Merchant I/O
    # ------------------------------------------------------------------

    def _merchant_headers(
        self,
        headers: Optional[Mapping[str, str]],
        token: str,
        override: Optional[SpendingOverride] = None,
    ) -> httpx.Headers:
        outgoing = httpx.Headers(dict(headers or {}))
        for name in PAYMENT_HEADERS:
            if name in outgoing:
                del outgoing[name]
        outgoing[HEADER_CONSUMER_TOKEN] = token
        if override is not None:
            outgoing[HEADER_OVERRIDE_SIGNATURE] = override.signature
            outgoing[HEADER_OVERRIDE_MESSAGE] = override.message
        return outgoing

    def _forwarded_headers(self, headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
        blocked = {name.lower() for name in PAYMENT_HEADERS}
        return {
            name: value
            for name, value in dict(headers or {}).items()
            if name.lower() not in blocked
        }

    def _get_merchant_client(self) -> httpx.AsyncClient:
        if self._merchant is None or self._merchant.is_closed:
            self._merchant = httpx.AsyncClient(timeout=self._timeout)
            self._owns_merchant = True
        return self._merchant

    async def _dispatch(
        self, method: str, url: str, headers: httpx.Headers, content: Content
    ) -> httpx.Response:
        client = self._get_merchant_client()
        try:
            return await client.request(method, url, headers=headers, content=content)
        except httpx.TimeoutException as exc:
            raise AgonError(
                504,
                "internal_error",
                f"Request to merchant {url} timed out after {int(self._timeout * 1000)}ms",
            ) from exc
        except httpx.RequestError as exc:
            raise AgonError(502, "internal_error", f"Failed to reach merchant at {url}: {exc}") from exc

    async def aclose(self) -> None:
        await self._backend.aclose()
        if self._owns_merchant and self._merchant is not None and not self._merchant.is_closed:
            await self._merchant.aclose()
        self._merchant = None

    async def __aenter__(self) -> "AgonClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
