"""Merchant-side request interceptor, independent of any web framework.

Per inbound request::

    received -> priced -> (no token: 402) | authorizing
    authorizing -> denied (402) | authorized
    authorized -> handler -> consumed | released

The core keeps no per-request state; everything about one request lives in the
:class:`Admission` returned by :meth:`AgonPlatformCore.admit`.
"""

from __future__ import annotations

import inspect
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from .config import PlatformConfig
from .constants import (
    CURRENCY,
    HEADER_CONSUMER_TOKEN,
    HEADER_OVERRIDE_MESSAGE,
    HEADER_OVERRIDE_SIGNATURE,
    parse_price,
)
from .errors import AgonError
from .schemas import AuthorizeResponse, PaymentReply, ReservationResult, SpendingOverride
from .transport import AgonHttpClient

logger = logging.getLogger(__name__)

HeaderSource = Mapping[str, Any]


def generate_request_id() -> str:
    """A fresh idempotency key for one inbound request."""
    return f"req_{int(time.time() * 1000):x}_{secrets.token_hex(4)}"


def _header(headers: HeaderSource, name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                value = candidate
                break
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    return value or None


def _status_of(response: Any) -> int:
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(response, "status", 200)
    return int(status)


@dataclass
class Admission:
    """An authorized request whose reservation still has to be consumed or released."""

    reservation_id: str
    request_id: str
    amount: int
    expires_at: Optional[str] = None
    resolution: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.resolution is not None


class AgonPlatformCore:
    """Authorize, serve, then consume or release, for any framework."""

    def __init__(
        self,
        config: PlatformConfig,
        backend: Optional[AgonHttpClient] = None,
    ) -> None:
        self._config = config
        self._backend = backend or AgonHttpClient(
            config.agon_url,
            platform_key=config.platform_key,
            timeout=config.timeout,
            http_client=config.http_client,
        )

    @property
    def config(self) -> PlatformConfig:
        return self._config

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def extract_consumer_token(self, headers: HeaderSource) -> Optional[str]:
        return _header(headers, HEADER_CONSUMER_TOKEN)

    def extract_override(self, headers: HeaderSource) -> Optional[SpendingOverride]:
        signature = _header(headers, HEADER_OVERRIDE_SIGNATURE)
        message = _header(headers, HEADER_OVERRIDE_MESSAGE)
        if not signature or not message:
            return None
        return SpendingOverride(signature=signature, message=message)

    async def calculate_price(self, request: Any) -> int:
        pricing = self._config.pricing
        if callable(pricing):
            result = pricing(request)
            if inspect.isawaitable(result):
                result = await result
            return parse_price(result)
        return parse_price(pricing)

    async def authorize(
        self,
        consumer_token: str,
        request_id: str,
        amount: int,
        override: Optional[SpendingOverride] = None,
    ) -> AuthorizeResponse:
        body: dict[str, Any] = {
            "consumer_token": consumer_token,
            "request_id": request_id,
            "amount": int(amount),
        }
        if override is not None:
            body["override"] = override.to_payload()
        payload = await self._backend.post("/authorize", body)
        return AuthorizeResponse.from_payload(payload)

    async def consume(self, reservation_id: str) -> ReservationResult:
        payload = await self._backend.post("/consume", {"reservation_id": reservation_id})
        return ReservationResult.from_payload(payload)

    async def release(self, reservation_id: str) -> ReservationResult:
        payload = await self._backend.post("/release", {"reservation_id": reservation_id})
        return ReservationResult.from_payload(payload)

    def build_payment_required_response(self, price: int) -> PaymentReply:
        info: dict[str, Any] = {
            "price": int(price),
            "currency": CURRENCY,
            "description": self._config.description or "Protected resource",
            "instructions": (
                f"Include your Agon auth token as the {HEADER_CONSUMER_TOKEN} header "
                "(create via POST /account/create-token)"
            ),
            "register_url": f"{self._config.agon_url.rstrip('/')}/account/register",
        }
        if self._config.mime_type:
            info["mime_type"] = self._config.mime_type
        return PaymentReply(
            status=402,
            body={
                "error": "payment_required",
                "message": "This resource requires payment via Agon",
                "payment_info": info,
            },
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def admit(self, request: Any, headers: HeaderSource) -> Union[PaymentReply, Admission]:
        """Run everything up to the protected handler.

        Returns a :class:`PaymentReply` to send instead of calling the handler,
        or an :class:`Admission` holding the reservation.
        """
        consumer_token = self.extract_consumer_token(headers)

        try:
            price = await self.calculate_price(request)
        except Exception:
            logger.warning("failed to calculate price", exc_info=True)
            return PaymentReply(
                status=500,
                body={"error": "internal_error", "message": "Failed to calculate price"},
            )

        if consumer_token is None:
            _run_hook(self._config.on_payment_required, request)
            return self.build_payment_required_response(price)

        request_id = generate_request_id()
        override = self.extract_override(headers)

        try:
            auth = await self.authorize(consumer_token, request_id, price, override)
        except AgonError as err:
            logger.info("authorize failed request=%s code=%s", request_id, err.code)
            return PaymentReply(status=err.status_code, body=err.to_dict())
        except Exception:
            logger.exception("authorize failed request=%s", request_id)
            return PaymentReply(
                status=502,
                body={"error": "internal_error", "message": "Payment authorization failed"},
            )

        if not auth.approved:
            logger.info("authorize denied request=%s reason=%s", request_id, auth.reason)
            reply = self.build_payment_required_response(price)
            reply.body["denial_reason"] = auth.reason
            if auth.details:
                reply.body["details"] = auth.details
            return reply

        _run_hook(self._config.on_authorized, auth.reservation_id, auth.amount)
        return Admission(
            reservation_id=auth.reservation_id,
            request_id=request_id,
            amount=auth.amount,
            expires_at=auth.expires_at,
        )

    async def settle(self, admission: Admission, status: int) -> Optional[ReservationResult]:
        """Consume on a 2xx/3xx handler status, release otherwise."""
        if 200 <= status < 400:
            return await self._resolve(admission, "consumed")
        return await self._resolve(admission, "released")

    async def abort(self, admission: Admission) -> Optional[ReservationResult]:
        """Release after the handler raised."""
        return await self._resolve(admission, "released")

    async def _resolve(self, admission: Admission, resolution: str) -> Optional[ReservationResult]:
        if admission.resolved:
            return None
        # claimed before awaiting so a concurrent caller cannot resolve twice
        admission.resolution = resolution
        action = self.consume if resolution == "consumed" else self.release
        try:
            result = await action(admission.reservation_id)
        except Exception as err:
            # the reservation lapses through backend expiry
            logger.warning(
                "best-effort %s failed reservation=%s: %s",
                resolution,
                admission.reservation_id,
                err,
            )
            return None

        logger.info("reservation %s %s amount=%s", admission.reservation_id, resolution, admission.amount)
        if resolution == "consumed":
            _run_hook(self._config.on_consumed, admission.reservation_id, admission.amount)
        return result

    async def handle(
        self,
        request: Any,
        headers: HeaderSource,
        handler: Callable[[], Awaitable[Any]],
        status_of: Callable[[Any], int] = _status_of,
    ) -> Any:
        """Gate ``handler`` behind a payment; returns its response or a :class:`PaymentReply`."""
        outcome = await self.admit(request, headers)
        if isinstance(outcome, PaymentReply):
            return outcome

        try:
            response = await handler()
        except Exception:
            logger.warning(
                "handler raised, releasing reservation=%s", outcome.reservation_id, exc_info=True
            )
            await self.abort(outcome)
            return PaymentReply(
                status=500,
                body={"error": "internal_error", "message": "Handler error"},
            )

        await self.settle(outcome, status_of(response))
        return response

    async def aclose(self) -> None:
        await self._backend.aclose()


def _run_hook(hook: Optional[Callable[..., Any]], *args: Any) -> None:
    if hook is None:
        return
    try:
        hook(*args)
    except Exception:
        logger.warning("platform hook %r raised", hook, exc_info=True)
