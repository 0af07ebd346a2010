import itertools
import json
import time

import httpx
import pytest

from agon_x402.schemas import SpendingOverride
from agon_x402.signer import KeypairSigner, build_override_challenge, verify_override

AGON_URL = "http://agon.test"
API_KEY = "ak_test"
PLATFORM_KEY = "pk_test"
MERCHANT_DOMAIN = "merchant.test"


def _error(status, code, message, details=None):
    body = {"error": code, "message": message}
    if details:
        body["details"] = details
    return httpx.Response(status, json=body)


class StubLedger:
    """In-memory Agon backend: tokens, reservations, balances and the proxy."""

    def __init__(self, public_key: str, balance: int = 10_000_000):
        self.public_key = public_key
        self.account_id = "acct_1"
        self.api_key = API_KEY
        self.balance = balance
        self.reserved = 0
        self.max_per_request = 100_000_000
        self.reject_overrides = False
        self.fail_consume = False
        self.malformed_settlement = False
        self.proxy_limited = False
        self.tokens = {}
        self.reservations = {}
        self.request_ids = set()
        self.calls = []
        self._ids = itertools.count(1)

    # helpers -------------------------------------------------------------

    def paths(self):
        return [path for path, _ in self.calls]

    def bodies(self, path):
        return [body for seen, body in self.calls if seen == path]

    def issue_token(self, ttl=60, max_amount=None, budget=None):
        token = f"tok_{next(self._ids)}"
        self.tokens[token] = {
            "ttl": ttl,
            "used": False,
            "max_amount": max_amount,
            "budget": budget,
            "spent": 0,
        }
        return token

    def _limit_details(self, request_id, amount):
        return {
            "limit_type": "per_request",
            "requested": amount,
            "limit": self.max_per_request,
            "merchant_domain": MERCHANT_DOMAIN,
            "override_available": True,
            "sign_message": build_override_challenge(
                self.account_id, request_id, amount, MERCHANT_DOMAIN, int(time.time())
            ),
        }

    def _override_ok(self, raw, amount):
        if raw is None or self.reject_overrides:
            return False
        override = SpendingOverride.from_payload(raw)
        return verify_override(
            self.public_key,
            override,
            account_id=self.account_id,
            amount=amount,
            merchant_domain=MERCHANT_DOMAIN,
            max_age_seconds=300,
        )

    # routes --------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content.decode()) if request.content else {}
        path = request.url.path
        self.calls.append((path, body))

        if path in ("/authorize", "/consume", "/release"):
            if request.headers.get("Authorization") != f"Bearer {PLATFORM_KEY}":
                return _error(401, "invalid_platform_key", "Invalid platform key")
            if "X-AGON-KEY" in request.headers:
                return _error(400, "validation_error", "Consumer key sent by merchant")
            return getattr(self, "_" + path.strip("/"))(body)

        if path == "/account/register":
            if request.headers.get("X-AGON-WALLET") != self.public_key:
                return _error(400, "wallet_address_invalid", "Bad wallet")
            return httpx.Response(
                200,
                json={
                    "account_id": self.account_id,
                    "api_key": self.api_key,
                    "deposit_address": "DepoSiTaddr",
                },
            )

        if request.headers.get("X-AGON-KEY") != self.api_key:
            return _error(401, "invalid_api_key", "Invalid API key")

        if path == "/account/create-token":
            token = self.issue_token(body.get("ttl"), body.get("max_amount"), body.get("budget"))
            return httpx.Response(200, json={"token": token, "expires_in": body.get("ttl")})
        if path == "/account/me":
            return httpx.Response(200, json=self._balance())
        if path == "/account/spending-controls":
            controls = {
                "max_per_request": self.max_per_request,
                "daily_spending_limit": 50_000_000,
                "daily_spent": 0,
                "daily_reset_at": None,
                "proxy_enabled": True,
                "proxy_allowed_domains": None,
            }
            controls.update(body)
            return httpx.Response(200, json=controls)
        if path == "/keys/rotate":
            self.api_key = "ak_rotated"
            return httpx.Response(200, json={"api_key": self.api_key})
        if path == "/proxy":
            return self._proxy(body)
        return _error(404, "validation_error", f"No route {path}")

    def _balance(self):
        return {
            "account_id": self.account_id,
            "wallet_address": self.public_key,
            "deposit_address": "DepoSiTaddr",
            "balance": self.balance,
            "reserved_balance": self.reserved,
            "consumed_balance": 0,
            "available_balance": self.balance - self.reserved,
        }

    def _authorize(self, body):
        token = self.tokens.get(body["consumer_token"])
        request_id = body["request_id"]
        amount = int(body["amount"])

        def denied(reason, details=None):
            payload = {"status": "denied", "reason": reason, "amount": amount}
            if details:
                payload["details"] = details
            return httpx.Response(200, json=payload)

        if token is None:
            return denied("invalid_consumer_token")
        if token["used"]:
            return denied("token_already_used")
        if request_id in self.request_ids:
            return denied("duplicate_request")
        if token["max_amount"] is not None and amount > token["max_amount"]:
            return denied("amount_exceeds_token_cap")
        if token["budget"] is not None and token["spent"] + amount > token["budget"]:
            return denied("amount_exceeds_token_cap")
        if amount > self.max_per_request and not self._override_ok(body.get("override"), amount):
            if body.get("override") is not None:
                return denied("spending_override_invalid")
            return denied("spending_limit_exceeded", self._limit_details(request_id, amount))
        if self.balance - self.reserved < amount:
            return denied("insufficient_balance")

        # unbudgeted tokens are single use; budgeted ones last until spent
        token["spent"] += amount
        if token["budget"] is None or token["spent"] >= token["budget"]:
            token["used"] = True
        self.request_ids.add(request_id)
        self.reserved += amount
        reservation_id = f"res_{next(self._ids)}"
        self.reservations[reservation_id] = {"amount": amount, "status": "reserved"}
        return httpx.Response(
            200,
            json={
                "reservation_id": reservation_id,
                "status": "approved",
                "amount": amount,
                "expires_at": "2030-01-01T00:00:00Z",
            },
        )

    def _consume(self, body):
        if self.fail_consume:
            return _error(500, "internal_error", "ledger unavailable")
        if self.malformed_settlement:
            return httpx.Response(200, json=["ok"])
        return self._finish(body["reservation_id"], "consumed")

    def _release(self, body):
        if self.malformed_settlement:
            return httpx.Response(200, json=["ok"])
        return self._finish(body["reservation_id"], "released")

    def _finish(self, reservation_id, status):
        reservation = self.reservations.get(reservation_id)
        if reservation is None:
            return _error(404, "reservation_not_found", "Unknown reservation")
        if reservation["status"] != "reserved":
            return _error(409, f"reservation_already_{reservation['status']}", "Already resolved")
        reservation["status"] = status
        self.reserved -= reservation["amount"]
        if status == "consumed":
            self.balance -= reservation["amount"]
        return httpx.Response(
            200,
            json={"reservation_id": reservation_id, "status": status, "amount": reservation["amount"]},
        )

    def _proxy(self, body):
        if self.proxy_limited and not self._override_ok(body.get("override"), 2500):
            return _error(
                402,
                "spending_limit_exceeded",
                "Spending limit exceeded",
                self._limit_details(body["request_id"], 2500),
            )
        return httpx.Response(
            200,
            json={
                "status": 200,
                "headers": {"content-type": "application/json", "content-length": "11"},
                "body": '{"ok": true}',
                "amount_charged": 2500,
                "tx_signature": "5xSig",
            },
        )


@pytest.fixture
def wallet():
    return KeypairSigner.generate()


@pytest.fixture
def ledger(wallet):
    return StubLedger(wallet.public_key)


@pytest.fixture
def agon_transport(ledger):
    return httpx.MockTransport(ledger.handle)
