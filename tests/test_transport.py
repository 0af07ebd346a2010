import json

import httpx
import pytest

from agon_x402.errors import AgonError
from agon_x402.signer import KeypairSigner
from agon_x402.transport import AgonHttpClient

BASE_URL = "http://agon.test"


def _client(handler, **kwargs):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AgonHttpClient(BASE_URL, http_client=http_client, **kwargs), http_client


@pytest.mark.asyncio
async def test_platform_key_sent_as_bearer_only():
    seen = {}

    def handler(request):
        seen.update(request.headers)
        seen["body"] = json.loads(request.content.decode())
        return httpx.Response(200, json={"ok": True})

    client, http_client = _client(handler, platform_key="pk_test")
    try:
        assert await client.post("/consume", {"reservation_id": "res_1"}) == {"ok": True}
    finally:
        await http_client.aclose()

    assert seen["authorization"] == "Bearer pk_test"
    assert "x-agon-key" not in seen
    assert seen["body"] == {"reservation_id": "res_1"}


def test_platform_key_cannot_mix_with_consumer_credentials():
    with pytest.raises(AgonError) as excinfo:
        AgonHttpClient(BASE_URL, platform_key="pk", api_key="ak")
    assert excinfo.value.code == "validation_error"


@pytest.mark.asyncio
async def test_per_call_api_key_wins_over_stored_key():
    keys = []

    def handler(request):
        keys.append(request.headers.get("X-AGON-KEY"))
        return httpx.Response(200, json={})

    client, http_client = _client(handler, api_key="ak_old")
    try:
        await client.get("/account/me")
        await client.get("/account/me", api_key="ak_captured")
        client.set_api_key("ak_new")
        await client.get("/account/me")
    finally:
        await http_client.aclose()

    assert keys == ["ak_old", "ak_captured", "ak_new"]


@pytest.mark.asyncio
async def test_wallet_headers_used_without_api_key():
    wallet = KeypairSigner.generate()
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, json={})

    client, http_client = _client(handler, wallet=wallet)
    try:
        await client.post("/account/register", {"wallet_address": wallet.public_key})
    finally:
        await http_client.aclose()

    assert seen["x-agon-wallet"] == wallet.public_key
    assert "x-agon-signature" in seen
    assert "x-agon-key" not in seen


@pytest.mark.asyncio
async def test_error_body_maps_to_agon_error():
    def handler(request):
        return httpx.Response(
            402,
            json={"error": "insufficient_balance", "message": "Not enough", "details": {"need": 5}},
        )

    client, http_client = _client(handler, api_key="ak")
    try:
        with pytest.raises(AgonError) as excinfo:
            await client.post("/proxy", {})
    finally:
        await http_client.aclose()

    assert excinfo.value.status_code == 402
    assert excinfo.value.code == "insufficient_balance"
    assert excinfo.value.details == {"need": 5}


@pytest.mark.asyncio
async def test_non_json_error_becomes_internal_error():
    def handler(request):
        return httpx.Response(503, text="upstream down")

    client, http_client = _client(handler, api_key="ak")
    try:
        with pytest.raises(AgonError) as excinfo:
            await client.get("/account/me")
    finally:
        await http_client.aclose()

    assert excinfo.value.status_code == 503
    assert excinfo.value.code == "internal_error"
    assert "upstream down" in excinfo.value.message


@pytest.mark.asyncio
async def test_timeout_is_synthesised_locally():
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    client, http_client = _client(handler, api_key="ak", timeout=0.25)
    try:
        with pytest.raises(AgonError) as excinfo:
            await client.get("/account/me")
    finally:
        await http_client.aclose()

    assert excinfo.value.status_code == 504
    assert excinfo.value.code == "internal_error"
    assert "timed out after 250ms" in excinfo.value.message


@pytest.mark.asyncio
async def test_unreachable_backend_is_distinguishable_from_timeout():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client, http_client = _client(handler, api_key="ak")
    try:
        with pytest.raises(AgonError) as excinfo:
            await client.get("/account/me")
    finally:
        await http_client.aclose()

    assert excinfo.value.status_code == 502
    assert excinfo.value.code == "internal_error"
    assert excinfo.value.message.startswith("Failed to reach Agon API")


@pytest.mark.asyncio
async def test_success_with_invalid_json_is_an_error():
    def handler(request):
        return httpx.Response(200, text="<html>")

    client, http_client = _client(handler, api_key="ak")
    try:
        with pytest.raises(AgonError) as excinfo:
            await client.get("/account/me")
    finally:
        await http_client.aclose()

    assert excinfo.value.status_code == 502


@pytest.mark.asyncio
async def test_injected_client_is_not_closed():
    client, http_client = _client(lambda request: httpx.Response(200, json={}))
    await client.aclose()
    assert not http_client.is_closed
    await http_client.aclose()
