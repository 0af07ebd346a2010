import httpx
import pytest

fastapi = pytest.importorskip("fastapi")
flask = pytest.importorskip("flask")

from fastapi.testclient import TestClient

from agon_x402.errors import AgonError
from agon_x402.http import (
    fastapi_payment_middleware_from_config,
    flask_payment_middleware_from_config,
)

from conftest import AGON_URL, PLATFORM_KEY

ROUTES = {
    "GET /premium": {"price": "$0.01", "description": "Premium data"},
    "/reports/*": 5000,
}


def _fastapi_app(agon_transport, **kwargs):
    app = fastapi.FastAPI()
    middleware = fastapi_payment_middleware_from_config(
        ROUTES,
        AGON_URL,
        PLATFORM_KEY,
        http_client=httpx.AsyncClient(transport=agon_transport),
        **kwargs,
    )

    @app.middleware("http")
    async def agon_mw(request, call_next):
        return await middleware(request, call_next)

    @app.get("/premium")
    async def premium():
        return {"data": "premium"}

    @app.post("/premium")
    async def premium_post():
        return {"data": "free post"}

    @app.get("/reports/broken")
    async def broken():
        raise RuntimeError("boom")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def test_fastapi_requires_payment(ledger, agon_transport):
    client = TestClient(_fastapi_app(agon_transport))

    response = client.get("/premium")

    assert response.status_code == 402
    body = response.json()
    assert body["payment_info"]["price"] == 10_000
    assert body["payment_info"]["description"] == "Premium data"
    assert ledger.calls == []


def test_fastapi_paid_request_is_consumed(ledger, agon_transport):
    consumed = []
    client = TestClient(
        _fastapi_app(agon_transport, on_consumed=lambda rid, amount: consumed.append(amount))
    )

    response = client.get("/premium", headers={"X-AGON-TOKEN": ledger.issue_token()})

    assert response.status_code == 200
    assert response.json() == {"data": "premium"}
    assert ledger.paths() == ["/authorize", "/consume"]
    assert consumed == [10_000]


def test_fastapi_unprotected_routes_pass_through(ledger, agon_transport):
    client = TestClient(_fastapi_app(agon_transport))

    assert client.get("/health").json() == {"status": "ok"}
    assert client.post("/premium").json() == {"data": "free post"}
    assert ledger.calls == []


def test_fastapi_handler_error_releases(ledger, agon_transport):
    client = TestClient(_fastapi_app(agon_transport), raise_server_exceptions=False)

    response = client.get("/reports/broken", headers={"X-AGON-TOKEN": ledger.issue_token()})

    assert response.status_code == 500
    assert ledger.paths() == ["/authorize", "/release"]
    assert ledger.bodies("/authorize")[0]["amount"] == 5000


def test_fastapi_denial_is_forwarded(ledger, agon_transport):
    client = TestClient(_fastapi_app(agon_transport))

    response = client.get("/premium", headers={"X-AGON-TOKEN": "tok_unknown"})

    assert response.status_code == 402
    assert response.json()["denial_reason"] == "invalid_consumer_token"


def test_invalid_route_key_is_rejected(agon_transport):
    with pytest.raises(AgonError):
        fastapi_payment_middleware_from_config({"premium": 1}, AGON_URL, PLATFORM_KEY)


def _flask_app(agon_transport):
    app = flask.Flask(__name__)

    @app.get("/premium")
    def premium():
        return {"data": "premium"}

    @app.get("/reports/missing")
    def missing():
        flask.abort(404)

    @app.get("/reports/broken")
    def broken():
        raise RuntimeError("boom")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    flask_payment_middleware_from_config(
        app,
        ROUTES,
        AGON_URL,
        PLATFORM_KEY,
        http_client=httpx.AsyncClient(transport=agon_transport),
    )
    return app


def test_flask_requires_payment(ledger, agon_transport):
    client = _flask_app(agon_transport).test_client()

    response = client.get("/premium")

    assert response.status_code == 402
    assert response.get_json()["payment_info"]["price"] == 10_000
    assert ledger.calls == []


def test_flask_paid_request_is_consumed(ledger, agon_transport):
    client = _flask_app(agon_transport).test_client()

    response = client.get("/premium", headers={"X-AGON-TOKEN": ledger.issue_token()})

    assert response.status_code == 200
    assert response.get_json() == {"data": "premium"}
    assert ledger.paths() == ["/authorize", "/consume"]


def test_flask_http_error_releases(ledger, agon_transport):
    client = _flask_app(agon_transport).test_client()

    response = client.get("/reports/missing", headers={"X-AGON-TOKEN": ledger.issue_token()})

    assert response.status_code == 404
    assert ledger.paths() == ["/authorize", "/release"]


def test_flask_handler_exception_releases(ledger, agon_transport):
    client = _flask_app(agon_transport).test_client()

    response = client.get("/reports/broken", headers={"X-AGON-TOKEN": ledger.issue_token()})

    assert response.status_code == 500
    assert response.get_json()["error"] == "internal_error"
    assert ledger.paths() == ["/authorize", "/release"]


def test_flask_unprotected_route(ledger, agon_transport):
    client = _flask_app(agon_transport).test_client()

    assert client.get("/health").get_json() == {"status": "ok"}
    assert ledger.calls == []
