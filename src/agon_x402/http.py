"""Agon HTTP middleware wrappers for FastAPI and Flask.

Routes are configured as a table keyed by ``"METHOD /path"`` (or a bare
``"/path"`` for any method). Paths may use shell-style wildcards::

    routes = {
        "GET /premium": {"price": "$0.01", "description": "Premium data"},
        "/reports/*": 5_000,
    }
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

import httpx

from .config import PlatformConfig, PricingFunction
from .constants import DEFAULT_PLATFORM_TIMEOUT, Price
from .errors import AgonError
from .platform import AgonPlatformCore
from .schemas import PaymentReply
from .transport import AgonHttpClient

logger = logging.getLogger(__name__)

RouteConfig = Mapping[str, Any]
RoutesConfig = Mapping[str, Union[Price, PricingFunction, RouteConfig]]


@dataclass
class _Route:
    method: Optional[str]
    pattern: str
    core: AgonPlatformCore

    def matches(self, method: str, path: str) -> bool:
        if self.method is not None and self.method != method.upper():
            return False
        return fnmatch.fnmatchcase(path, self.pattern)


def _split_route_key(key: str):
    parts = key.strip().split(None, 1)
    if len(parts) == 2:
        return parts[0].upper(), parts[1]
    if parts and parts[0].startswith("/"):
        return None, parts[0]
    raise AgonError(400, "validation_error", f"Invalid route key {key!r}")


def _build_routes(
    routes: RoutesConfig,
    agon_url: str,
    platform_key: str,
    *,
    timeout: float,
    http_client: Optional[httpx.AsyncClient],
    hooks: Mapping[str, Any],
) -> List[_Route]:
    if not routes:
        raise AgonError(400, "validation_error", "At least one protected route is required")

    # one backend connection for all routes
    backend = AgonHttpClient(
        agon_url, platform_key=platform_key, timeout=timeout, http_client=http_client
    )
    table: List[_Route] = []
    for key, entry in routes.items():
        method, pattern = _split_route_key(key)
        if isinstance(entry, Mapping):
            if "price" not in entry:
                raise AgonError(400, "validation_error", f"Route {key!r} has no price")
            pricing = entry["price"]
            description = entry.get("description")
            mime_type = entry.get("mime_type")
        else:
            pricing, description, mime_type = entry, None, None

        config = PlatformConfig(
            agon_url=agon_url,
            platform_key=platform_key,
            pricing=pricing,
            description=description,
            mime_type=mime_type,
            timeout=timeout,
            http_client=http_client,
            **hooks,
        )
        table.append(_Route(method, pattern, AgonPlatformCore(config, backend=backend)))
    return table


def _match(table: List[_Route], method: str, path: str) -> Optional[AgonPlatformCore]:
    for route in table:
        if route.matches(method, path):
            return route.core
    return None


# =========================================================================
# FastAPI wrappers (async)
# =========================================================================


def fastapi_payment_middleware_from_config(
    routes: RoutesConfig,
    agon_url: str,
    platform_key: str,
    *,
    timeout: float = DEFAULT_PLATFORM_TIMEOUT,
    http_client: Optional[httpx.AsyncClient] = None,
    on_payment_required: Optional[Callable[[Any], None]] = None,
    on_authorized: Optional[Callable[[str, int], None]] = None,
    on_consumed: Optional[Callable[[str, int], None]] = None,
):
    """Return an ``@app.middleware("http")`` function that gates ``routes``."""
    from fastapi.responses import JSONResponse

    table = _build_routes(
        routes,
        agon_url,
        platform_key,
        timeout=timeout,
        http_client=http_client,
        hooks={
            "on_payment_required": on_payment_required,
            "on_authorized": on_authorized,
            "on_consumed": on_consumed,
        },
    )

    async def middleware(request, call_next):
        core = _match(table, request.method, request.url.path)
        if core is None:
            return await call_next(request)

        result = await core.handle(request, request.headers, lambda: call_next(request))
        if isinstance(result, PaymentReply):
            return JSONResponse(content=result.body, status_code=result.status)
        return result

    return middleware


# =========================================================================
# Flask wrappers (sync)
# =========================================================================


class _SettlementLoop:
    """A daemon thread owning the event loop that Flask requests borrow.

    The backend ``httpx.AsyncClient`` is only ever driven from this loop, so
    every admit/settle/abort call for every Flask worker thread funnels
    through :meth:`call`.
    """

    def __init__(self) -> None:
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[threading.Thread] = None
        self._started = threading.Event()
        self._start_lock = threading.Lock()

    def _serve(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._started.set()
        loop.run_forever()

    def _start(self) -> asyncio.AbstractEventLoop:
        with self._start_lock:
            if self._worker is None or not self._worker.is_alive():
                self._started.clear()
                self._worker = threading.Thread(
                    target=self._serve, name="agon-settlement", daemon=True
                )
                self._worker.start()
                self._started.wait()
        if self._loop is None:
            raise RuntimeError("agon settlement loop failed to start")
        return self._loop

    def call(self, coro: Awaitable[Any]) -> Any:
        """Block the calling request thread until ``coro`` finishes on the loop."""
        future: Future = asyncio.run_coroutine_threadsafe(coro, self._start())
        return future.result()


_SETTLEMENT_LOOP = _SettlementLoop()


def flask_payment_middleware_from_config(
    app,
    routes: RoutesConfig,
    agon_url: str,
    platform_key: str,
    *,
    timeout: float = DEFAULT_PLATFORM_TIMEOUT,
    http_client: Optional[httpx.AsyncClient] = None,
    on_payment_required: Optional[Callable[[Any], None]] = None,
    on_authorized: Optional[Callable[[str, int], None]] = None,
    on_consumed: Optional[Callable[[str, int], None]] = None,
):
    """Gate ``routes`` of a Flask ``app`` with a ``before_request`` hook.

    For a protected route the hook runs the view itself, so the reservation can
    be consumed or released from the view's outcome, and returns its response.
    """
    from flask import jsonify, request
    from werkzeug.exceptions import HTTPException

    table = _build_routes(
        routes,
        agon_url,
        platform_key,
        timeout=timeout,
        http_client=http_client,
        hooks={
            "on_payment_required": on_payment_required,
            "on_authorized": on_authorized,
            "on_consumed": on_consumed,
        },
    )

    def agon_gate():
        if request.endpoint is None:
            return None
        core = _match(table, request.method, request.path)
        if core is None:
            return None

        # the loop thread has no request context, so hand it concrete objects
        current = request._get_current_object()
        outcome = _SETTLEMENT_LOOP.call(core.admit(current, dict(request.headers)))
        if isinstance(outcome, PaymentReply):
            return jsonify(outcome.body), outcome.status

        view = app.view_functions[request.endpoint]
        try:
            response = app.make_response(app.ensure_sync(view)(**(request.view_args or {})))
        except HTTPException as exc:
            response = exc.get_response()
        except Exception:
            logger.warning(
                "handler raised, releasing reservation=%s", outcome.reservation_id, exc_info=True
            )
            _SETTLEMENT_LOOP.call(core.abort(outcome))
            return jsonify({"error": "internal_error", "message": "Handler error"}), 500

        _SETTLEMENT_LOOP.call(core.settle(outcome, response.status_code))
        return response

    app.before_request(agon_gate)
    return app
