"""HTTP transport to the Agon backend, shared by the consumer and merchant SDKs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from .constants import DEFAULT_CLIENT_TIMEOUT, HEADER_CONSUMER_KEY
from .errors import AgonError
from .signer import KeypairSigner

logger = logging.getLogger(__name__)


class AgonHttpClient:
    """Send JSON requests to the Agon backend and normalise failures into :class:`AgonError`.

    Exactly one authentication scheme is attached per call: ``Authorization:
    Bearer`` for merchants (``platform_key``), ``X-AGON-KEY`` for consumers with
    an API key, or wallet-signature headers when only a keypair is available.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        platform_key: Optional[str] = None,
        wallet: Optional[KeypairSigner] = None,
        timeout: float = DEFAULT_CLIENT_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if platform_key and (api_key or wallet is not None):
            raise AgonError(
                400,
                "validation_error",
                "A platform key cannot be combined with consumer credentials",
            )
        self._url = base_url.rstrip("/")
        self._api_key = api_key
        self._platform_key = platform_key
        self._wallet = wallet
        self._timeout = float(timeout)
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def base_url(self) -> str:
        return self._url

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key

    def set_api_key(self, api_key: Optional[str]) -> None:
        # Calls already in flight keep the headers they were built with.
        self._api_key = api_key

    def _get_async_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    def _auth_headers(self, api_key: Optional[str]) -> Dict[str, str]:
        if self._platform_key:
            return {"Authorization": f"Bearer {self._platform_key}"}
        key = api_key if api_key is not None else self._api_key
        if key:
            return {HEADER_CONSUMER_KEY: key}
        if self._wallet is not None:
            return self._wallet.auth_headers()
        return {}

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        *,
        api_key: Optional[str] = None,
    ) -> Any:
        url = f"{self._url}{path}"
        headers = {"Content-Type": "application/json", **self._auth_headers(api_key)}
        client = self._get_async_client()

        try:
            response = await asyncio.wait_for(
                client.request(method, url, headers=headers, json=body),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise AgonError(
                504,
                "internal_error",
                f"Agon API request timed out after {int(self._timeout * 1000)}ms",
            ) from exc
        except httpx.RequestError as exc:
            raise AgonError(
                502,
                "internal_error",
                f"Failed to reach Agon API at {url}: {exc}",
            ) from exc

        logger.debug("agon %s %s -> %s", method, path, response.status_code)

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.is_success:
            if isinstance(payload, dict) and payload.get("error"):
                raise AgonError.from_body(response.status_code, payload)
            raise AgonError(
                response.status_code,
                "internal_error",
                f"Agon API returned {response.status_code}: {response.text[:200]}",
            )

        if payload is None:
            raise AgonError(502, "internal_error", f"Agon API returned invalid JSON for {path}")
        return payload

    async def post(
        self, path: str, body: Dict[str, Any], *, api_key: Optional[str] = None
    ) -> Any:
        return await self.request("POST", path, body, api_key=api_key)

    async def get(self, path: str, *, api_key: Optional[str] = None) -> Any:
        return await self.request("GET", path, api_key=api_key)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "AgonHttpClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
