"""Async HTTP transport for the REST provider binding."""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cloud_provisioner.config.models import RestProviderConfig
from cloud_provisioner.errors import NotFoundError, ProvisionerError, TransportError

logger = structlog.get_logger()


class ProviderAPIError(ProvisionerError):
    """The provider rejected a request (non-2xx, non-404 client error)."""

    def __init__(self, method: str, path: str, status_code: int, body: str) -> None:
        self.method = method
        self.path = path
        self.status_code = status_code
        super().__init__(f"{method} {path} failed: {status_code} {body}")


class RestTransport:
    """Thin async wrapper around the provider's REST API.

    Reads are idempotent and retried on transport failures and 5xx answers;
    mutations are sent exactly once. A 404 on a read means "does not exist"
    and is returned as ``None``.
    """

    def __init__(self, config: RestProviderConfig | None = None) -> None:
        self._config = config or RestProviderConfig()
        headers: dict[str, str] = {"Accept": "application/json"}
        token = self._config.api_token
        if token is not None and token.get_secret_value():
            headers["Authorization"] = f"Bearer {token.get_secret_value()}"
        self._client = httpx.AsyncClient(
            base_url=self._config.endpoint,
            headers=headers,
            timeout=self._config.timeout_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> RestTransport:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(TransportError),
            stop=stop_after_attempt(self._config.retry_max_attempts),
            wait=wait_exponential(
                multiplier=self._config.retry_wait_seconds, max=30
            ),
            reraise=True,
        )

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            logger.warning("rest.request_failed", method=method, path=path, error=str(exc))
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        if resp.status_code >= 500:
            logger.warning(
                "rest.server_error", method=method, path=path, status=resp.status_code
            )
            raise TransportError(
                f"{method} {path} returned {resp.status_code}: {resp.text}"
            )
        return resp

    @staticmethod
    def _body(method: str, path: str, resp: httpx.Response) -> Any:
        if resp.status_code >= 400:
            raise ProviderAPIError(method, path, resp.status_code, resp.text)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            msg = f"{method} {path} returned a malformed body: {exc}"
            raise TransportError(msg) from exc

    # -- Verbs ---------------------------------------------------------------------

    async def get(self, path: str, *, params: dict[str, str] | None = None) -> Any:
        """GET *path*; ``None`` when the provider answers 404."""
        resp = await self._retrying()(self._send, "GET", path, params=params)
        if resp.status_code == 404:
            return None
        return self._body("GET", path, resp)

    async def post(self, path: str, json: Any = None) -> Any:
        resp = await self._send("POST", path, json=json)
        return self._body("POST", path, resp)

    async def delete(self, path: str, *, kind: str, name: str) -> None:
        resp = await self._send("DELETE", path)
        if resp.status_code == 404:
            raise NotFoundError(kind, name)
        self._body("DELETE", path, resp)
        logger.debug("rest.deleted", path=path)
