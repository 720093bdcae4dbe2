from __future__ import annotations

import abc
import logging
from typing import Any

import httpx

from medsync.models import RemoteConfig

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({401, 408, 425, 429, 500, 502, 503, 504})


class RemoteStoreError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        # Network failures carry no status code.
        return self.status_code is None or self.status_code in TRANSIENT_STATUS_CODES


class RemoteStore(abc.ABC):
    """Row-level access to the remote relational store, one table per resource kind."""

    @abc.abstractmethod
    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abc.abstractmethod
    async def update(
        self, table: str, changes: dict[str, Any], filters: dict[str, Any]
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def select(
        self, table: str, filters: dict[str, Any], order: str | None = None
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:300]}"
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error") or payload.get("hint")
        if message:
            return f"HTTP {response.status_code}: {message}"
    return f"HTTP {response.status_code}: {response.text[:300]}"


def _filter_params(filters: dict[str, Any]) -> dict[str, str]:
    return {column: f"eq.{value}" for column, value in filters.items()}


class RestRemoteStore(RemoteStore):
    """PostgREST client (``/rest/v1/<table>``) authenticated with an API key and a user token."""

    def __init__(self, config: RemoteConfig, http_client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_key)

    def _endpoint(self, table: str) -> str:
        return f"{self.config.base_url}/rest/v1/{table}"

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        token = self.config.access_token or self.config.api_key
        headers = {
            "apikey": self.config.api_key,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        if not self.is_configured():
            raise RemoteStoreError("remote store is not configured (base_url/api_key missing)")
        try:
            response = await self._client.request(
                method,
                self._endpoint(table),
                params=params,
                json=json_body,
                headers=self._headers(prefer),
            )
        except httpx.HTTPError as exc:
            raise RemoteStoreError(f"{type(exc).__name__}: {exc}") from exc
        if response.is_error:
            raise RemoteStoreError(_error_message(response), status_code=response.status_code)
        logger.debug("%s %s -> %s", method, table, response.status_code)
        return response

    @staticmethod
    def _rows(response: httpx.Response) -> list[dict[str, Any]]:
        if not response.content:
            return []
        payload = response.json()
        if isinstance(payload, dict):
            return [payload]
        return [row for row in payload if isinstance(row, dict)]

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", table, json_body=[record], prefer="return=representation")
        rows = self._rows(response)
        return rows[0] if rows else dict(record)

    async def update(
        self, table: str, changes: dict[str, Any], filters: dict[str, Any]
    ) -> list[dict[str, Any]]:
        response = await self._request(
            "PATCH",
            table,
            params=_filter_params(filters),
            json_body=changes,
            prefer="return=representation",
        )
        return self._rows(response)

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        await self._request("DELETE", table, params=_filter_params(filters))

    async def select(
        self, table: str, filters: dict[str, Any], order: str | None = None
    ) -> list[dict[str, Any]]:
        params = {"select": "*", **_filter_params(filters)}
        if order:
            params["order"] = order
        response = await self._request("GET", table, params=params)
        return self._rows(response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
