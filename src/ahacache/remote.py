"""Remote entity source: the protocol the cache consumes and an Aha! HTTP client.

The sync orchestrator and the hybrid reader only depend on
``RemoteEntitySource``; ``AhaClient`` is the production implementation and
tests substitute an in-memory fake.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, TypedDict

import httpx

from ahacache.entities import resolve_entity_kind

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class Pagination(TypedDict):
    page: int
    page_size: int
    total_pages: int
    total_records: int


class ListResult(TypedDict):
    records: list[dict[str, Any]]
    pagination: Pagination


class RemoteSourceError(Exception):
    """Transport or HTTP failure talking to the remote API."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RemoteEntitySource(Protocol):
    async def list(
        self,
        entity_type: str,
        filters: dict[str, Any],
        page: int,
        page_size: int,
    ) -> ListResult: ...

    async def get(self, entity_type: str, entity_id: str) -> dict[str, Any]: ...


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class AhaClient:
    """Async client for ``https://<company>.aha.io/api/v1``.

    List responses look like ``{"features": [...], "pagination":
    {"current_page": 1, "total_pages": 3, "total_records": 120}}``; single
    records come wrapped in their singular key (``{"feature": {...}}``).
    """

    def __init__(
        self,
        company: str,
        token: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not company or not token:
            msg = "AhaClient needs both a company subdomain and an API token"
            raise ValueError(msg)
        self.company = company
        self.base_url = f"https://{company}.aha.io/api/v1"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> AhaClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def list(
        self,
        entity_type: str,
        filters: dict[str, Any],
        page: int,
        page_size: int,
    ) -> ListResult:
        kind = resolve_entity_kind(entity_type)
        params: dict[str, Any] = {"page": page, "per_page": page_size}
        for key, value in filters.items():
            if value is None:
                continue
            # The API spells the incremental cursor updated_since.
            params["updated_since" if key in ("updated_since", "updatedSince") else key] = value

        payload = await self._request(f"/{kind.name}", params=params)
        records = payload.get(kind.name) or []
        raw_pagination = payload.get("pagination") or {}
        total_records = _as_int(raw_pagination.get("total_records"), len(records))
        return {
            "records": [r for r in records if isinstance(r, dict)],
            "pagination": {
                "page": _as_int(raw_pagination.get("current_page"), page),
                "page_size": page_size,
                "total_pages": _as_int(raw_pagination.get("total_pages"), 1 if records else 0),
                "total_records": total_records,
            },
        }

    async def get(self, entity_type: str, entity_id: str) -> dict[str, Any]:
        kind = resolve_entity_kind(entity_type)
        payload = await self._request(f"/{kind.name}/{entity_id}")
        record = payload.get(kind.singular, payload)
        if not isinstance(record, dict):
            msg = f"Unexpected response shape for {kind.singular} {entity_id}"
            raise RemoteSourceError(msg)
        return record

    async def _request(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("Aha API returned %d for %s", status, path)
            msg = f"Aha API error {status} for {path}"
            raise RemoteSourceError(msg, status_code=status) from exc
        except httpx.HTTPError as exc:
            logger.warning("Aha API request failed for %s: %s", path, exc)
            msg = f"Aha API request failed for {path}: {exc}"
            raise RemoteSourceError(msg) from exc
        try:
            data = response.json()
        except ValueError as exc:
            msg = f"Aha API returned invalid JSON for {path}"
            raise RemoteSourceError(msg, status_code=response.status_code) from exc
        if not isinstance(data, dict):
            msg = f"Aha API returned a non-object body for {path}"
            raise RemoteSourceError(msg, status_code=response.status_code)
        return data
