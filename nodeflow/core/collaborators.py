"""External collaborators consumed by the executor.

The engine talks to the outside world through two narrow protocols:
- HttpTransport: one outbound HTTP call per api_call node
- EntityStore: named entity collections for database_query nodes

Implementations here are owned instances, created by whoever builds the
executor (server app, CLI command, test). Nothing is module-global.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import uuid4

import httpx

from nodeflow.core.errors import TransportFailureError
from nodeflow.core.transforms import format_timestamp

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    """Status plus decoded body (parsed JSON, raw text, or None when empty)."""

    status: int
    json_body: Any = None


class HttpTransport(Protocol):
    """Protocol for performing outbound HTTP calls."""

    async def call(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: str | None = None,
    ) -> HttpResponse:
        """Perform one request.

        Args:
            method: HTTP verb, upper-case
            url: Fully interpolated URL
            headers: Final merged headers
            body: Encoded request body, or None to send no body

        Returns:
            HttpResponse for ANY status code, including 4xx/5xx

        Raises:
            TransportFailureError: The request never produced a response
        """
        ...


class HttpxTransport:
    """HttpTransport over a lazily created httpx.AsyncClient."""

    def __init__(
        self,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def call(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: str | None = None,
    ) -> HttpResponse:
        client = await self._get_client()
        try:
            resp = await client.request(method, url, headers=headers, content=body)
        except httpx.TimeoutException as e:
            raise TransportFailureError(method, url, f"timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportFailureError(method, url, str(e) or type(e).__name__) from e

        logger.debug(f"{method} {url} -> {resp.status_code}")
        return HttpResponse(status=resp.status_code, json_body=_decode_body(resp))


def _decode_body(resp: httpx.Response) -> Any:
    """Parse JSON bodies; anything else is kept as text."""
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


# ========== Entity persistence ==========


class EntityHandle(Protocol):
    """One named entity collection."""

    async def list(self) -> list[dict[str, Any]]: ...

    async def filter(self, criteria: dict[str, Any]) -> list[dict[str, Any]]: ...

    async def create(self, data: dict[str, Any]) -> dict[str, Any]: ...

    async def update(self, record_id: str, data: dict[str, Any]) -> dict[str, Any] | None: ...

    async def delete(self, record_id: str) -> dict[str, Any] | None: ...


class EntityStore(Protocol):
    """Lookup of entity collections by name."""

    def get_entity(self, name: str) -> EntityHandle | None:
        """Return the handle for `name`, or None if the entity does not exist."""
        ...


def matches_criteria(record: dict[str, Any], criteria: dict[str, Any]) -> bool:
    """A record matches when every criteria key equals the record's value."""
    return all(record.get(key) == value for key, value in criteria.items())


def new_record(data: dict[str, Any]) -> dict[str, Any]:
    """Stamp a new record with an id and creation time unless it brings its own."""
    record = {"id": uuid4().hex, "created_date": format_timestamp(datetime.now(UTC))}
    record.update(copy.deepcopy(data))
    record["id"] = str(record["id"])
    return record


class InMemoryEntity:
    """EntityHandle backed by a list. Returned records are copies."""

    def __init__(self, name: str, records: list[dict[str, Any]] | None = None):
        self.name = name
        self._records: list[dict[str, Any]] = [new_record(r) for r in records or []]

    def _index_of(self, record_id: str) -> int | None:
        for idx, record in enumerate(self._records):
            if record["id"] == str(record_id):
                return idx
        return None

    async def list(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self._records)

    async def filter(self, criteria: dict[str, Any]) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._records if matches_criteria(r, criteria)]

    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        record = new_record(data)
        self._records.append(record)
        return copy.deepcopy(record)

    async def update(self, record_id: str, data: dict[str, Any]) -> dict[str, Any] | None:
        idx = self._index_of(record_id)
        if idx is None:
            return None
        record = self._records[idx]
        record.update({k: copy.deepcopy(v) for k, v in data.items() if k != "id"})
        record["updated_date"] = format_timestamp(datetime.now(UTC))
        return copy.deepcopy(record)

    async def delete(self, record_id: str) -> dict[str, Any] | None:
        idx = self._index_of(record_id)
        if idx is None:
            return None
        return self._records.pop(idx)


class InMemoryEntityStore:
    """EntityStore holding collections in process memory."""

    def __init__(self, entities: dict[str, list[dict[str, Any]]] | None = None):
        self._entities: dict[str, InMemoryEntity] = {}
        for name, records in (entities or {}).items():
            self.register(name, records)

    def register(self, name: str, records: list[dict[str, Any]] | None = None) -> InMemoryEntity:
        entity = InMemoryEntity(name, records)
        self._entities[name] = entity
        return entity

    def get_entity(self, name: str) -> InMemoryEntity | None:
        return self._entities.get(name)

    @property
    def entity_names(self) -> list[str]:
        return sorted(self._entities)
