"""Store collaborator: the replicated key-value map under test.

``KeyValueStore`` is what the workload driver calls.  ``HttpStore`` speaks to
an HTTP gateway in front of the store's map primitive::

    PUT {url}/{map}/{key}   {"value": "..."}  -> {"previous": "..." | null}
    GET {url}/{map}/{key}                     -> {"value": "..."} or 404
    GET {url}/{map}                           -> {"entries": [{"key", "value"}]}
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from kvprobe.errors import TransientStoreError

__all__ = ["HttpStore", "KeyValueStore"]


class KeyValueStore(Protocol):
    """Map abstraction each workload client calls concurrently.

    Every method raises ``TransientStoreError`` on timeouts, transport
    failures and malformed replies.  ``get`` returns ``None`` for a key that
    is not present.
    """

    async def put(self, key: str, value: str) -> str | None: ...

    async def get(self, key: str) -> str | None: ...

    def entries(self) -> AsyncIterator[tuple[str, str]]: ...


class HttpStore:
    """``KeyValueStore`` over the HTTP gateway described in the module docstring.

    One ``httpx.AsyncClient`` is shared by every workload client; the client
    is safe for concurrent use from many tasks and is never mutated here.

    Parameters
    ----------
    url : str
        Gateway base URL.
    map_name : str
        Name of the map primitive under test.
    timeout : float
        Per-request timeout in seconds.
    client : httpx.AsyncClient | None
        Pre-built client, mainly for tests.

    Examples
    --------
    >>> async with HttpStore("http://kv-gateway:8080", "precision-test-map") as store:
    ...     await store.put("k", "v1")
    ...     await store.get("k")
    'v1'
    """

    def __init__(
        self,
        url: str,
        map_name: str = "precision-test-map",
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._map_url = f"{url.rstrip('/')}/{quote(map_name, safe='')}"
        self._owns_client = client is None
        limits = httpx.Limits(max_connections=50, max_keepalive_connections=25)
        self._client = client or httpx.AsyncClient(limits=limits, timeout=timeout)

    def _key_url(self, key: str) -> str:
        return f"{self._map_url}/{quote(key, safe='')}"

    async def put(self, key: str, value: str) -> str | None:
        try:
            response = await self._client.put(self._key_url(key), json={"value": value})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f"put {key!r} failed: {exc}"
            raise TransientStoreError(msg) from exc
        if not response.content:
            return None
        return _string_field(response, f"put {key!r}", "previous")

    async def get(self, key: str) -> str | None:
        try:
            response = await self._client.get(self._key_url(key))
            if response.status_code == httpx.codes.NOT_FOUND:
                return None
            response.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f"get {key!r} failed: {exc}"
            raise TransientStoreError(msg) from exc
        return _string_field(response, f"get {key!r}", "value")

    async def entries(self) -> AsyncIterator[tuple[str, str]]:
        try:
            response = await self._client.get(self._map_url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f"list failed: {exc}"
            raise TransientStoreError(msg) from exc
        entries = _json_object(response, "list").get("entries", [])
        if not isinstance(entries, list):
            msg = f"list failed: malformed entries {entries!r}"
            raise TransientStoreError(msg)
        for entry in entries:
            match entry:
                case {"key": str(key), "value": str(value)}:
                    yield key, value
                case _:
                    msg = f"list failed: malformed entry {entry!r}"
                    raise TransientStoreError(msg)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpStore:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def _json_object(response: httpx.Response, operation: str) -> dict[str, Any]:
    """Decode a gateway reply that must be a JSON object.

    Raises
    ------
    TransientStoreError
        If the body is not JSON or not an object.
    """
    try:
        body = response.json()
    except ValueError as exc:
        msg = f"{operation} failed: gateway returned a non-JSON body ({exc})"
        raise TransientStoreError(msg) from exc
    if not isinstance(body, dict):
        msg = f"{operation} failed: gateway returned {type(body).__name__}, expected an object"
        raise TransientStoreError(msg)
    return body


def _string_field(response: httpx.Response, operation: str, name: str) -> str | None:
    value = _json_object(response, operation).get(name)
    if value is None or isinstance(value, str):
        return value
    msg = f"{operation} failed: gateway returned a non-string {name} {value!r}"
    raise TransientStoreError(msg)
