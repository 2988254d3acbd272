"""An HTTP client for the cache server's key-value API."""

from __future__ import annotations

from http import HTTPStatus
from urllib.parse import urljoin, urlsplit

import aiohttp


class ClientError(Exception):
    """A request to the server failed."""


class TooManyRequestsError(ClientError):
    """The server is shedding load."""

    def __init__(self, message: str = "Too Many Requests") -> None:
        super().__init__(message)


def _status_text(code: int) -> str:
    try:
        return f"{code} {HTTPStatus(code).phrase}"
    except ValueError:
        return f"{code} <unknown status code>"


class ClientFactory:
    """Hands out clients that share one connection pool; proxies are never used."""

    def __init__(self) -> None:
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(trust_env=False)
        return self._session

    def make_client(self, endpoint: str) -> Client:
        return Client(endpoint, self)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> ClientFactory:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class Client:
    """Reads, writes and deletes keys on one server."""

    def __init__(self, endpoint: str, factory: ClientFactory) -> None:
        parts = urlsplit(endpoint)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ClientError(f"invalid endpoint: {endpoint!r}")
        self._base_url = endpoint
        self._factory = factory

    def __repr__(self) -> str:
        return f"Client({self._base_url!r})"

    def _url(self, key: str) -> str:
        try:
            return urljoin(self._base_url, key)
        except ValueError as exc:
            raise ClientError(str(exc)) from exc

    async def _send(
        self, method: str, key: str, body: bytes | None = None
    ) -> tuple[int, bytes | None]:
        url = self._url(key)
        try:
            async with self._factory._get_session().request(method, url, data=body) as resp:
                payload = await resp.read() if resp.status == HTTPStatus.OK else None
                return resp.status, payload
        except aiohttp.ClientError as exc:
            raise ClientError(str(exc) or type(exc).__name__) from exc

    async def get(self, key: str) -> bytes | None:
        """The value stored under `key`, or None when the server has none."""
        status, payload = await self._send("GET", key)
        if status == HTTPStatus.NOT_FOUND:
            return None
        if status == HTTPStatus.OK:
            return payload
        if status == HTTPStatus.TOO_MANY_REQUESTS:
            raise TooManyRequestsError()
        raise ClientError(_status_text(status))

    async def put(self, key: str, value: bytes) -> None:
        status, _ = await self._send("PUT", key, bytes(value))
        if status in (HTTPStatus.OK, HTTPStatus.CREATED):
            return
        if status == HTTPStatus.TOO_MANY_REQUESTS:
            raise TooManyRequestsError()
        raise ClientError(_status_text(status))

    async def delete(self, key: str) -> None:
        status, _ = await self._send("DELETE", key)
        if status in (HTTPStatus.OK, HTTPStatus.NO_CONTENT):
            return
        if status == HTTPStatus.TOO_MANY_REQUESTS:
            raise TooManyRequestsError()
        raise ClientError(_status_text(status))