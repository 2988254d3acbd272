from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from percas.client import ClientError, ClientFactory, TooManyRequestsError


def build_app():
    store = {}

    def special(key):
        if key == "busy":
            return web.Response(status=429)
        if key == "broken":
            return web.Response(status=500)
        return None

    async def get(request):
        key = request.match_info["key"]
        if (resp := special(key)) is not None:
            return resp
        if key not in store:
            return web.Response(status=404)
        return web.Response(body=store[key])

    async def put(request):
        key = request.match_info["key"]
        if (resp := special(key)) is not None:
            return resp
        created = key not in store
        store[key] = await request.read()
        return web.Response(status=201 if created else 200)

    async def delete(request):
        key = request.match_info["key"]
        if (resp := special(key)) is not None:
            return resp
        store.pop(key, None)
        return web.Response(status=204)

    app = web.Application()
    app.router.add_get("/{key}", get)
    app.router.add_put("/{key}", put)
    app.router.add_delete("/{key}", delete)
    return app


@asynccontextmanager
async def running_client():
    server = TestServer(build_app(), host="127.0.0.1")
    await server.start_server()
    factory = ClientFactory()
    try:
        yield factory.make_client(str(server.make_url("/")))
    finally:
        await factory.close()
        await server.close()


@pytest.mark.asyncio
async def test_put_then_get_round_trip():
    async with running_client() as client:
        await client.put("foo", b"bar")
        assert await client.get("foo") == b"bar"
        await client.put("foo", b"baz")
        assert await client.get("foo") == b"baz"


@pytest.mark.asyncio
async def test_get_missing_returns_none():
    async with running_client() as client:
        assert await client.get("missing") is None


@pytest.mark.asyncio
async def test_delete_removes_value():
    async with running_client() as client:
        await client.put("foo", b"bar")
        await client.delete("foo")
        assert await client.get("foo") is None


@pytest.mark.asyncio
async def test_get_too_many_requests():
    async with running_client() as client:
        with pytest.raises(TooManyRequestsError, match="^Too Many Requests$") as info:
            await client.get("busy")
        assert str(info.value) == "Too Many Requests"
        assert isinstance(info.value, ClientError)
        assert await client.get("missing") is None


@pytest.mark.asyncio
async def test_put_too_many_requests():
    async with running_client() as client:
        with pytest.raises(TooManyRequestsError, match="^Too Many Requests$") as info:
            await client.put("busy", b"x")
        assert str(info.value) == "Too Many Requests"
        await client.put("foo", b"value")
        assert await client.get("foo") == b"value"


@pytest.mark.asyncio
async def test_delete_too_many_requests():
    async with running_client() as client:
        await client.put("foo", b"kept")
        with pytest.raises(TooManyRequestsError, match="^Too Many Requests$") as info:
            await client.delete("busy")
        assert str(info.value) == "Too Many Requests"
        assert await client.get("foo") == b"kept"


@pytest.mark.asyncio
async def test_server_error_reports_status():
    async with running_client() as client:
        with pytest.raises(ClientError, match="500 Internal Server Error") as info:
            await client.get("broken")
        assert not isinstance(info.value, TooManyRequestsError)
        with pytest.raises(ClientError, match="^500"):
            await client.put("broken", b"x")


@pytest.mark.asyncio
async def test_unreachable_server_raises_client_error():
    factory = ClientFactory()
    client = factory.make_client("http://127.0.0.1:1/")
    try:
        with pytest.raises(ClientError):
            await client.get("foo")
    finally:
        await factory.close()


def test_invalid_endpoint_rejected():
    with pytest.raises(ClientError):
        ClientFactory().make_client("not a url")