import asyncio
import json

import httpx
import pytest

from fakes import run_async
from luminara import FormBody, LuminaraClient, MultipartBody, NetworkError, RequestTimeoutError
from luminara.drivers import DriverConfig, HttpxDriver
from luminara.models import PreparedRequest, RequestOptions


def make_driver(handler):
    return HttpxDriver(DriverConfig(transport=httpx.MockTransport(handler)))


def test_driver_returns_raw_response():
    def handler(request):
        return httpx.Response(200, json={"path": request.url.path}, headers={"X-Trace": "abc"})

    async def scenario():
        driver = make_driver(handler)
        try:
            return await driver.request(PreparedRequest(url="http://api.test/items", method="GET", headers={}))
        finally:
            await driver.aclose()

    raw = run_async(scenario())
    assert raw.status == 200
    assert raw.json() == {"path": "/items"}
    assert raw.headers["x-trace"] == "abc"
    assert raw.url == "http://api.test/items"
    assert raw.reason == "OK"


def test_client_sends_headers_query_and_json_body():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"created": True})

    async def scenario():
        driver = make_driver(handler)
        async with LuminaraClient(driver=driver, headers={"Authorization": "Bearer t"}) as client:
            response = await client.post("http://api.test/items", {"name": "x"}, query={"dry": True})
        await driver.aclose()
        return response

    response = run_async(scenario())
    request = seen[0]
    assert response.status == 201
    assert response.data == {"created": True}
    assert request.method == "POST"
    assert str(request.url) == "http://api.test/items?dry=true"
    assert request.headers["authorization"] == "Bearer t"
    assert request.headers["content-type"] == "application/json"
    assert json.loads(request.content) == {"name": "x"}


def test_form_and_multipart_bodies():
    seen = []

    def handler(request):
        seen.append((request.headers["content-type"], request.read()))
        return httpx.Response(204)

    async def scenario():
        driver = make_driver(handler)
        client = LuminaraClient(driver=driver)
        await client.post("http://api.test/form", FormBody({"a": "1", "b": ["2", "3"]}))
        await client.post("http://api.test/upload", MultipartBody({"kind": "doc"}, {"file": ("a.txt", b"hello")}))
        await driver.aclose()

    run_async(scenario())
    (form_type, form_body), (multi_type, multi_body) = seen
    assert form_type == "application/x-www-form-urlencoded"
    assert form_body == b"a=1&b=2&b=3"
    assert multi_type.startswith("multipart/form-data; boundary=")
    assert b"hello" in multi_body
    assert b'name="kind"' in multi_body


def test_stream_response_type():
    def handler(request):
        return httpx.Response(200, content=b"chunked body")

    async def scenario():
        driver = make_driver(handler)
        client = LuminaraClient(driver=driver)
        response = await client.get("http://api.test/file", response_type="stream")
        chunks = [chunk async for chunk in response.data]
        await response.raw.aclose()
        await driver.aclose()
        return b"".join(chunks)

    assert run_async(scenario()) == b"chunked body"


def test_transport_error_becomes_network_error():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        driver = make_driver(handler)
        client = LuminaraClient(driver=driver, retry=1, retry_delay=1)
        with pytest.raises(NetworkError, match="connection refused") as info:
            await client.get("http://api.test/items")
        await driver.aclose()
        return info.value

    error = run_async(scenario())
    assert error.attempt == 2
    assert isinstance(error.cause, httpx.ConnectError)
    assert len(calls) == 2


def test_slow_transport_times_out():
    async def handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200)

    async def scenario():
        driver = make_driver(handler)
        client = LuminaraClient(driver=driver, timeout_ms=50)
        with pytest.raises(RequestTimeoutError):
            await client.get("http://api.test/slow")
        await driver.aclose()

    run_async(scenario())


def test_aclose_only_closes_owned_clients():
    async def scenario():
        external = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        driver = HttpxDriver(client=external)
        await driver.aclose()
        closed = external.is_closed
        await external.aclose()

        owned = make_driver(lambda request: httpx.Response(200))
        inner = owned.async_client
        await owned.aclose()
        return closed, inner.is_closed

    assert run_async(scenario()) == (False, True)


def test_response_type_option_reaches_driver():
    raw_request = PreparedRequest(url="http://api.test/x", method="GET", headers={},
                                  options=RequestOptions(response_type="stream"))

    async def scenario():
        driver = make_driver(lambda request: httpx.Response(200, content=b"abc"))
        raw = await driver.request(raw_request)
        body = b"".join([chunk async for chunk in raw.stream])
        await raw.aclose()
        await driver.aclose()
        return body

    assert run_async(scenario()) == b"abc"
