import pytest

from fakes import json_response, run_async, text_response
from luminara.drivers.base import DriverResponse
from luminara.errors import ErrorKind, HttpError, ParseError
from luminara.models import HedgingInfo, PreparedRequest, RequestOptions
from luminara.response import ResponseNormalizer


def prepared(**options):
    return PreparedRequest(url="http://api.test/items", method="GET", headers={},
                           options=RequestOptions(**options))


def normalize(raw, **options):
    return run_async(ResponseNormalizer().normalize(raw, prepared(**options)))


def test_auto_decodes_json_by_content_type():
    response = normalize(json_response(200, {"id": 1}))
    assert response.data == {"id": 1}
    assert response.ok
    assert response.url == "http://api.test/items"


def test_auto_falls_back_to_text():
    assert normalize(text_response(200, "plain")).data == "plain"
    broken = DriverResponse(status=200, headers={"content-type": "application/json"}, content=b"{not json")
    assert normalize(broken).data == "{not json"
    empty = DriverResponse(status=204, headers={"content-type": "application/json"})
    assert normalize(empty).data == ""


def test_explicit_json_is_strict():
    broken = DriverResponse(status=200, headers={"content-type": "application/json"}, content=b"{not json")
    with pytest.raises(ParseError, match="as json") as info:
        normalize(broken, response_type="json")
    assert info.value.kind is ErrorKind.PARSE
    assert info.value.status == 200
    assert normalize(DriverResponse(status=200), response_type="json").data is None


def test_text_ndjson_and_blob():
    body = '{"n": 1}\n\n{"n": 2}\n'
    assert normalize(text_response(200, body), response_type="ndjson").data == [{"n": 1}, {"n": 2}]
    assert normalize(text_response(200, "<p>hi</p>"), response_type="html").data == "<p>hi</p>"
    raw = DriverResponse(status=200, content=b"\x00\x01")
    assert normalize(raw, response_type="blob").data == b"\x00\x01"
    assert normalize(raw, response_type="arrayBuffer").data == b"\x00\x01"


def test_charset_is_honoured():
    raw = DriverResponse(status=200, headers={"content-type": "text/plain; charset=latin-1"},
                         content="café".encode("latin-1"))
    assert normalize(raw, response_type="text").data == "café"


def test_undecodable_text_is_replaced_not_rejected():
    raw = DriverResponse(status=200, headers={"content-type": "text/plain"}, content=b"ok \xff\xfe")
    data = normalize(raw).data
    assert isinstance(data, str)
    assert data.startswith("ok ")
    assert "\ufffd" in data
    assert normalize(raw, response_type="text").data == data


def test_undecodable_json_is_still_a_parse_error():
    raw = DriverResponse(status=200, headers={"content-type": "application/json"}, content=b'{"a": "\xff"}')
    assert normalize(raw).data == {"a": "\ufffd"}
    with pytest.raises(ParseError):
        normalize(raw, response_type="json")
    with pytest.raises(ParseError):
        normalize(raw, response_type="ndjson")


def test_unknown_charset_falls_back_to_utf8():
    raw = DriverResponse(status=200, headers={"content-type": "text/plain; charset=bogus"}, content=b"ok")
    assert raw.charset == "utf-8"
    assert normalize(raw).data == "ok"
    assert normalize(raw, response_type="text").data == "ok"


def test_custom_parser_wins():
    response = normalize(text_response(200, "a,b,c"), parse_response=lambda text, raw: text.split(","))
    assert response.data == ["a", "b", "c"]

    def broken(text, raw):
        raise ValueError("bad csv")

    with pytest.raises(ParseError, match="bad csv"):
        normalize(text_response(200, "a,b"), parse_response=broken)


def test_driver_decoded_data_is_used():
    raw = DriverResponse(status=200, data={"already": "decoded"})
    assert normalize(raw).data == {"already": "decoded"}


def test_non_2xx_raises_http_error_with_body():
    with pytest.raises(HttpError) as info:
        normalize(json_response(422, {"message": "name is required", "field": "name"}, reason="Unprocessable"))
    error = info.value
    assert error.message == "name is required"
    assert error.status == 422
    assert error.data == {"message": "name is required", "field": "name"}
    assert error.response["status"] == 422
    assert error.request["url"] == "http://api.test/items"


def test_http_error_message_defaults_to_status_line():
    with pytest.raises(HttpError, match="HTTP 502: Bad Gateway"):
        normalize(text_response(502, "upstream", reason="Bad Gateway"))
    with pytest.raises(HttpError, match="^HTTP 500$"):
        normalize(DriverResponse(status=500))


def test_ignore_response_error_returns_response():
    response = normalize(json_response(404, {"error": "missing"}), ignore_response_error=True)
    assert response.status == 404
    assert not response.ok
    assert response.data == {"error": "missing"}


def test_stream_passthrough():
    async def chunks():
        yield b"a"
        yield b"b"

    async def scenario():
        raw = DriverResponse(status=200, stream=chunks())
        response = await ResponseNormalizer().normalize(raw, prepared(response_type="stream"))
        return [chunk async for chunk in response.data]

    assert run_async(scenario()) == [b"a", b"b"]


def test_stream_from_buffered_content():
    async def scenario():
        raw = DriverResponse(status=200, content=b"whole")
        response = await ResponseNormalizer().normalize(raw, prepared(response_type="stream"))
        return [chunk async for chunk in response.data]

    assert run_async(scenario()) == [b"whole"]


def test_failed_stream_is_closed():
    closed = []

    async def closer():
        closed.append(True)

    async def chunks():
        yield b"error page"

    async def scenario():
        raw = DriverResponse(status=500, stream=chunks(), closer=closer)
        with pytest.raises(HttpError) as info:
            await ResponseNormalizer().normalize(raw, prepared(response_type="stream"))
        return info.value

    error = run_async(scenario())
    assert closed == [True]
    assert error.data is None


def test_hedging_metadata_is_attached():
    info = HedgingInfo(type="hedge-1", index=1, policy="race", winner="hedge-1", total_attempts=2)

    async def scenario():
        return await ResponseNormalizer().normalize(json_response(200, {}), prepared(), hedging=info)

    assert run_async(scenario()).hedging is info
