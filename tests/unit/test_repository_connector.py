from __future__ import annotations

import asyncio
import logging
from typing import Callable

import httpx
import pytest

from src.contracts.streams import REPOSITORY_HTTP_REQUEST_V1
from src.core.context import BridgeContext
from src.core.models import ClientRequest, ClientResponse
from src.core.settings import ClientDestination, Settings
from src.repository.connector import (
    ERROR_MESSAGE,
    HttpRepositoryConnector,
    aggregate_body,
    build_client_kwargs,
)
from src.repository import uri
from src.repository.uri import EncodingUnavailableError


def _settings(*, allowed: tuple[str, ...] = ("^X-.*",), options: dict | None = None) -> Settings:
    return Settings(
        env="test",
        redis_url="redis://unused",
        redis_consumer_group="test-group",
        address=REPOSITORY_HTTP_REQUEST_V1,
        client_destination=ClientDestination(domain="repo.local", port=3001),
        client_options=options or {},
        allowed_request_headers=allowed,
    )


def _connector(handler: Callable, **kwargs) -> HttpRepositoryConnector:
    ctx = BridgeContext(settings=_settings(**kwargs), logger=logging.getLogger("test.bridge"))
    return HttpRepositoryConnector(ctx, transport=httpx.MockTransport(handler))


def _process(connector: HttpRepositoryConnector, request: ClientRequest) -> ClientResponse:
    async def run() -> ClientResponse:
        async with connector:
            return await connector.process(request)

    return asyncio.run(run())


def test_scenario_filters_headers_and_encodes_query() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, headers=[("Content-Type", "text/html")], content=b"<p>ok</p>")

    req = ClientRequest(
        path="/content/page",
        params={"query": "a b"},
        headers={"Cookie": ("x",), "X-Debug": ("1",)},
    )
    resp = _process(_connector(handler), req)

    sent: httpx.Request = seen["request"]
    assert sent.method == "GET"
    assert sent.url.host == "repo.local"
    assert sent.url.port == 3001
    assert sent.url.raw_path == b"/content/page?query=a%20b"
    assert sent.headers.get_list("X-Debug") == ["1"]
    assert "cookie" not in sent.headers
    assert sent.content == b""

    assert resp.status_code == 200
    assert resp.headers["Content-Type"] == ("text/html",)
    assert resp.body == b"<p>ok</p>"


def test_path_like_param_is_forwarded_readable() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["raw_path"] = request.url.raw_path
        return httpx.Response(200)

    _process(_connector(handler), ClientRequest(path="/content", params={"path": "a b/c"}))
    assert seen["raw_path"] == b"/content?path=a%20b/c"


def test_multi_valued_header_sends_every_value() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["tenant"] = request.headers.get_list("X-Tenant")
        return httpx.Response(204)

    _process(_connector(handler), ClientRequest(path="/p", headers={"X-Tenant": ("a", "b")}))
    assert seen["tenant"] == ["a", "b"]


def test_empty_allow_list_forwards_no_request_header() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        return httpx.Response(200)

    req = ClientRequest(path="/p", headers={"X-Debug": ("1",), "Cookie": ("x",)})
    _process(_connector(handler, allowed=()), req)
    assert "x-debug" not in seen["headers"]
    assert "cookie" not in seen["headers"]


def test_upstream_404_is_passed_through() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, headers=[("Content-Type", "text/plain")], content=b"not found")

    resp = _process(_connector(handler), ClientRequest(path="/missing"))
    assert resp.status_code == 404
    assert resp.body == b"not found"
    assert resp.headers["Content-Type"] == ("text/plain",)


def test_buffered_upstream_reply_is_passed_through() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        response = httpx.Response(201, headers=[("X-Upstream", "1")], content=b"created")
        response.read()
        assert response.is_stream_consumed
        return response

    resp = _process(_connector(handler), ClientRequest(path="/p"))
    assert resp.status_code == 201
    assert resp.headers["X-Upstream"] == ("1",)
    assert resp.body == b"created"


def test_upstream_headers_are_not_filtered_and_keep_repeats() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers=[("Set-Cookie", "a=1"), ("Set-Cookie", "b=2"), ("Cookie", "not-filtered")],
        )

    resp = _process(_connector(handler), ClientRequest(path="/p"))
    assert resp.headers["Set-Cookie"] == ("a=1", "b=2")
    assert resp.headers["Cookie"] == ("not-filtered",)


def test_redirects_are_not_followed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers=[("Location", "/elsewhere")])

    resp = _process(_connector(handler), ClientRequest(path="/p"))
    assert resp.status_code == 302
    assert resp.headers["Location"] == ("/elsewhere",)


def test_chunked_body_is_aggregated_in_order() -> None:
    delivered: list[bytes] = []

    async def chunks():
        for part in (b"ab", b"cd", b"ef"):
            delivered.append(part)
            yield part

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=chunks())

    resp = _process(_connector(handler), ClientRequest(path="/p"))
    assert delivered == [b"ab", b"cd", b"ef"]
    assert resp.body == b"abcdef"


def test_aggregate_body_concatenates_chunks() -> None:
    async def chunks():
        yield b"ab"
        yield b""
        yield b"cd"

    assert asyncio.run(aggregate_body(chunks())) == b"abcd"


def test_connection_refused_maps_to_error_response(caplog: pytest.LogCaptureFixture) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    with caplog.at_level(logging.ERROR, logger="test.bridge"):
        resp = _process(_connector(handler), ClientRequest(path="/p"))

    assert resp == ClientResponse.error()
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert [r.getMessage() for r in errors] == [ERROR_MESSAGE]
    assert isinstance(errors[0].exc_info[1], httpx.ConnectError)


def test_premature_end_of_body_maps_to_error_response() -> None:
    async def broken():
        yield b"ab"
        raise httpx.ReadError("connection reset")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=broken())

    resp = _process(_connector(handler), ClientRequest(path="/p"))
    assert resp == ClientResponse.error()


def test_unencodable_param_value_is_sent_as_question_mark(caplog: pytest.LogCaptureFixture) -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["raw_path"] = request.url.raw_path
        return httpx.Response(200, content=b"ok")

    with caplog.at_level(logging.DEBUG, logger="test.bridge"):
        resp = _process(_connector(handler), ClientRequest(path="/p", params={"q": "a\ud800"}))

    assert seen["raw_path"] == b"/p?q=a%3F"
    assert resp.status_code == 200
    assert not any(r.levelno >= logging.ERROR for r in caplog.records)


def test_missing_codec_is_raised_not_mapped(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("upstream must not be called")

    connector = _connector(handler)
    monkeypatch.setattr(uri, "PARAM_ENCODING", "no-such-codec")

    with caplog.at_level(logging.CRITICAL, logger="test.bridge"):
        with pytest.raises(EncodingUnavailableError):
            _process(connector, ClientRequest(path="/p", params={"q": "x"}))
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)


def test_concurrent_requests_share_one_client() -> None:
    gate = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/slow":
            await gate.wait()
        else:
            gate.set()
        return httpx.Response(200, content=request.url.path.encode())

    connector = _connector(handler)

    async def run() -> list[ClientResponse]:
        async with connector:
            return await asyncio.gather(
                connector.process(ClientRequest(path="/slow")),
                connector.process(ClientRequest(path="/fast")),
            )

    slow, fast = asyncio.run(run())
    assert slow.body == b"/slow"
    assert fast.body == b"/fast"


def test_client_kwargs_empty_keeps_transport_defaults() -> None:
    assert build_client_kwargs({}) == {}


def test_client_kwargs_translate_known_options() -> None:
    kwargs = build_client_kwargs({"timeout": 2.0, "connect_timeout": 0.5, "max_connections": 10, "verify": False})
    assert kwargs["timeout"].connect == 0.5
    assert kwargs["timeout"].read == 2.0
    assert kwargs["limits"].max_connections == 10
    assert kwargs["limits"].max_keepalive_connections == 20
    assert kwargs["verify"] is False


def test_unknown_client_option_fails_at_startup() -> None:
    with pytest.raises(ValueError, match="unknown client_options"):
        _connector(lambda request: httpx.Response(200), options={"maxPoolSize": 5})
