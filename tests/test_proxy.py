"""Tests for forwarding requests to the Kobo store API."""

from __future__ import annotations

import pytest
from aiohttp import web
from multidict import CIMultiDict

from kobo_proxy.client import ForwardRequest
from kobo_proxy.errors import BodyReadError, TransportError
from kobo_proxy.proxy import (
    UPSTREAM_HOST,
    ForwardingHandler,
    filter_headers,
    path_and_query,
    upstream_url,
)

from conftest import raw_http, stub_response

TEST_BODY = b"test body"
TEST_RESPONSE = "stubbed response"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_filter_headers_drops_hop_by_hop_and_keeps_repeats():
    headers = CIMultiDict(
        [("Connection", "keep-alive"), ("Transfer-Encoding", "chunked"), ("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")]
    )
    out = filter_headers(headers)
    assert "Connection" not in out
    assert "Transfer-Encoding" not in out
    assert out.getall("Set-Cookie") == ["a=1", "b=2"]


def test_filter_headers_extra_drop():
    out = filter_headers(CIMultiDict({"Content-Length": "3", "X-Kobo": "1"}), drop=("content-length",))
    assert list(out.keys()) == ["X-Kobo"]


@pytest.mark.parametrize(
    "target, expected",
    [
        ("", None),
        ("/", "/"),
        ("/v1/library/sync?count=10", "/v1/library/sync?count=10"),
        ("http://localhost:3000/v1/user/profile?x=1", "/v1/user/profile?x=1"),
        ("*", "*"),
    ],
)
def test_path_and_query(target, expected):
    assert path_and_query(target) == expected


def test_upstream_url_targets_kobo_over_https():
    url = upstream_url("/v1/library/sync?count=10&token=a%20b")
    assert str(url) == "https://storeapi.kobo.com/v1/library/sync?count=10&token=a%20b"


@pytest.mark.parametrize("bad", ["*", "v1/no-slash", "/with space", "/tab\there", "/café", "/frag#ment"])
def test_upstream_url_rejects_invalid_targets(bad):
    with pytest.raises(ValueError):
        upstream_url(bad)


# ---------------------------------------------------------------------------
# ForwardingHandler.forward
# ---------------------------------------------------------------------------


async def test_forward_retargets_request(fake_client):
    fake_client.enqueue_response(stub_response(TEST_RESPONSE))
    handler = ForwardingHandler(fake_client)

    request = ForwardRequest(
        method="POST",
        target="/v1/analytics/event?x=1",
        headers=CIMultiDict({"Host": "192.168.1.10:3000", "Authorization": "Bearer abc", "Content-Length": "9"}),
        body=TEST_BODY,
    )
    response = await handler.forward(request)

    assert response.body == TEST_RESPONSE.encode()
    forwarded = fake_client.recorded_requests[0]
    assert forwarded.url.scheme == "https"
    assert forwarded.url.host == UPSTREAM_HOST
    assert forwarded.url.raw_path_qs == "/v1/analytics/event?x=1"
    assert forwarded.headers.getall("Host") == [UPSTREAM_HOST]
    assert forwarded.headers["Authorization"] == "Bearer abc"
    assert "Content-Length" not in forwarded.headers
    assert forwarded.method == "POST"
    assert forwarded.body == TEST_BODY


async def test_forward_removes_transfer_encoding(fake_client):
    fake_client.enqueue_response(stub_response(TEST_RESPONSE, headers={"Transfer-Encoding": "chunked", "X-Kobo": "1"}))

    response = await ForwardingHandler(fake_client).forward(ForwardRequest("GET", "/"))

    assert "Transfer-Encoding" not in response.headers
    assert response.headers["X-Kobo"] == "1"


async def test_forward_empty_target_is_bad_request_without_upstream_call(fake_client):
    with pytest.raises(web.HTTPBadRequest):
        await ForwardingHandler(fake_client).forward(ForwardRequest("GET", ""))
    assert fake_client.recorded_requests == []


async def test_forward_invalid_target_is_bad_request_without_upstream_call(fake_client):
    with pytest.raises(web.HTTPBadRequest):
        await ForwardingHandler(fake_client).forward(ForwardRequest("GET", "/bad path"))
    assert fake_client.recorded_requests == []


async def test_forward_transport_error_is_bad_gateway(fake_client):
    fake_client.enqueue_error(TransportError("stubbed failure"))
    with pytest.raises(web.HTTPBadGateway):
        await ForwardingHandler(fake_client).forward(ForwardRequest("GET", "/"))
    assert len(fake_client.recorded_requests) == 1


async def test_forward_body_read_error_is_internal_server_error(fake_client):
    fake_client.enqueue_error(BodyReadError("connection reset"))
    with pytest.raises(web.HTTPInternalServerError):
        await ForwardingHandler(fake_client).forward(ForwardRequest("GET", "/"))


# ---------------------------------------------------------------------------
# Through the app
# ---------------------------------------------------------------------------


async def test_fallback_returns_stubbed_response(proxy_client, fake_client):
    fake_client.enqueue_response(stub_response(TEST_RESPONSE, status=201, headers={"Content-Type": "text/plain"}))

    resp = await proxy_client.get("/")

    assert resp.status == 201
    assert await resp.text() == TEST_RESPONSE


async def test_fallback_forwards_method_body_and_host(proxy_client, fake_client):
    fake_client.enqueue_response(stub_response(TEST_RESPONSE))

    resp = await proxy_client.put("/v1/library/tags", data=TEST_BODY)

    assert resp.status == 200
    forwarded = fake_client.recorded_requests[0]
    assert forwarded.method == "PUT"
    assert str(forwarded.url) == "https://storeapi.kobo.com/v1/library/tags"
    assert forwarded.headers["Host"] == UPSTREAM_HOST
    assert forwarded.body == TEST_BODY


async def test_fallback_response_never_carries_transfer_encoding(proxy_client, fake_client):
    fake_client.enqueue_response(stub_response(TEST_RESPONSE, headers={"Transfer-Encoding": "chunked"}))

    resp = await proxy_client.get("/")

    assert resp.status == 200
    assert "Transfer-Encoding" not in resp.headers
    assert await resp.text() == TEST_RESPONSE


async def test_fallback_returns_bad_gateway_when_client_errors(proxy_client, fake_client):
    fake_client.enqueue_error(TransportError("stubbed failure"))

    resp = await proxy_client.get("/")

    assert resp.status == 502
    assert "stubbed failure" not in await resp.text()


async def test_fallback_with_empty_queue_is_bad_gateway(proxy_client):
    resp = await proxy_client.get("/v1/user/profile")
    assert resp.status == 502


async def test_upstream_status_codes_pass_through(proxy_client, fake_client):
    fake_client.enqueue_response(stub_response("nope", status=401))

    resp = await proxy_client.get("/v1/user/profile")

    assert resp.status == 401
    assert await resp.text() == "nope"


async def test_multiple_leading_slashes_are_normalized(proxy_client, fake_client):
    fake_client.enqueue_response(stub_response(TEST_RESPONSE))

    status, _ = await raw_http(proxy_client.host, proxy_client.port, "///some/path///", method="POST", body=TEST_BODY)

    assert status == 200
    forwarded = fake_client.recorded_requests[0]
    assert forwarded.url.path == "/some/path"
    assert forwarded.method == "POST"
    assert forwarded.body == TEST_BODY


async def test_absolute_form_target_is_normalized(proxy_client, fake_client):
    fake_client.enqueue_response(stub_response(TEST_RESPONSE))
    target = f"http://{proxy_client.host}:{proxy_client.port}//some/path/?q=1"

    status, _ = await raw_http(proxy_client.host, proxy_client.port, target)

    assert status == 200
    assert str(fake_client.recorded_requests[0].url) == "https://storeapi.kobo.com/some/path?q=1"


async def test_missing_content_type_is_not_invented(proxy_client, fake_client):
    fake_client.enqueue_response(stub_response(TEST_RESPONSE))

    resp = await proxy_client.get("/v1/user/profile")

    assert resp.status == 200
    assert "Content-Type" not in resp.headers
    assert await resp.read() == TEST_RESPONSE.encode()


async def test_upstream_content_type_is_kept(proxy_client, fake_client):
    fake_client.enqueue_response(stub_response(TEST_RESPONSE, headers={"Content-Type": "application/json"}))

    resp = await proxy_client.get("/v1/user/profile")

    assert resp.headers["Content-Type"] == "application/json"
