"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import gzip

import pytest
from multidict import CIMultiDict

from kobo_proxy.client import FakeUpstreamClient, UpstreamResponse
from kobo_proxy.router import create_app

FRONTEND_URL = "http://localhost:8089"


def stub_response(body: bytes | str = b"", status: int = 200, headers: dict[str, str] | None = None) -> UpstreamResponse:
    if isinstance(body, str):
        body = body.encode("utf-8")
    return UpstreamResponse(status=status, headers=CIMultiDict(headers or {}), body=body)


def gzip_response(text: str, status: int = 200, headers: dict[str, str] | None = None) -> UpstreamResponse:
    all_headers = {"Content-Type": "application/json; charset=utf-8", "Content-Encoding": "gzip"}
    all_headers.update(headers or {})
    return stub_response(gzip.compress(text.encode("utf-8")), status=status, headers=all_headers)


async def raw_http(host: str, port: int, target: str, method: str = "GET", body: bytes = b"") -> tuple[int, bytes]:
    """Send a request line verbatim, bypassing client-side URL cleanup."""
    reader, writer = await asyncio.open_connection(host, port)
    head = (
        f"{method} {target} HTTP/1.1\r\n"
        f"Host: {host}:{port}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n\r\n"
    )
    writer.write(head.encode("ascii") + body)
    await writer.drain()
    data = await reader.read()
    writer.close()
    await writer.wait_closed()
    status = int(data.split(b" ", 2)[1])
    return status, data


@pytest.fixture
def fake_client():
    return FakeUpstreamClient()


@pytest.fixture
def proxy_app(fake_client):
    return create_app(fake_client, FRONTEND_URL)


@pytest.fixture
async def proxy_client(aiohttp_client, proxy_app):
    return await aiohttp_client(proxy_app, auto_decompress=False)
