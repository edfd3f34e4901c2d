"""Body helpers – buffer streaming bodies, detect and apply gzip."""

from __future__ import annotations

import asyncio
import gzip
import logging
import zlib
from collections.abc import Mapping

import aiohttp
from aiohttp import web
from aiohttp.http_exceptions import HttpProcessingError

from kobo_proxy.errors import BodyReadError, DecodeError, EncodeError

log = logging.getLogger("kobo-proxy")


async def buffer_body(stream: aiohttp.StreamReader) -> bytes:
    """Drain a (possibly chunked) body stream into one ``bytes`` buffer."""
    try:
        return await stream.read()
    except (aiohttp.ClientPayloadError, aiohttp.ClientConnectionError, ConnectionError, asyncio.TimeoutError) as exc:
        raise BodyReadError(f"Failed to read body: {exc}") from exc


async def read_request_body(request: web.Request) -> bytes:
    """Read an inbound request body.

    aiohttp caches the bytes on the request, so later readers (the real
    handler after a logging middleware) see the same body again.
    """
    try:
        return await request.read()
    except (HttpProcessingError, ConnectionError, asyncio.TimeoutError) as exc:
        raise BodyReadError(f"Failed to read body: {exc}") from exc


def is_gzip(headers: Mapping[str, str]) -> bool:
    """True only for a ``content-encoding`` of exactly ``gzip``.

    Stacked encodings such as ``br, gzip`` are reported as not gzip.
    """
    for name, value in headers.items():
        if name.lower() == "content-encoding":
            return value.strip().lower() == "gzip"
    return False


def compress_gzip(text: str) -> bytes:
    try:
        return gzip.compress(text.encode("utf-8"))
    except (OSError, zlib.error) as exc:
        raise EncodeError(f"Failed to compress body: {exc}") from exc


def decompress_gzip(data: bytes) -> str:
    if not data:
        raise DecodeError("Empty body is not a gzip stream")
    try:
        raw = gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as exc:
        raise DecodeError(f"Failed to decompress gzip body: {exc}") from exc
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"Decompressed body is not valid UTF-8: {exc}") from exc


def decode_body(data: bytes, gzipped: bool) -> str:
    """Turn body bytes into text.

    Gzipped bodies must decompress to valid UTF-8 or :class:`DecodeError` is
    raised. Plain bodies are decoded leniently, with invalid sequences
    replaced by U+FFFD.
    """
    if gzipped:
        return decompress_gzip(data)
    return data.decode("utf-8", errors="replace")


def encode_body(text: str, compress: bool) -> bytes:
    if compress:
        return compress_gzip(text)
    return text.encode("utf-8")
