"""Upstream clients – the production aiohttp client and a recording fake."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Protocol

import aiohttp
from aiohttp import hdrs, web
from multidict import CIMultiDict
from yarl import URL

from kobo_proxy.body import buffer_body
from kobo_proxy.errors import NoStubbedResponseError, TransportError

log = logging.getLogger("kobo-proxy")

# Headers aiohttp would otherwise invent on the way out. The proxy forwards
# exactly what the device sent.
_SKIP_AUTO_HEADERS = ("User-Agent", "Accept-Encoding", "Content-Type")

# Set on responses whose upstream sent no Content-Type. aiohttp fills in
# application/octet-stream while preparing headers; the router takes it out again.
NO_CONTENT_TYPE_KEY = "kobo_proxy.no_content_type"


@dataclass
class ForwardRequest:
    """One inbound request, detached from the web framework.

    ``target`` is the request target: a path+query before retargeting, an
    absolute upstream URL after.
    """

    method: str
    target: str
    headers: CIMultiDict[str] = field(default_factory=CIMultiDict)
    body: bytes = b""

    @property
    def url(self) -> URL:
        return URL(self.target, encoded=True)


@dataclass
class UpstreamResponse:
    status: int
    headers: CIMultiDict[str] = field(default_factory=CIMultiDict)
    body: bytes = b""
    reason: str | None = None

    def to_web_response(self) -> web.Response:
        response = web.Response(status=self.status, reason=self.reason, headers=CIMultiDict(self.headers), body=self.body)
        if hdrs.CONTENT_TYPE not in self.headers:
            response[NO_CONTENT_TYPE_KEY] = True
        return response


class UpstreamClient(Protocol):
    async def request(self, request: ForwardRequest) -> UpstreamResponse:
        """Send ``request`` once and return the fully buffered response.

        Raises :class:`TransportError` when the upstream is unreachable and
        :class:`BodyReadError` when the response body breaks off mid-read.
        """
        ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Production client
# ---------------------------------------------------------------------------


class AiohttpUpstreamClient:
    """Pooled HTTPS client backed by a single ``aiohttp.ClientSession``.

    The session is opened on first use so it always belongs to the running
    event loop. Responses are not decompressed.
    """

    def __init__(self) -> None:
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            log.debug("Opening upstream connection pool")
            self._session = aiohttp.ClientSession(auto_decompress=False, skip_auto_headers=_SKIP_AUTO_HEADERS)
        return self._session

    async def request(self, request: ForwardRequest) -> UpstreamResponse:
        session = self._get_session()
        try:
            resp = await session.request(
                method=request.method,
                url=request.url,
                headers=request.headers,
                data=request.body or None,
                allow_redirects=False,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise TransportError(f"{request.method} {request.target}: {exc}") from exc

        async with resp:
            body = await buffer_body(resp.content)
            return UpstreamResponse(
                status=resp.status,
                headers=CIMultiDict(resp.headers),
                body=body,
                reason=resp.reason,
            )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


# ---------------------------------------------------------------------------
# Fake client for tests
# ---------------------------------------------------------------------------


@dataclass
class RecordedRequest:
    """Snapshot of a request presented to :class:`FakeUpstreamClient`."""

    method: str
    url: URL
    headers: CIMultiDict[str]
    body: bytes


class FakeUpstreamClient:
    """Replays queued responses/errors in FIFO order and logs every request."""

    def __init__(self) -> None:
        # Both locks only guard list/deque updates and are never held across an await
        self._responses: deque[UpstreamResponse | BaseException] = deque()
        self._responses_lock = threading.Lock()
        self._recorded: list[RecordedRequest] = []
        self._recorded_lock = threading.Lock()

    def enqueue_response(self, response: UpstreamResponse) -> None:
        with self._responses_lock:
            self._responses.append(response)

    def enqueue_error(self, error: BaseException) -> None:
        with self._responses_lock:
            self._responses.append(error)

    @property
    def recorded_requests(self) -> list[RecordedRequest]:
        with self._recorded_lock:
            return list(self._recorded)

    async def request(self, request: ForwardRequest) -> UpstreamResponse:
        recorded = RecordedRequest(
            method=request.method,
            url=request.url,
            headers=CIMultiDict(request.headers),
            body=bytes(request.body),
        )
        with self._recorded_lock:
            self._recorded.append(recorded)

        with self._responses_lock:
            item = self._responses.popleft() if self._responses else None
        if item is None:
            raise NoStubbedResponseError()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        pass
