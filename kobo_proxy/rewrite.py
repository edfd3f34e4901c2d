"""Initialization rewriter – point the device's resource URLs back at the proxy.

The ``/v1/initialization`` response lists every store endpoint as an absolute
``https://storeapi.kobo.com/...`` URL. Devices follow those URLs directly, so
the proxy swaps the upstream root for its own frontend URL before answering.
"""

from __future__ import annotations

import logging

from aiohttp import web
from multidict import CIMultiDict

from kobo_proxy.body import decode_body, encode_body, is_gzip
from kobo_proxy.client import ForwardRequest, UpstreamResponse
from kobo_proxy.errors import DecodeError, EncodeError
from kobo_proxy.proxy import UPSTREAM_URL, ForwardingHandler

log = logging.getLogger("kobo-proxy")

INITIALIZATION_PATH = "/v1/initialization"


def rewrite_body(body: bytes, gzipped: bool, frontend_url: str) -> bytes:
    """Replace every upstream root in ``body`` with ``frontend_url``.

    The result keeps the compression state of the input.
    """
    text = decode_body(body, gzipped)
    return encode_body(text.replace(UPSTREAM_URL, frontend_url), gzipped)


class InitializationHandler:
    def __init__(self, forwarding: ForwardingHandler, frontend_url: str):
        self.forwarding = forwarding
        self.frontend_url = frontend_url

    async def rewrite(self, request: ForwardRequest) -> UpstreamResponse:
        response = await self.forwarding.forward(request)

        gzipped = is_gzip(response.headers)
        try:
            body = rewrite_body(response.body, gzipped, self.frontend_url)
        except (DecodeError, EncodeError) as exc:
            log.error(f"Failed to rewrite {INITIALIZATION_PATH} response: {exc}")
            raise web.HTTPInternalServerError() from exc

        headers = CIMultiDict(response.headers)
        if "Content-Length" in headers:
            headers["Content-Length"] = str(len(body))

        return UpstreamResponse(status=response.status, headers=headers, body=body, reason=response.reason)

    async def handle(self, request: ForwardRequest) -> web.Response:
        response = await self.rewrite(request)
        return response.to_web_response()
