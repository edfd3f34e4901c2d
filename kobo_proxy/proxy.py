"""Forwarding handler – retarget requests onto the Kobo store API."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping

from aiohttp import web
from multidict import CIMultiDict
from yarl import URL

from kobo_proxy.client import ForwardRequest, UpstreamClient, UpstreamResponse
from kobo_proxy.errors import BodyReadError, TransportError

log = logging.getLogger("kobo-proxy")

UPSTREAM_HOST = "storeapi.kobo.com"
UPSTREAM_URL = f"https://{UPSTREAM_HOST}"

# ---------------------------------------------------------------------------
# Header helpers
# ---------------------------------------------------------------------------

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


def filter_headers(headers: Mapping[str, str], *, drop: Iterable[str] = ()) -> CIMultiDict[str]:
    """Copy ``headers`` without hop-by-hop entries and without ``drop``.

    Repeated headers keep every value and their order.
    """
    skip = HOP_BY_HOP | {name.lower() for name in drop}
    out: CIMultiDict[str] = CIMultiDict()
    for k, v in headers.items():
        if k.lower() in skip:
            continue
        out.add(k, v)
    return out


# ---------------------------------------------------------------------------
# URI retargeting
# ---------------------------------------------------------------------------

# Anything outside visible ASCII, plus '#', cannot appear in a request target.
_INVALID_TARGET_CHAR = re.compile(r"[^\x21-\x7e]|#")


def path_and_query(target: str) -> str | None:
    """Return the path+query part of a request target, or None if it has none.

    Absolute-form targets (``http://host/path?q``) are reduced to their
    path+query; origin-form targets are returned as they are.
    """
    if not target:
        return None
    if target.startswith("/"):
        return target
    if "://" in target:
        try:
            url = URL(target, encoded=True)
        except ValueError:
            return target
        if url.is_absolute():
            return url.raw_path_qs
    return target


def upstream_url(path_qs: str) -> URL:
    """Build the HTTPS upstream URL for ``path_qs``.

    Raises ValueError if ``path_qs`` is not a valid origin-form target.
    """
    if not path_qs.startswith("/"):
        raise ValueError(f"request target must start with '/': {path_qs!r}")
    bad = _INVALID_TARGET_CHAR.search(path_qs)
    if bad is not None:
        raise ValueError(f"invalid character {bad.group()!r} in request target {path_qs!r}")
    path, _, query = path_qs.partition("?")
    return URL.build(scheme="https", host=UPSTREAM_HOST, path=path, query_string=query, encoded=True)


# ---------------------------------------------------------------------------
# Forwarding handler
# ---------------------------------------------------------------------------


class ForwardingHandler:
    """Forwards requests to the Kobo store API, one attempt each."""

    def __init__(self, client: UpstreamClient):
        self.client = client

    async def forward(self, request: ForwardRequest) -> UpstreamResponse:
        """Send ``request`` upstream and return the sanitized response.

        Raises ``HTTPBadRequest`` for targets that cannot be forwarded,
        ``HTTPBadGateway`` when the upstream is unreachable and
        ``HTTPInternalServerError`` when its body cannot be read.
        """
        path_qs = path_and_query(request.target)
        if path_qs is None:
            log.error("Request URI missing path and query")
            raise web.HTTPBadRequest()

        try:
            url = upstream_url(path_qs)
        except ValueError as exc:
            log.error(f"Invalid URI: {exc}")
            raise web.HTTPBadRequest() from exc

        # aiohttp recomputes the length from the buffered body
        headers = filter_headers(request.headers, drop=("content-length",))
        headers["Host"] = UPSTREAM_HOST

        outbound = ForwardRequest(method=request.method, target=str(url), headers=headers, body=request.body)
        log.debug(f"→ {outbound.method} {outbound.target}")

        try:
            response = await self.client.request(outbound)
        except TransportError as exc:
            log.error(f"Error forwarding request: {exc}")
            raise web.HTTPBadGateway() from exc
        except BodyReadError as exc:
            log.error(f"Error reading upstream response for {outbound.target}: {exc}")
            raise web.HTTPInternalServerError() from exc

        log.debug(f"← {response.status} {outbound.target} ({len(response.body)} bytes)")

        # Kobo devices stall when a proxied response still says transfer-encoding
        response.headers = filter_headers(response.headers)
        return response

    async def handle(self, request: ForwardRequest) -> web.Response:
        response = await self.forward(request)
        return response.to_web_response()
