"""Router – path normalization, optional logging middleware, dispatch."""

from __future__ import annotations

import logging

from aiohttp import hdrs, web
from multidict import CIMultiDict

from kobo_proxy.body import decode_body, is_gzip, read_request_body
from kobo_proxy.client import NO_CONTENT_TYPE_KEY, ForwardRequest, UpstreamClient
from kobo_proxy.errors import BodyReadError, DecodeError
from kobo_proxy.proxy import ForwardingHandler, path_and_query
from kobo_proxy.rewrite import INITIALIZATION_PATH, InitializationHandler

log = logging.getLogger("kobo-proxy")

# Per-request slot holding the normalized request target
TARGET_KEY = "kobo_proxy.target"

UPSTREAM_CLIENT_KEY = web.AppKey("upstream_client", UpstreamClient)

_UNPRINTABLE = "<unprintable body>"


def normalize_target(target: str) -> str:
    """Collapse leading slashes and trim trailing ones from the path part.

    Kobo devices prefix every path with a double slash (``//v1/library``).
    The query string is left untouched.
    """
    if not target.startswith("/"):
        return target
    path, sep, query = target.partition("?")
    return "/" + path.strip("/") + sep + query


def _body_repr(body: bytes, headers) -> str:
    try:
        return decode_body(body, is_gzip(headers))
    except DecodeError as exc:
        log.warning(f"Failed to decode body for logging: {exc}")
        return _UNPRINTABLE


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


@web.middleware
async def normalize_target_middleware(request: web.Request, handler) -> web.StreamResponse:
    # Absolute-form targets (http://host/path) are routed on their path too
    target = path_and_query(request.raw_path)
    request[TARGET_KEY] = normalize_target(target) if target is not None else ""
    return await handler(request)


@web.middleware
async def log_requests(request: web.Request, handler) -> web.StreamResponse:
    # The body stays cached on the request, so the handler can read it again
    try:
        body = await read_request_body(request)
    except BodyReadError as exc:
        log.error(f"Failed to read request body: {exc}")
        raise web.HTTPInternalServerError() from exc

    log.info(
        f"Incoming Request: {request.method} {request.raw_path} "
        f"headers={dict(request.headers)} body={_body_repr(body, request.headers)}"
    )
    return await handler(request)


@web.middleware
async def log_responses(request: web.Request, handler) -> web.StreamResponse:
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        log.info(f"Outgoing Response: {exc.status} headers={dict(exc.headers)} body=")
        raise

    if isinstance(response, web.Response) and isinstance(response.body, bytes):
        body_repr = _body_repr(response.body, response.headers)
    else:
        body_repr = "<streamed body>"
    log.info(f"Outgoing Response: {response.status} headers={dict(response.headers)} body={body_repr}")
    return response


async def _drop_default_content_type(request: web.Request, response: web.StreamResponse) -> None:
    if response.get(NO_CONTENT_TYPE_KEY):
        response.headers.popall(hdrs.CONTENT_TYPE, None)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class ProxyRouter:
    """Sends ``GET /v1/initialization`` to the rewriter and everything else upstream."""

    def __init__(self, client: UpstreamClient, frontend_url: str):
        self.forwarding = ForwardingHandler(client)
        self.initialization = InitializationHandler(self.forwarding, frontend_url)

    async def dispatch(self, request: web.Request) -> web.Response:
        target = request.get(TARGET_KEY, request.raw_path)
        try:
            body = await read_request_body(request)
        except BodyReadError as exc:
            log.error(f"Failed to read request body: {exc}")
            raise web.HTTPInternalServerError() from exc

        forward_request = ForwardRequest(
            method=request.method,
            target=target,
            headers=CIMultiDict(request.headers),
            body=body,
        )

        path = target.partition("?")[0]
        if request.method == "GET" and path == INITIALIZATION_PATH:
            return await self.initialization.handle(forward_request)
        return await self.forwarding.handle(forward_request)


def create_app(
    client: UpstreamClient,
    frontend_url: str,
    *,
    enable_request_logging: bool = False,
    enable_response_logging: bool = False,
) -> web.Application:
    middlewares = [normalize_target_middleware]
    if enable_request_logging:
        middlewares.append(log_requests)
    if enable_response_logging:
        middlewares.append(log_responses)

    app = web.Application(middlewares=middlewares)
    app[UPSTREAM_CLIENT_KEY] = client

    router = ProxyRouter(client, frontend_url)
    app.router.add_route("*", "/{path_info:.*}", router.dispatch)

    async def _close_client(app: web.Application) -> None:
        await app[UPSTREAM_CLIENT_KEY].close()

    app.on_response_prepare.append(_drop_default_content_type)
    app.on_cleanup.append(_close_client)
    return app
