"""Exception hierarchy for kobo-proxy."""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for every error raised by kobo-proxy."""


class BodyReadError(ProxyError):
    """A request or response body stream failed before it was fully read."""


class DecodeError(ProxyError):
    """A body could not be gunzipped or is not valid UTF-8."""


class EncodeError(ProxyError):
    """A body could not be gzip-compressed."""


class TransportError(ProxyError):
    """The upstream could not be reached or did not answer."""


class NoStubbedResponseError(TransportError):
    def __init__(self) -> None:
        super().__init__("No stubbed response configured")


class ServerStateError(ProxyError):
    """A lifecycle operation was called in a state that does not allow it."""
