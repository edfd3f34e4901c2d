"""Listeners – where the aiohttp runner gets its connections from."""

from __future__ import annotations

import logging
import socket
from typing import Protocol

from aiohttp import web

log = logging.getLogger("kobo-proxy")

ANY_HOST = "0.0.0.0"


class Listener(Protocol):
    @property
    def address(self) -> tuple[str, int]:
        """The local ``(host, port)`` this listener is bound to."""
        ...

    async def start(self, runner: web.AppRunner) -> None:
        """Begin accepting connections on behalf of ``runner``."""
        ...

    def close(self) -> None: ...


class ListenerFactory(Protocol):
    async def bind(self, port: int) -> Listener:
        """Bind ``port`` (0 picks a free port). Raises OSError on failure."""
        ...


# ---------------------------------------------------------------------------
# TCP
# ---------------------------------------------------------------------------


class TcpListener:
    def __init__(self, sock: socket.socket):
        self._sock = sock
        self._address: tuple[str, int] = sock.getsockname()[:2]

    @property
    def address(self) -> tuple[str, int]:
        return self._address

    async def start(self, runner: web.AppRunner) -> None:
        site = web.SockSite(runner, self._sock)
        await site.start()

    def close(self) -> None:
        self._sock.close()


class TcpListenerFactory:
    """Binds real TCP sockets on every interface."""

    def __init__(self, host: str = ANY_HOST):
        self.host = host

    async def bind(self, port: int) -> TcpListener:
        sock = socket.create_server((self.host, port))
        sock.setblocking(False)
        return TcpListener(sock)


# ---------------------------------------------------------------------------
# Fake
# ---------------------------------------------------------------------------


class FakeListener:
    """Reports an address but never accepts a connection.

    Lets the lifecycle run start-up and shutdown without touching the network.
    """

    def __init__(self, port: int, host: str = ANY_HOST):
        self._address = (host, port)

    @property
    def address(self) -> tuple[str, int]:
        return self._address

    async def start(self, runner: web.AppRunner) -> None:
        log.debug(f"Fake listener on {self._address[0]}:{self._address[1]} will not accept connections")

    def close(self) -> None:
        pass


class FakeListenerFactory:
    async def bind(self, port: int) -> FakeListener:
        return FakeListener(port)
