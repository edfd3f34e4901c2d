"""Server lifecycle – bind, serve in the background, shut down on cancellation."""

from __future__ import annotations

import asyncio
import enum
import logging
import signal
import threading
from dataclasses import dataclass

from aiohttp import web

from kobo_proxy.client import AiohttpUpstreamClient, FakeUpstreamClient, UpstreamClient
from kobo_proxy.config import ProxyConfig
from kobo_proxy.errors import ServerStateError
from kobo_proxy.listener import FakeListenerFactory, Listener, ListenerFactory, TcpListenerFactory
from kobo_proxy.router import create_app

log = logging.getLogger("kobo-proxy")


class CancellationToken:
    """One-shot signal. Cancelling twice is the same as cancelling once."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ServerState(enum.Enum):
    UNSTARTED = "unstarted"
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass
class _RunningServer:
    address: tuple[str, int]
    task: asyncio.Task[None]


class App:
    """Owns one proxy server from start-up to shutdown.

    ``shutdown()`` may be called any number of times, from any state,
    including while ``start()`` is still binding.
    """

    def __init__(
        self,
        config: ProxyConfig,
        *,
        client: UpstreamClient | None = None,
        listener_factory: ListenerFactory | None = None,
    ):
        self.config = config
        self._client = client if client is not None else AiohttpUpstreamClient()
        self._listener_factory = listener_factory if listener_factory is not None else TcpListenerFactory()
        self._cancellation = CancellationToken()
        self._started = CancellationToken()
        # Guards _state, _server and _address. Never held across an await.
        self._lock = threading.Lock()
        self._state = ServerState.UNSTARTED
        self._server: _RunningServer | None = None
        self._address: tuple[str, int] | None = None

    @classmethod
    def for_testing(cls, client: UpstreamClient | None = None, port: int = 0) -> App:
        """An app on the fake listener: full lifecycle, no sockets."""
        return cls(
            ProxyConfig(port=port),
            client=client if client is not None else FakeUpstreamClient(),
            listener_factory=FakeListenerFactory(),
        )

    @property
    def state(self) -> ServerState:
        with self._lock:
            return self._state

    @property
    def address(self) -> tuple[str, int] | None:
        with self._lock:
            return self._address

    @property
    def cancellation(self) -> CancellationToken:
        return self._cancellation

    # -- start ------------------------------------------------------------

    async def start(self) -> None:
        """Bind the listener and start serving in a background task.

        Bind errors propagate. After ``shutdown()`` this is a no-op.
        """
        with self._lock:
            if self._state is ServerState.STOPPED:
                log.debug("Shutdown already requested, not starting")
                self._started.cancel()
                return
            if self._state is not ServerState.UNSTARTED:
                raise ServerStateError(f"Cannot start server while {self._state.value}")
            self._state = ServerState.STARTING

        try:
            server = await self._start_server()
        except BaseException:
            with self._lock:
                self._state = ServerState.STOPPED
            self._started.cancel()
            raise

        with self._lock:
            self._server = server
            self._address = server.address
            self._state = ServerState.RUNNING
        host, port = server.address
        log.info(f"Server started on http://{host}:{port}")
        self._started.cancel()

        if self._cancellation.cancelled:
            # shutdown() ran while we were binding and found nothing to stop
            await self.shutdown()

    async def _start_server(self) -> _RunningServer:
        listener = await self._listener_factory.bind(self.config.port)

        app = create_app(
            self._client,
            self.config.frontend_url,
            enable_request_logging=self.config.enable_request_logging,
            enable_response_logging=self.config.enable_response_logging,
        )
        runner = web.AppRunner(app, handle_signals=False)
        await runner.setup()
        try:
            await listener.start(runner)
        except BaseException:
            await runner.cleanup()
            listener.close()
            raise

        task = asyncio.create_task(self._serve(runner, listener), name="kobo-proxy-server")
        return _RunningServer(address=listener.address, task=task)

    async def _serve(self, runner: web.AppRunner, listener: Listener) -> None:
        try:
            await self._cancellation.wait()
        finally:
            # Stops accepting, then lets in-flight requests finish
            await runner.cleanup()
            listener.close()

    # -- waiting ----------------------------------------------------------

    async def wait_until_running(self) -> tuple[str, int]:
        """Block until ``start()`` has published the bound address."""
        await self._started.wait()
        address = self.address
        if address is None:
            raise ServerStateError("Server did not start")
        return address

    async def wait_until_shutdown(self) -> None:
        await self._cancellation.wait()

    async def _wait_for_shutdown_signal(self) -> None:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._cancellation.cancel)
            except (NotImplementedError, RuntimeError, ValueError) as exc:
                log.error(f"Failed to listen for shutdown signal {sig.name}: {exc}")
            else:
                installed.append(sig)

        try:
            await self._cancellation.wait()
        finally:
            for sig in installed:
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError, ValueError):
                    pass
        log.info("Shutdown signal received")

    # -- run / shutdown ---------------------------------------------------

    async def run(self) -> None:
        """Start, wait for Ctrl+C/SIGTERM or ``shutdown()``, then stop."""
        await self.start()
        try:
            await self._wait_for_shutdown_signal()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Cancel the server and wait for its background task.

        Errors from the serving task are raised here.
        """
        self._cancellation.cancel()
        with self._lock:
            server, self._server = self._server, None
            if server is not None:
                self._state = ServerState.SHUTTING_DOWN
            elif self._state is ServerState.UNSTARTED:
                self._state = ServerState.STOPPED
        if server is None:
            return

        try:
            await server.task
        finally:
            with self._lock:
                self._state = ServerState.STOPPED
            log.info("Server stopped")
