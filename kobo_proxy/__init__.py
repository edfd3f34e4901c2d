"""kobo-proxy: Reverse proxy for the Kobo store API.

Forwards every request a Kobo e-reader makes to ``storeapi.kobo.com`` and
rewrites the initialization response so the device keeps routing its
follow-up calls through the proxy.
"""

from __future__ import annotations

__version__ = "0.1.0"
__all__ = [
    "__version__",
    "App",
    "ProxyConfig",
    "AiohttpUpstreamClient",
    "FakeUpstreamClient",
    "create_app",
]

from kobo_proxy.client import AiohttpUpstreamClient, FakeUpstreamClient
from kobo_proxy.config import ProxyConfig
from kobo_proxy.router import create_app
from kobo_proxy.server import App
