"""
ServiceBase — shared plumbing for kioskdash HTTP services.

Subclass contract:

    class MyService(ServiceBase):
        name = "demo"
        port = 3001

        def add_routes(self, app):
            app.router.add_get("/thing", self._handle_thing)

Optional overrides:
    on_start()              — called after the client session exists, before listening
    on_stop()               — called during shutdown
    error_response(request, exc)
                            — map an exception raised by a handler to a
                              response, or return None to fall through to 500
"""

import asyncio
import logging
import signal

from aiohttp import ClientSession, ClientTimeout, web

from lib.http_utils import cors_headers

log = logging.getLogger(__name__)


class ServiceBase:
    # ── Subclass must set these ──
    name: str = ""
    host: str = "0.0.0.0"
    port: int = 0

    def __init__(self, *, cors_origin: str = "*", timeout: float = 10):
        self.cors_origin = cors_origin
        self._timeout = timeout
        self._http_session: ClientSession | None = None
        self._runner: web.AppRunner | None = None

    # ── App construction ──

    def make_app(self) -> web.Application:
        """Build the aiohttp app. The client session is opened on app startup."""
        app = web.Application(middlewares=[self._error_middleware])
        app.router.add_route("OPTIONS", "/{tail:.*}", self._handle_cors)

        # Let subclass add its routes
        self.add_routes(app)

        app.on_startup.append(self._on_app_startup)
        app.on_cleanup.append(self._on_app_cleanup)
        return app

    async def _on_app_startup(self, app):
        self._http_session = ClientSession(timeout=ClientTimeout(total=self._timeout))
        await self.on_start()

    async def _on_app_cleanup(self, app):
        await self.on_stop()
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    # ── HTTP server ──

    async def start(self):
        """Create the app, start listening."""
        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("%s: HTTP API on %s:%d", self.name, self.host, self.port)

    async def stop(self):
        """Shutdown hook — override on_stop() for cleanup."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.stop()

    # ── CORS / JSON helpers ──

    def _cors_headers(self):
        return cors_headers(self.cors_origin)

    def json(self, data, status=200) -> web.Response:
        return web.json_response(data, status=status, headers=self._cors_headers())

    async def _handle_cors(self, request):
        return web.Response(headers=self._cors_headers())

    # ── Error mapping ──

    @web.middleware
    async def _error_middleware(self, request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            resp = self.error_response(request, e)
            if resp is not None:
                return resp
            log.exception("Unhandled error on %s %s", request.method, request.path)
            return self.json({"error": "Internal server error"}, status=500)

    # ── Subclass hooks (override as needed) ──

    async def on_start(self):
        """Called once the client session is available."""

    async def on_stop(self):
        """Called during shutdown."""

    def add_routes(self, app: web.Application):
        """Add aiohttp routes to the app."""

    def error_response(self, request, exc):
        """Return a response for a known exception, or None."""
        return None
