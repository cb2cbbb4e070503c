"""API Server: route composition, middleware layering and the serve/shutdown lifecycle.

Invariants:
    - Lifecycle is CONSTRUCTED -> CONFIGURED -> LISTENING -> SHUTTING_DOWN -> STOPPED
    - Routes are added only while CONSTRUCTED; each lands at {path}/{version}/{suffix}
    - The route table is an immutable tuple, rebuilt on every add_route()
    - /health is always present, unprefixed, and never touches the database
    - Middleware nesting, outermost first: request span, error logging, CORS, handler
    - A bind failure is fatal (SystemExit(1)); no retry
    - Shutdown stops accepting, lets in-flight requests finish (bounded by
      shutdown_timeout), and only then reports STOPPED

Design Decisions:
    - The shutdown token is one asyncio.Event fed by SIGINT/SIGTERM or shutdown();
      uvicorn's own signal capture is switched off so there is a single path
    - The listening socket is bound here, not by uvicorn: the bind error is ours
      to report, and port 0 yields a real port via bound_address
    - Handlers are any FastAPI endpoint callable; they reach the pool through StateDep
"""

import asyncio
import contextlib
import logging
import signal
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, Sequence

import uvicorn
from fastapi import APIRouter, FastAPI

from timeseries_api.api.error_handlers import AppRoute, register_error_handlers
from timeseries_api.api.middleware import (
    ErrorLoggingMiddleware,
    RequestSpanMiddleware,
    configure_cors,
)
from timeseries_api.api.routes import health
from timeseries_api.api.state import AppState
from timeseries_api.config import HttpConfig
from timeseries_api.infrastructure.database import ReadableDatabase

logger = logging.getLogger(__name__)


class ServerState(str, Enum):
    CONSTRUCTED = "constructed"
    CONFIGURED = "configured"
    LISTENING = "listening"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RouteSpec:
    path: str
    handler: Callable[..., Any]
    methods: tuple[str, ...]


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to ApiServer."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class ApiServer:
    """Owns the shared state, the route table and the listener."""

    def __init__(
        self,
        config: HttpConfig,
        db: ReadableDatabase,
        *,
        request_timeout: float = 30.0,
        shutdown_timeout: float = 30.0,
        max_concurrent_requests: int = 0,
    ):
        self.config = config
        self.state = AppState(db=db)
        self.request_timeout = request_timeout
        self.shutdown_timeout = shutdown_timeout
        self.max_concurrent_requests = max_concurrent_requests
        self._routes: tuple[RouteSpec, ...] = ()
        self._app: FastAPI | None = None
        self._status = ServerState.CONSTRUCTED
        self._shutdown = asyncio.Event()
        self._bound: tuple[str, int] | None = None

    @property
    def status(self) -> ServerState:
        return self._status

    @property
    def routes(self) -> tuple[str, ...]:
        """Registered prefixed paths, in registration order."""
        return tuple(spec.path for spec in self._routes)

    @property
    def bound_address(self) -> tuple[str, int] | None:
        return self._bound

    def add_route(
        self,
        path_suffix: str,
        handler: Callable[..., Any],
        *,
        methods: Sequence[str] = ("GET",),
    ) -> None:
        """Register `handler` at {path}/{version}/{path_suffix}."""
        if self._status is not ServerState.CONSTRUCTED:
            raise RuntimeError(
                f"Cannot add route '{path_suffix}': server is {self._status.value}",
            )
        path = self.config.route_path(path_suffix)
        methods = tuple(m.upper() for m in methods)
        for spec in self._routes:
            if spec.path == path and set(spec.methods) & set(methods):
                raise ValueError(f"Route already registered: {path}")
        self._routes = (*self._routes, RouteSpec(path, handler, methods))
        logger.info(f"Route added: {path}", extra={"route": path})

    def build_app(self) -> FastAPI:
        """Assemble the FastAPI app: routes, handlers, middleware. Idempotent."""
        if self._app is not None:
            return self._app

        app = FastAPI(
            title="Timeseries API",
            version=self.config.version,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )
        app.state.app_state = self.state
        app.state.request_timeout = self.request_timeout

        app.include_router(health.router)
        api = APIRouter(route_class=AppRoute)
        for spec in self._routes:
            api.add_api_route(spec.path, spec.handler, methods=list(spec.methods))
        app.include_router(api)

        register_error_handlers(app)

        # add_middleware wraps: the last one added is the outermost
        if self.config.cors.enabled:
            configure_cors(app, self.config.cors)
        app.add_middleware(ErrorLoggingMiddleware)
        app.add_middleware(RequestSpanMiddleware)

        self._app = app
        self._status = ServerState.CONFIGURED
        return app

    def shutdown(self) -> None:
        """Trigger graceful shutdown. Safe to call more than once."""
        self._shutdown.set()

    async def init(self) -> None:
        """Configure, bind, serve until shutdown, then drain."""
        app = self.build_app()
        sock = self._bind()
        if self.config.tls.enabled:
            logger.warning(
                "TLS is enabled in config but not terminated by this server; "
                "terminate TLS at the proxy",
            )

        server = _EmbeddedServer(
            uvicorn.Config(
                app,
                log_config=None,
                lifespan="off",
                timeout_graceful_shutdown=self.shutdown_timeout or None,
                limit_concurrency=self.max_concurrent_requests or None,
            ),
        )
        try:
            with self._signal_handlers():
                self._status = ServerState.LISTENING
                logger.info(
                    f"API Server listening on http://{self.config.address}",
                    extra={"address": f"{self._bound[0]}:{self._bound[1]}"},
                )
                await self._serve_until_shutdown(server, sock)
        finally:
            sock.close()
            self._status = ServerState.STOPPED
        logger.info("API Server stopped successfully")

    async def _serve_until_shutdown(
        self, server: uvicorn.Server, sock: socket.socket,
    ) -> None:
        serve_task = asyncio.create_task(server.serve(sockets=[sock]))
        stop_task = asyncio.create_task(self._shutdown.wait())
        done, _ = await asyncio.wait(
            {serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED,
        )
        if stop_task in done:
            logger.info("Signal received, starting graceful shutdown...")
            self._status = ServerState.SHUTTING_DOWN
            # uvicorn skips closing its listeners when told to exit mid-startup
            while not server.started and not serve_task.done():
                await asyncio.sleep(0.01)
            server.should_exit = True
            await serve_task
            return
        stop_task.cancel()
        # serve() returned on its own: re-raise its failure, if any
        serve_task.result()

    def _bind(self) -> socket.socket:
        host, port = self.config.host, self.config.port
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            sock = socket.create_server((host, port), family=family)
        except OSError as e:
            self._status = ServerState.STOPPED
            logger.critical(f"Failed to bind to address {self.config.address}: {e}")
            raise SystemExit(1) from e
        self._bound = sock.getsockname()[:2]
        return sock

    @contextlib.contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        """Route SIGINT and SIGTERM (where available) to shutdown()."""
        loop = asyncio.get_running_loop()
        signals = [signal.SIGINT]
        if hasattr(signal, "SIGTERM"):
            signals.append(signal.SIGTERM)

        via_loop: list[signal.Signals] = []
        previous: dict[signal.Signals, Any] = {}
        for sig in signals:
            try:
                loop.add_signal_handler(sig, self.shutdown)
                via_loop.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                try:
                    previous[sig] = signal.signal(
                        sig, lambda *_: loop.call_soon_threadsafe(self.shutdown),
                    )
                except ValueError:
                    logger.warning(
                        f"Cannot install {sig.name} handler outside the main "
                        "thread; use shutdown() to stop the server",
                    )
        try:
            yield
        finally:
            for sig in via_loop:
                loop.remove_signal_handler(sig)
            for sig, handler in previous.items():
                signal.signal(sig, handler)
