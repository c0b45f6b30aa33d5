"""
Application handles and in-process listeners for managed instances.

Each instance owns one FastAPI application and one ManagedListener:
- build_application: fresh app with body limit, templates and static assets
- register_route: add a RouteSpec to a (possibly running) app
- ManagedListener: uvicorn server bound to a pre-bound socket, served as a
  task on the running event loop
"""

import asyncio
import contextlib
import logging
import socket
from enum import Enum
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.datastructures import Headers
from starlette.routing import Mount
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .config import DEFAULT_CONFIG, DynServeConfig
from .routes import RouteSpec


logger = logging.getLogger(__name__)


STATIC_MOUNT_NAME = "static"
TEMPLATE_ENGINE = "jinja2"


class ListenerTiming(float, Enum):
    """Polling intervals in seconds"""
    STARTUP_POLL = 0.01


class ListenerBacklog(int, Enum):
    """Listen backlog for managed sockets"""
    DEFAULT = 2048


class BodyLimitMiddleware:
    """
    Reject requests whose body exceeds a byte limit.

    A declared Content-Length is checked up front; streamed (chunked)
    bodies are counted as they are received.
    """

    def __init__(self, app: ASGIApp, limit: int):
        self.app = app
        self.limit = limit

    def _too_large(self) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content={"detail": f"Request body exceeds {self.limit} bytes"},
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        content_length = Headers(scope=scope).get("content-length")
        if content_length is not None and content_length.isdigit():
            if int(content_length) > self.limit:
                await self._too_large()(scope, receive, send)
                return

        received = 0
        response_started = False

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.limit:
                    raise HTTPException(
                        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        detail=f"Request body exceeds {self.limit} bytes",
                    )
            return message

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, limited_receive, tracking_send)
        except HTTPException as e:
            if e.status_code != status.HTTP_413_REQUEST_ENTITY_TOO_LARGE or response_started:
                raise
            await self._too_large()(scope, receive, send)


def build_application(
    views_path: Optional[str] = None,
    assets_path: Optional[str] = None,
    config: DynServeConfig = DEFAULT_CONFIG
) -> FastAPI:
    """
    Create a fresh application with the standard middleware setup.

    Args:
        views_path: Template directory (defaults to config.default_views_path)
        assets_path: Static directory (defaults to config.default_assets_path)
        config: Configuration supplying defaults and the body limit

    Returns:
        Configured FastAPI application
    """
    views_path = views_path or config.default_views_path
    assets_path = assets_path or config.default_assets_path

    app = FastAPI()
    app.add_middleware(BodyLimitMiddleware, limit=config.json_body_limit)

    app.state.view_engine = TEMPLATE_ENGINE
    app.state.views_path = views_path
    app.state.assets_path = assets_path
    app.state.templates = Jinja2Templates(directory=views_path)

    if Path(assets_path).is_dir():
        app.mount(
            "/",
            StaticFiles(directory=assets_path, html=True),
            name=STATIC_MOUNT_NAME,
        )
    else:
        logger.debug(f"Static directory {assets_path} not found, not serving assets")

    return app


def _move_static_mount_last(app: FastAPI) -> None:
    routes = app.router.routes
    mounts = [
        route for route in routes
        if isinstance(route, Mount) and route.name == STATIC_MOUNT_NAME
    ]
    for mount in mounts:
        routes.remove(mount)
        routes.append(mount)


def register_route(app: FastAPI, route: RouteSpec) -> None:
    """
    Register a route on an application, running or not.

    The static mount at "/" matches every path, so it is kept after all
    explicit routes.

    Args:
        app: Target application
        route: Route to add
    """
    app.add_api_route(route.path, route.handler, methods=[route.method.value])
    _move_static_mount_last(app)
    # Regenerate docs on next request
    app.openapi_schema = None


def bind_socket(host: str, port: int) -> socket.socket:
    """
    Bind and listen on host:port.

    Raises:
        OSError: If the port cannot be bound
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(ListenerBacklog.DEFAULT.value)
    except OSError:
        sock.close()
        raise
    sock.setblocking(False)
    return sock


class _InProcessServer(uvicorn.Server):
    """uvicorn server that leaves process signals to the host application"""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class ManagedListener:
    """
    A uvicorn server serving one application on the current event loop.

    Example:
        listener = await ManagedListener.start(app, "127.0.0.1", 3000)
        ...
        await listener.close()
    """

    def __init__(
        self,
        server: uvicorn.Server,
        task: "asyncio.Task[None]",
        sock: socket.socket,
        port: int
    ):
        self.server = server
        self.task = task
        self.sock = sock
        self.port = port

    @classmethod
    async def start(
        cls,
        app: FastAPI,
        host: str,
        port: int,
        log_level: str = DEFAULT_CONFIG.log_level
    ) -> "ManagedListener":
        """
        Bind host:port and serve app until close() is awaited.

        Returns once uvicorn reports the server started.

        Raises:
            OSError: If the port cannot be bound
            RuntimeError: If the server exits during startup
        """
        sock = bind_socket(host, port)

        config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level=log_level,
            log_config=None,
            lifespan="off",
            access_log=False,
        )
        server = _InProcessServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))

        try:
            while not server.started:
                if task.done():
                    error = task.exception()
                    raise RuntimeError(
                        f"Listener on port {port} exited during startup"
                    ) from error
                await asyncio.sleep(ListenerTiming.STARTUP_POLL.value)
        except BaseException:
            if not task.done():
                server.should_exit = True
                with contextlib.suppress(Exception):
                    await task
            sock.close()
            raise

        # port 0 binds an ephemeral port
        bound_port = sock.getsockname()[1]
        logger.debug(f"Listener ready on {host}:{bound_port}")
        return cls(server, task, sock, bound_port)

    @property
    def is_serving(self) -> bool:
        """True while the serve task is alive"""
        return not self.task.done()

    async def close(self) -> None:
        """
        Ask uvicorn to exit and wait for it.

        Raises:
            Exception: Whatever the serve task failed with
        """
        self.server.should_exit = True
        await self.task
        self.sock.close()
        logger.debug(f"Listener on port {self.port} closed")
