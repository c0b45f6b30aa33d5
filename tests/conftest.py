"""
Pytest configuration and shared fixtures

Provides real-socket helpers, a loopback-only configuration and a
controller that is shut down after each test.
"""

import socket
from contextlib import contextmanager
from typing import Iterator, List

import pytest
import pytest_asyncio

from dynserve.config import DynServeConfig
from dynserve.controller import LifecycleController
from dynserve.routes import HTTPMethod, RouteSpec


LOOPBACK = "127.0.0.1"


def _is_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((LOOPBACK, port))
        except OSError:
            return False
    return True


def find_free_range(count: int, attempts: int = 50) -> int:
    """
    Find a start port such that [start, start + count) is currently free.
    """
    for _ in range(attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((LOOPBACK, 0))
            start = sock.getsockname()[1]
        if start + count > 65535:
            continue
        if all(_is_free(port) for port in range(start, start + count)):
            return start
    raise RuntimeError(f"No free range of {count} ports found")


@contextmanager
def occupied(*ports: int) -> Iterator[List[socket.socket]]:
    """Hold listening sockets on the given loopback ports"""
    sockets = []
    try:
        for port in ports:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.bind((LOOPBACK, port))
            sock.listen(1)
            sockets.append(sock)
        yield sockets
    finally:
        for sock in sockets:
            sock.close()


async def hello():
    return {"message": "hello"}


async def ping():
    return {"message": "pong"}


@pytest.fixture
def port_base() -> int:
    """
    Start of a run of 12 free loopback ports

    Returns:
        First port of the run
    """
    return find_free_range(12)


@pytest.fixture
def test_config(tmp_path) -> DynServeConfig:
    """
    Loopback-only configuration with an empty static directory

    Returns:
        DynServeConfig for tests
    """
    assets = tmp_path / "public"
    assets.mkdir()
    return DynServeConfig(
        host=LOOPBACK,
        default_assets_path=str(assets),
        url_host=LOOPBACK,
    )


@pytest.fixture
def sample_routes() -> List[RouteSpec]:
    """
    Inline routes used by most lifecycle tests

    Returns:
        List of RouteSpec
    """
    return [RouteSpec(method=HTTPMethod.GET, path="/hello", handler=hello)]


@pytest_asyncio.fixture
async def controller(test_config):
    """
    Controller stopped after the test

    Yields:
        LifecycleController bound to loopback
    """
    lifecycle = LifecycleController(test_config)
    yield lifecycle
    await lifecycle.shutdown_all()
