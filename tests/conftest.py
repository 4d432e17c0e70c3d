"""Pytest configuration for DynServe."""
import asyncio
import os
import socket
import textwrap

import pytest
import pytest_asyncio

from dynserve.base.config import DynServeConfig, ReloadConfig, ServerConfig


def pytest_configure():
    # Polling is the only watcher backend that behaves the same on every CI filesystem.
    os.environ.setdefault("DYNSERVE_FORCE_POLLING", "true")
    os.environ.setdefault("DYNSERVE_SETTLE_DELAY", "0.05")
    os.environ.setdefault("DYNSERVE_POLL_DELAY_MS", "50")


ROUTE_TEMPLATE = '''
from starlette.responses import PlainTextResponse

async def handler(request):
    return PlainTextResponse("{body}")

routes = [{{"method": "GET", "path": "/", "handler": handler}}]
'''


def write_route_file(path, body: str):
    """Write a route file whose GET / answers with `body`."""
    path.write_text(textwrap.dedent(ROUTE_TEMPLATE.format(body=body)))
    return path


@pytest.fixture
def write_routes():
    return write_route_file


@pytest.fixture
def eventually():
    """Poll an assertion-free predicate until it holds or the timeout expires."""

    async def _wait(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            outcome = predicate()
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
            if outcome:
                return True
            await asyncio.sleep(interval)
        return False

    return _wait


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def test_config(tmp_path) -> DynServeConfig:
    return DynServeConfig(
        reload=ReloadConfig(
            max_depth=3,
            settle_delay=0.05,
            force_polling=True,
            poll_delay_ms=50,
            watch_debounce_ms=20,
        ),
        server=ServerConfig(
            views_path=tmp_path / "views",
            public_path=tmp_path / "public",
            graceful_timeout=1.0,
        ),
    )


@pytest_asyncio.fixture
async def registry(test_config):
    from dynserve.server.registry import ServerRegistry

    errors = []
    reg = ServerRegistry(test_config, on_error=lambda path, err: errors.append((path, err)))
    reg.reported_errors = errors
    try:
        yield reg
    finally:
        await reg.cleanup()
