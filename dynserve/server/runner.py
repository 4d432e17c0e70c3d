"""
dynserve/server/runner.py
uvicorn server bound to a pre-opened socket, started and stopped from
inside an already running event loop.
"""

import asyncio
import contextlib
import logging
import socket
from typing import Optional

import uvicorn

from dynserve.base.config import ServerConfig
from dynserve.errors import ErrorCode, DynServeError

logger = logging.getLogger(__name__)


class ManagedServer(uvicorn.Server):
    """
    uvicorn.Server that leaves process signals alone.

    Several of these share one event loop, so none of them may take over
    SIGINT / SIGTERM; the host decides when to call stop().
    """

    def __init__(self, app, sock: socket.socket, defaults: ServerConfig):
        config = uvicorn.Config(
            app,
            log_config=None,
            access_log=defaults.access_log,
            timeout_graceful_shutdown=defaults.graceful_timeout,
            lifespan="on",
        )
        super().__init__(config)
        self.sock = sock
        self._task: Optional[asyncio.Task] = None

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    @property
    def port(self) -> int:
        return self.sock.getsockname()[1]

    async def start(self) -> None:
        """Serve in a background task and return once the socket accepts requests."""
        self._task = asyncio.create_task(self.serve(sockets=[self.sock]))
        while not self.started:
            if self._task.done():
                exc = None if self._task.cancelled() else self._task.exception()
                raise DynServeError(
                    ErrorCode.INSTANCE_START_FAILED,
                    f"Server on port {self.port} exited during startup: {exc}",
                    details={"port": self.port},
                )
            await asyncio.sleep(0.01)
        logger.debug(f"[Runner] Serving on port {self.port}")

    async def stop(self) -> None:
        """Stop accepting connections and wait for uvicorn's graceful shutdown."""
        self.should_exit = True
        try:
            if self._task is not None:
                await self._task
        finally:
            self.sock.close()
