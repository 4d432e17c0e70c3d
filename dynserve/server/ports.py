"""
dynserve/server/ports.py
Port negotiation: scan a range with transient binds, then bind for real.
"""

import asyncio
import errno
import logging
import socket
from typing import Optional

from dynserve.base.config import PortConfig
from dynserve.errors import BindError, ErrorCode, InvalidPortError, PortExhaustedError

logger = logging.getLogger(__name__)


def _family_for(host: str) -> socket.AddressFamily:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def _can_bind(host: str, port: int) -> bool:
    with socket.socket(_family_for(host), socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
            sock.listen(1)
        except OSError:
            return False
    return True


async def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Check a port by binding to it briefly."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _can_bind, host, port)


def validate_port(port, config: Optional[PortConfig] = None) -> int:
    cfg = config or PortConfig()
    try:
        base = int(port)
    except (TypeError, ValueError):
        base = None
    if isinstance(port, bool) or base is None or base < cfg.min_port or base > cfg.max_port:
        raise InvalidPortError(
            f"Port must be a number between {cfg.min_port} and {cfg.max_port}",
            details={"port": port},
        )
    return base


async def find_available_port(
    start_port,
    host: str = "127.0.0.1",
    config: Optional[PortConfig] = None,
) -> int:
    """
    Find the first free port at or above `start_port`.

    Args:
        start_port: Requested base port
        host: Interface the trial bind uses
        config: Range limits and attempt budget

    Returns:
        First port that accepted a transient bind

    Raises:
        InvalidPortError: If the base port is outside the allowed range
        PortExhaustedError: If no port within the budget is free
    """
    cfg = config or PortConfig()
    base = validate_port(start_port, cfg)

    for offset in range(cfg.max_attempts):
        port = base + offset
        if port > cfg.max_port:
            break
        if await is_port_available(port, host):
            if offset:
                logger.info(f"[Ports] Port {base} busy, negotiated {port}")
            return port

    raise PortExhaustedError(
        f"No available port found after {cfg.max_attempts} attempts starting from {base}",
        details={"start_port": base, "attempts": cfg.max_attempts, "host": host},
    )


def bind_socket(port: int, host: str = "127.0.0.1") -> socket.socket:
    """
    Create the listening socket an instance will serve on.

    Raises:
        BindError: With reason "in_use", "permission" or "other"
    """
    sock = socket.socket(_family_for(host), socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(socket.SOMAXCONN)
        sock.setblocking(False)
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            code, message = ErrorCode.BIND_ADDRESS_IN_USE, f"Port {port} is already in use"
        elif e.errno in (errno.EACCES, errno.EPERM):
            code, message = ErrorCode.BIND_PERMISSION_DENIED, f"Insufficient permissions to bind to port {port}"
        else:
            code, message = ErrorCode.BIND_FAILED, f"Cannot bind to port {port}: {e}"
        raise BindError(message, code=code, details={"port": port, "host": host, "errno": e.errno}) from e
    return sock
