# ============================================================================
# dynserve/base/config.py
# Application Configuration Management
# ============================================================================
#
# PURPOSE:
# Defines every tunable of the reload engine and the server registry in one
# place. Values come from dataclass defaults, overridden by DYNSERVE_*
# environment variables through DynServeConfig.from_env().
#
# KEY CONCEPTS:
# 1. Frozen dataclasses: each section is an immutable value object
# 2. Environment variables: DYNSERVE_MAX_DEPTH=1, DYNSERVE_FORCE_POLLING=true
# 3. Injection: registries take a config; get_config() is only the fallback
#
# ============================================================================

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


# ============================================================================
# Reload Engine Configuration
# ============================================================================
# Controls dependency tracking depth, file resolution and watch timing.

@dataclass(frozen=True)
class ReloadConfig:
    # How deep the dependency graph is followed from a watched file
    # 1 = only the file's direct imports are recorded and nothing extra is watched
    max_depth: int = 3

    # Extensions tried when resolving an import to a file on disk
    file_extensions: Tuple[str, ...] = (".py",)

    # Package index file name (tried as <dir>/<index_name><ext>)
    index_name: str = "__init__"

    # Seconds to wait after a change event before reading the file
    # Editors often write in several steps; reacting too early reads half a file
    settle_delay: float = 0.1

    # Use stat polling instead of native notifications (network mounts, containers)
    force_polling: bool = False

    # Poll interval when force_polling is on (milliseconds)
    poll_delay_ms: int = 300

    # How long watchfiles groups raw events before yielding them (milliseconds)
    watch_debounce_ms: int = 50

    # Attribute read from a route module when no launch selector is given
    default_export: str = "routes"


# ============================================================================
# Port Negotiation Configuration
# ============================================================================

@dataclass(frozen=True)
class PortConfig:
    # How many consecutive ports are tried, starting from the requested one
    max_attempts: int = 10

    # Valid range for the requested base port (privileged ports are refused)
    min_port: int = 1024
    max_port: int = 65535


# ============================================================================
# Server Instance Defaults
# ============================================================================

@dataclass(frozen=True)
class ServerConfig:
    # Interface every instance listens on (127.0.0.1 = this computer only)
    host: str = "127.0.0.1"

    # Host name used when building an instance's base address
    public_host: str = "localhost"

    # Template directory used when an instance does not override path_views
    views_path: Path = field(default_factory=lambda: Path.cwd() / "bin" / "views")

    # Static directory used when an instance does not override path_public
    public_path: Path = field(default_factory=lambda: Path.cwd() / "bin" / "public")

    # Seconds uvicorn waits for open connections when an instance stops
    graceful_timeout: float = 5.0

    # Emit uvicorn access log lines
    access_log: bool = False

    # Add nosniff / frame / XSS headers to every response
    security_headers: bool = True


# ============================================================================
# Logging Configuration
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    # Rotating log file in addition to the console (off unless a path is given)
    file_path: Optional[Path] = None
    max_file_size_mb: int = 10
    backup_count: int = 5


# ============================================================================
# Master Configuration Container
# ============================================================================

@dataclass(frozen=True)
class DynServeConfig:
    reload: ReloadConfig = field(default_factory=ReloadConfig)
    ports: PortConfig = field(default_factory=PortConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_env(cls) -> "DynServeConfig":
        """Build a configuration from DYNSERVE_* environment variables."""
        reload = ReloadConfig(
            max_depth=int(os.getenv("DYNSERVE_MAX_DEPTH", "3")),
            settle_delay=float(os.getenv("DYNSERVE_SETTLE_DELAY", "0.1")),
            force_polling=_env_bool("DYNSERVE_FORCE_POLLING", "false"),
            poll_delay_ms=int(os.getenv("DYNSERVE_POLL_DELAY_MS", "300")),
            default_export=os.getenv("DYNSERVE_DEFAULT_EXPORT", "routes"),
        )

        ports = PortConfig(
            max_attempts=int(os.getenv("DYNSERVE_PORT_ATTEMPTS", "10")),
        )

        server_kwargs = {}
        views = os.getenv("DYNSERVE_VIEWS_PATH")
        if views:
            server_kwargs["views_path"] = Path(views)
        public = os.getenv("DYNSERVE_PUBLIC_PATH")
        if public:
            server_kwargs["public_path"] = Path(public)

        server = ServerConfig(
            host=os.getenv("DYNSERVE_HOST", "127.0.0.1"),
            public_host=os.getenv("DYNSERVE_PUBLIC_HOST", "localhost"),
            graceful_timeout=float(os.getenv("DYNSERVE_GRACEFUL_TIMEOUT", "5")),
            access_log=_env_bool("DYNSERVE_ACCESS_LOG", "false"),
            security_headers=_env_bool("DYNSERVE_SECURITY_HEADERS", "true"),
            **server_kwargs,
        )

        log_file = os.getenv("DYNSERVE_LOG_FILE")
        log = LogConfig(
            level=os.getenv("DYNSERVE_LOG_LEVEL", "INFO"),
            file_path=Path(log_file) if log_file else None,
        )

        return cls(reload=reload, ports=ports, server=server, log=log)


# ============================================================================
# Process-wide Fallback Configuration
# ============================================================================

_config: Optional[DynServeConfig] = None


def get_config() -> DynServeConfig:
    """
    Get the fallback configuration instance.

    Only used by components constructed without an explicit config.

    Returns:
        The shared DynServeConfig instance (created from the environment on first use)
    """
    global _config
    if _config is None:
        _config = DynServeConfig.from_env()
    return _config


def set_config(config: Optional[DynServeConfig]) -> None:
    """Replace the fallback configuration (None resets it to the environment)."""
    global _config
    _config = config


def setup_logging(config: Optional[DynServeConfig] = None) -> None:
    """
    Configure Python's logging system based on our settings.

    Sets up console logging and, when a file path is configured, a rotating
    file handler. Call this once at host startup.

    Args:
        config: Optional config to use (defaults to the fallback config)
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_path is not None:
        from logging.handlers import RotatingFileHandler
        cfg.log.file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            cfg.log.file_path,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, cfg.log.level.upper()),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
