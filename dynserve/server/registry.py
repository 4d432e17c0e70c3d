"""
Server Registry (dynserve/server/registry.py)

PURPOSE:
Owns every running server instance of one host, keyed by name. Creates
instances from inline route lists or route files, negotiates their ports,
keeps file-backed instances fresh through the reload engine, and tears
everything down on shutdown.

LIFECYCLE:
    CREATED -> LISTENING -> (RELOADING)* -> STOPPING -> STOPPED

- RELOADING only happens for instances created with watch_file=True and
  never blocks requests: the old route table serves until the new one is
  assigned in a single step
- A name stays taken until its socket has finished closing
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from fastapi import FastAPI
from pydantic import BaseModel, Field, field_validator

from dynserve.base.config import DynServeConfig, get_config
from dynserve.errors import ErrorCode, LoadError, NotFoundError, ValidationError
from dynserve.reload.engine import ReloadEngine
from dynserve.reload.watcher import FileWatchEngine
from dynserve.server.app_factory import build_application
from dynserve.server.ports import bind_socket, find_available_port
from dynserve.server.routes import ORIGIN_SOURCE, RouteBinder, validate_routes
from dynserve.server.runner import ManagedServer

logger = logging.getLogger(__name__)


class InstanceState(str, Enum):
    CREATED = "created"
    LISTENING = "listening"
    RELOADING = "reloading"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ServerOptions(BaseModel):
    """Per-instance options accepted by create_instance."""
    path_views: Optional[Path] = None
    path_public: Optional[List[Path]] = None
    watch_file: bool = False
    launch: Optional[str] = None

    @field_validator("path_public", mode="before")
    @classmethod
    def normalize_public(cls, v: Any) -> Optional[List[Any]]:
        if v is None:
            return None
        if isinstance(v, (str, Path)):
            return [v]
        return list(v)

    @field_validator("launch")
    @classmethod
    def validate_launch(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("launch must be a non-empty attribute name")
        return v


class RouteInfo(BaseModel):
    path: str
    methods: List[str]
    keys: List[str] = Field(default_factory=list)
    origin: str = ORIGIN_SOURCE


class InstanceSummary(BaseModel):
    """Read-only projection of one instance."""
    name: str
    port: int
    url: str
    state: InstanceState
    start_time: datetime
    last_updated: datetime
    watching_file: bool
    route_file: Optional[str] = None
    routes: List[RouteInfo] = Field(default_factory=list)


@dataclass
class ServerInstance:
    name: str
    port: int
    url: str
    app: FastAPI
    server: ManagedServer
    route_source: Union[List[Any], Path]
    requested_port: int
    options: ServerOptions
    state: InstanceState = InstanceState.CREATED
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_updated: Optional[datetime] = None
    module: Any = None

    @property
    def route_file(self) -> Optional[Path]:
        return self.route_source if isinstance(self.route_source, Path) else None

    @property
    def hot_reload(self) -> bool:
        return self.options.watch_file and self.route_file is not None


class ServerRegistry:
    """
    Name-keyed table of running server instances.

    Each registry owns its own ReloadEngine and FileWatchEngine (or uses the
    ones it is handed), so several registries can coexist in a process.
    """

    def __init__(
        self,
        config: Optional[DynServeConfig] = None,
        engine: Optional[ReloadEngine] = None,
        watcher: Optional[FileWatchEngine] = None,
        binder: Optional[RouteBinder] = None,
        on_error=None,
    ):
        """
        Args:
            config: Settings (defaults to the process fallback config)
            engine: Reload engine to use; created from config if omitted
            watcher: File watch engine to use; created from engine if omitted
            binder: Route binder to use
            on_error: Diagnostic callback(path, LoadError) for failed hot reloads
        """
        self.config = config or get_config()
        self.engine = engine or ReloadEngine(self.config.reload, on_error=on_error)
        self.watcher = watcher or FileWatchEngine(self.engine, self.config.reload)
        self.binder = binder or RouteBinder()
        self._instances: Dict[str, ServerInstance] = {}
        self._creating: Dict[str, asyncio.Task] = {}

    def _address(self, port: int) -> str:
        return f"http://{self.config.server.public_host}:{port}/"

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_instance(
        self,
        name: str,
        route_source: Union[Sequence[Any], str, Path],
        port: int,
        path_views: Optional[Union[str, Path]] = None,
        path_public: Optional[Union[str, Path, Sequence[Union[str, Path]]]] = None,
        watch_file: bool = False,
        launch: Optional[str] = None,
    ) -> str:
        """
        Create and start a named server instance.

        Args:
            name: Unique instance name
            route_source: List of route descriptors, or path to a route file
            port: Base port; the first free port at or above it is used
            path_views: Template directory override
            path_public: One or more static directories
            watch_file: Reload routes when the route file or its imports change
            launch: Attribute of the route module holding the routes

        Returns:
            Base address of the instance, e.g. "http://localhost:3000/".
            If the name already exists, the existing address.

        Raises:
            ValidationError: Invalid name, options, route source or descriptor
            InvalidPortError / PortExhaustedError / BindError: Port problems
            NotFoundError / LoadError: Route file could not be loaded
        """
        if not name or not isinstance(name, str):
            raise ValidationError(
                "Server name is required and must be a string",
                code=ErrorCode.INSTANCE_NAME_INVALID,
            )

        existing = self._instances.get(name)
        if existing is not None:
            return existing.url

        pending = self._creating.get(name)
        if pending is not None:
            return await asyncio.shield(pending)

        try:
            options = ServerOptions(
                path_views=path_views,
                path_public=path_public,
                watch_file=watch_file,
                launch=launch,
            )
        except ValueError as e:
            raise ValidationError(f"Invalid options for server '{name}': {e}", code=ErrorCode.ROUTE_INVALID) from e

        task = asyncio.create_task(self._create(name, route_source, port, options))
        self._creating[name] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done():
                self._creating.pop(name, None)

    async def _create(self, name: str, route_source: Any, port: int, options: ServerOptions) -> str:
        try:
            return await self._build_instance(name, route_source, port, options)
        except Exception as e:
            logger.error(f"[Registry] Error creating server '{name}': {e}")
            await self._discard_partial(name, route_source)
            raise
        finally:
            self._creating.pop(name, None)

    async def _discard_partial(self, name: str, route_source: Any) -> None:
        instance = self._instances.get(name)
        if instance is not None:
            try:
                await self.stop_instance(name)
            except Exception as e:
                logger.error(f"[Registry] Error discarding server '{name}': {e}")
            return
        if isinstance(route_source, (str, Path)) and not self.engine.has_subscribers(route_source):
            self.engine.release(route_source)

    async def _build_instance(self, name: str, route_source: Any, port: int, options: ServerOptions) -> str:
        source = self._validate_route_source(route_source)

        module = None
        if isinstance(source, Path):
            module = await self.engine.preload(source)
            routes = self.extract_routes(module, options.launch)
        else:
            routes = source
        descriptors = validate_routes(routes)

        negotiated = await find_available_port(port, self.config.server.host, self.config.ports)

        app = build_application(name, self.config.server, options.path_views, options.path_public)
        self.binder.bind(app, descriptors, ORIGIN_SOURCE)

        sock = bind_socket(negotiated, self.config.server.host)
        server = ManagedServer(app, sock, self.config.server)
        instance = ServerInstance(
            name=name,
            port=negotiated,
            url=self._address(negotiated),
            app=app,
            server=server,
            route_source=source,
            requested_port=port,
            options=options,
            module=module,
        )

        try:
            await server.start()
        except Exception:
            sock.close()
            raise
        instance.state = InstanceState.LISTENING
        self._instances[name] = instance

        if instance.hot_reload:
            await self._setup_hot_reload(instance)

        logger.info(f"[Registry] Server '{name}' listening on {instance.url}")
        return instance.url

    def _validate_route_source(self, route_source: Any) -> Union[List[Any], Path]:
        if isinstance(route_source, (str, Path)):
            path = Path(route_source).expanduser()
            extensions = self.config.reload.file_extensions
            if path.suffix not in extensions:
                raise ValidationError(
                    f"Router file must have one of these extensions: {', '.join(extensions)}",
                    code=ErrorCode.ROUTE_FILE_EXTENSION,
                    details={"path": str(route_source)},
                )
            if not path.is_file():
                raise ValidationError(
                    f"Router file not found: {route_source}",
                    code=ErrorCode.ROUTE_FILE_MISSING,
                    details={"path": str(route_source)},
                )
            return path.resolve()

        if isinstance(route_source, (list, tuple)):
            validate_routes(route_source)
            return list(route_source)

        raise ValidationError(
            "Routers must be a list of route descriptors or a route file path",
            code=ErrorCode.ROUTE_SOURCE_INVALID,
            details={"type": type(route_source).__name__},
        )

    def extract_routes(self, module: Any, launch: Optional[str]) -> Any:
        """Pick the route list out of an executed route module."""
        attribute = launch or self.config.reload.default_export
        if not hasattr(module, attribute):
            raise ValidationError(
                f"Property '{attribute}' not found in router module",
                code=ErrorCode.ROUTE_EXPORT_MISSING,
                details={"attribute": attribute},
            )
        return getattr(module, attribute)

    # ------------------------------------------------------------------
    # Hot reload
    # ------------------------------------------------------------------

    async def _setup_hot_reload(self, instance: ServerInstance) -> None:
        name = instance.name
        launch = instance.options.launch

        def validate(module: Any) -> None:
            validate_routes(self.extract_routes(module, launch))

        def on_reload(module: Any) -> None:
            current = self._instances.get(name)
            if current is None or current.state in (InstanceState.STOPPING, InstanceState.STOPPED):
                return
            current.state = InstanceState.RELOADING
            try:
                self.binder.bind(current.app, self.extract_routes(module, launch), ORIGIN_SOURCE)
                current.module = module
                current.last_updated = datetime.now(timezone.utc)
                logger.info(f"[Registry] Updated routes for server '{name}'")
            except Exception as e:
                logger.error(f"[Registry] Error updating routes for server '{name}': {e}")
            finally:
                if current.state == InstanceState.RELOADING:
                    current.state = InstanceState.LISTENING

        self.engine.subscribe(instance.route_file, name, on_reload, validate=validate)
        await self.watcher.watch(instance.route_file)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _require(self, name: str) -> ServerInstance:
        instance = self._instances.get(name)
        if instance is None:
            raise NotFoundError(
                f"Server '{name}' not found",
                code=ErrorCode.INSTANCE_NOT_FOUND,
                details={"name": name},
            )
        return instance

    async def stop_instance(self, name: str) -> bool:
        """
        Stop an instance and free its name once the socket has closed.

        Raises:
            NotFoundError: If no instance has this name
        """
        instance = self._require(name)
        instance.state = InstanceState.STOPPING

        route_file = instance.route_file
        if route_file is not None:
            self.engine.unsubscribe(route_file, name)
            if not self.engine.has_subscribers(route_file):
                if self.watcher.is_watching(route_file):
                    await self.watcher.unwatch(route_file)
                else:
                    self.engine.release(route_file)

        await instance.server.stop()
        instance.state = InstanceState.STOPPED
        self._instances.pop(name, None)
        logger.info(f"[Registry] Server '{name}' stopped")
        return True

    async def reset_instance(self, name: str) -> str:
        """
        Stop an instance and create it again from its original configuration.

        Port negotiation starts again from the originally requested base port.
        """
        instance = self._require(name)
        route_source = instance.route_source
        options = instance.options
        port = instance.requested_port

        try:
            await self.stop_instance(name)
            return await self.create_instance(
                name,
                route_source,
                port,
                path_views=options.path_views,
                path_public=options.path_public,
                watch_file=options.watch_file,
                launch=options.launch,
            )
        except Exception as e:
            logger.error(f"[Registry] Error resetting server '{name}': {e}")
            raise

    def add_route(self, name: str, descriptor: Any) -> None:
        """
        Bind one route onto a running instance right away.

        Raises:
            NotFoundError: If no instance has this name
            ValidationError: If the descriptor is invalid
        """
        instance = self._require(name)
        route = self.binder.add(instance.app, descriptor)
        instance.last_updated = datetime.now(timezone.utc)
        logger.info(f"[Registry] New route added to '{name}': {route.descriptor.method} {route.path}")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _summarize(self, instance: ServerInstance) -> InstanceSummary:
        return InstanceSummary(
            name=instance.name,
            port=instance.port,
            url=instance.url,
            state=instance.state,
            start_time=instance.start_time,
            last_updated=instance.last_updated or instance.start_time,
            watching_file=instance.hot_reload,
            route_file=str(instance.route_file) if instance.route_file else None,
            routes=[RouteInfo(**info) for info in self.binder.introspect(instance.app)],
        )

    def list_instances(self) -> List[InstanceSummary]:
        return [self._summarize(instance) for instance in self._instances.values()]

    def get_instance(self, name: str) -> InstanceSummary:
        return self._summarize(self._require(name))

    def __contains__(self, name: str) -> bool:
        return name in self._instances

    def __len__(self) -> int:
        return len(self._instances)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def cleanup(self) -> None:
        """
        Stop every instance in parallel and tear down all watches.

        Individual failures are logged and never re-raised. Safe to call
        more than once.
        """
        names = list(self._instances)
        results = await asyncio.gather(
            *(self.stop_instance(name) for name in names),
            return_exceptions=True,
        )
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(f"[Registry] Error stopping server '{name}': {result}")
                self._instances.pop(name, None)

        await self.watcher.unwatch_all()
        self.engine.cleanup()


# Public name used by hosts
DynServe = ServerRegistry
