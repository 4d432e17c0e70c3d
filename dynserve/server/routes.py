"""
Route Binder (dynserve/server/routes.py)

PURPOSE:
Turns route descriptors into Starlette routes on a live FastAPI application
and swaps them atomically when a route file reloads.

DESCRIPTOR SHAPE:
    {"method": "GET", "path": "/users/{id}", "handler": fn, "middleware": [mw]}

- handler(request) -> Response | dict | list | str | bytes | None
- middleware(request, call_next) -> Response (Starlette dispatch signature)
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Sequence, Tuple, Union

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response
from starlette.routing import Route, compile_path

from dynserve.errors import ErrorCode, ValidationError

logger = logging.getLogger(__name__)

VALID_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD")

ORIGIN_SOURCE = "source"
ORIGIN_MANUAL = "manual"

Handler = Callable[[Request], Any]
Middleware = Callable[[Request, Callable[[Request], Awaitable[Response]]], Any]


@dataclass(frozen=True)
class RouteDescriptor:
    """Declarative record of one route."""
    method: str
    path: str
    handler: Handler
    middleware: Tuple[Middleware, ...] = ()

    @classmethod
    def from_value(cls, value: Union["RouteDescriptor", Mapping[str, Any]]) -> "RouteDescriptor":
        """
        Validate and normalize a descriptor given as an object or a dict.

        Raises:
            ValidationError: If a field is missing or invalid
        """
        if isinstance(value, RouteDescriptor):
            fields = {
                "method": value.method,
                "path": value.path,
                "handler": value.handler,
                "middleware": value.middleware,
            }
        elif isinstance(value, Mapping):
            fields = dict(value)
        else:
            raise ValidationError(
                f"Route must be a mapping or RouteDescriptor, got {type(value).__name__}",
                code=ErrorCode.ROUTE_INVALID,
            )

        method = fields.get("method")
        path = fields.get("path")
        handler = fields.get("handler")
        if not method or not path or handler is None:
            raise ValidationError(
                "Each route must have method, path, and handler properties",
                code=ErrorCode.ROUTE_INVALID,
                details={"method": method, "path": path},
            )

        if not isinstance(method, str) or method.upper() not in VALID_METHODS:
            raise ValidationError(
                f"Invalid HTTP method: {method}",
                code=ErrorCode.ROUTE_METHOD_UNSUPPORTED,
                details={"method": method, "allowed": list(VALID_METHODS)},
            )

        _validate_path(path)

        if not callable(handler):
            raise ValidationError(
                "Route handler must be callable",
                code=ErrorCode.ROUTE_HANDLER_INVALID,
                details={"path": path},
            )

        return cls(
            method=method.upper(),
            path=path,
            handler=handler,
            middleware=_normalize_middleware(fields.get("middleware"), path),
        )


def _validate_path(path: Any) -> None:
    if not isinstance(path, str) or not path.startswith("/") or any(ch.isspace() for ch in path):
        raise ValidationError(
            f"Invalid path: {path}",
            code=ErrorCode.ROUTE_PATH_INVALID,
            details={"path": path},
        )
    try:
        compile_path(path)
    except (AssertionError, ValueError) as e:
        raise ValidationError(
            f"Invalid path: {path} ({e})",
            code=ErrorCode.ROUTE_PATH_INVALID,
            details={"path": path},
        ) from e


def _normalize_middleware(value: Any, path: str) -> Tuple[Middleware, ...]:
    if value is None:
        return ()
    chain = tuple(value) if isinstance(value, (list, tuple)) else (value,)
    for item in chain:
        if not callable(item):
            raise ValidationError(
                "Route middleware must be callable",
                code=ErrorCode.ROUTE_HANDLER_INVALID,
                details={"path": path},
            )
    return chain


def validate_routes(routes: Any) -> List[RouteDescriptor]:
    """Validate a whole route list; nothing is bound if any entry is invalid."""
    if isinstance(routes, (str, bytes)) or not isinstance(routes, Sequence):
        raise ValidationError(
            "Routes must be a list of route descriptors",
            code=ErrorCode.ROUTE_SOURCE_INVALID,
            details={"type": type(routes).__name__},
        )
    return [RouteDescriptor.from_value(route) for route in routes]


# ============================================================================
# Endpoint variants
# ============================================================================

def to_response(result: Any) -> Response:
    """Coerce a handler's return value into a Starlette response."""
    if isinstance(result, Response):
        return result
    if result is None:
        return Response(status_code=204)
    if isinstance(result, (dict, list)):
        return JSONResponse(result)
    if isinstance(result, str):
        return HTMLResponse(result)
    if isinstance(result, (bytes, bytearray)):
        return Response(content=bytes(result))
    raise TypeError(f"Handler returned unsupported type {type(result).__name__}")


async def _invoke_handler(handler: Handler, request: Request) -> Response:
    if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(getattr(handler, "__call__", None)):
        result = await handler(request)
    else:
        result = await run_in_threadpool(handler, request)
    if inspect.isawaitable(result):
        result = await result
    return to_response(result)


class PlainEndpoint:
    """A handler with no middleware in front of it."""

    def __init__(self, handler: Handler):
        self.handler = handler

    async def endpoint(self, request: Request) -> Response:
        return await _invoke_handler(self.handler, request)


class MiddlewareEndpoint:
    """A handler behind a chain of middleware; the first entry runs first."""

    def __init__(self, handler: Handler, middleware: Sequence[Middleware]):
        self.handler = handler
        self.middleware = tuple(middleware)

    async def endpoint(self, request: Request) -> Response:
        async def call_handler(req: Request) -> Response:
            return await _invoke_handler(self.handler, req)

        call_next = call_handler
        for mw in reversed(self.middleware):
            call_next = self._link(mw, call_next)
        return await call_next(request)

    @staticmethod
    def _link(mw: Middleware, call_next: Callable[[Request], Awaitable[Response]]):
        async def step(request: Request) -> Response:
            result = mw(request, call_next)
            if inspect.isawaitable(result):
                result = await result
            return to_response(result)
        return step


def make_endpoint(descriptor: RouteDescriptor) -> Union[PlainEndpoint, MiddlewareEndpoint]:
    if descriptor.middleware:
        return MiddlewareEndpoint(descriptor.handler, descriptor.middleware)
    return PlainEndpoint(descriptor.handler)


class BoundRoute(Route):
    """A Starlette route that remembers the descriptor and origin it came from."""

    def __init__(self, descriptor: RouteDescriptor, origin: str):
        self.descriptor = descriptor
        self.origin = origin
        self.variant = make_endpoint(descriptor)
        super().__init__(
            descriptor.path,
            self.variant.endpoint,
            methods=[descriptor.method],
            name=f"{descriptor.method} {descriptor.path}",
        )


# ============================================================================
# Binder
# ============================================================================

class RouteBinder:
    """
    Installs descriptors on an application's router.

    Routes bound from a route source are replaced as a group on every
    reload; routes added by hand survive reloads. Both always sit in front
    of static mounts so a catch-all mount cannot shadow them.
    """

    @staticmethod
    def bound_routes(app) -> List[BoundRoute]:
        return [route for route in app.router.routes if isinstance(route, BoundRoute)]

    def build(self, descriptors: Any, origin: str = ORIGIN_SOURCE) -> List[BoundRoute]:
        return [BoundRoute(descriptor, origin) for descriptor in validate_routes(descriptors)]

    def bind(self, app, descriptors: Any, origin: str = ORIGIN_SOURCE) -> int:
        """
        Replace every route of `origin` on `app` with `descriptors`.

        The new route list is built completely before it is assigned, so a
        request never sees a half-updated table.

        Returns:
            Number of routes bound
        """
        fresh = self.build(descriptors, origin)
        current = list(app.router.routes)
        kept = [r for r in current if isinstance(r, BoundRoute) and r.origin != origin]
        others = [r for r in current if not isinstance(r, BoundRoute)]

        if origin == ORIGIN_SOURCE:
            app.router.routes = fresh + kept + others
        else:
            app.router.routes = kept + fresh + others
        logger.debug(f"[Binder] Bound {len(fresh)} {origin} route(s)")
        return len(fresh)

    def add(self, app, descriptor: Any) -> BoundRoute:
        """Append one hand-added route behind the existing bound routes."""
        route = BoundRoute(RouteDescriptor.from_value(descriptor), ORIGIN_MANUAL)
        current = list(app.router.routes)
        bound = [r for r in current if isinstance(r, BoundRoute)]
        others = [r for r in current if not isinstance(r, BoundRoute)]
        app.router.routes = bound + [route] + others
        return route

    def introspect(self, app) -> List[Dict[str, Any]]:
        """Live route table of an application, in match order."""
        return [
            {
                "path": route.path,
                "methods": [route.descriptor.method],
                "keys": list(route.param_convertors.keys()),
                "origin": route.origin,
            }
            for route in self.bound_routes(app)
        ]
