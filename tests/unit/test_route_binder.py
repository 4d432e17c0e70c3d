"""
Tests for route descriptor validation and binding onto FastAPI apps.
"""

import pytest
from starlette.responses import PlainTextResponse
from starlette.testclient import TestClient

from dynserve.base.config import ServerConfig
from dynserve.errors import ErrorCode, ValidationError
from dynserve.server.app_factory import SECURITY_HEADERS, MultiDirStaticFiles, build_application
from dynserve.server.routes import (
    ORIGIN_MANUAL,
    ORIGIN_SOURCE,
    RouteBinder,
    RouteDescriptor,
    to_response,
    validate_routes,
)


@pytest.fixture
def defaults(tmp_path):
    return ServerConfig(views_path=tmp_path / "views", public_path=tmp_path / "public")


@pytest.fixture
def app(defaults):
    return build_application("test", defaults)


def _text(body):
    async def handler(request):
        return PlainTextResponse(body)
    return handler


# ============================================================================
# Validation
# ============================================================================

def test_descriptor_normalizes_method():
    descriptor = RouteDescriptor.from_value({"method": "get", "path": "/", "handler": _text("x")})

    assert descriptor.method == "GET"
    assert descriptor.middleware == ()


@pytest.mark.parametrize(
    "route, code",
    [
        ({"path": "/", "handler": _text("x")}, ErrorCode.ROUTE_INVALID),
        ({"method": "GET", "handler": _text("x")}, ErrorCode.ROUTE_INVALID),
        ({"method": "GET", "path": "/"}, ErrorCode.ROUTE_INVALID),
        ({"method": "FETCH", "path": "/", "handler": _text("x")}, ErrorCode.ROUTE_METHOD_UNSUPPORTED),
        ({"method": "GET", "path": "users", "handler": _text("x")}, ErrorCode.ROUTE_PATH_INVALID),
        ({"method": "GET", "path": "/a b", "handler": _text("x")}, ErrorCode.ROUTE_PATH_INVALID),
        ({"method": "GET", "path": "/", "handler": "not callable"}, ErrorCode.ROUTE_HANDLER_INVALID),
        ({"method": "GET", "path": "/", "handler": _text("x"), "middleware": [42]}, ErrorCode.ROUTE_HANDLER_INVALID),
        ("GET /", ErrorCode.ROUTE_INVALID),
    ],
)
def test_invalid_descriptors_are_rejected(route, code):
    with pytest.raises(ValidationError) as exc_info:
        RouteDescriptor.from_value(route)
    assert exc_info.value.code == code


@pytest.mark.parametrize("routes", [None, "routes", {"method": "GET"}, 42])
def test_route_source_must_be_a_list(routes):
    with pytest.raises(ValidationError) as exc_info:
        validate_routes(routes)
    assert exc_info.value.code == ErrorCode.ROUTE_SOURCE_INVALID


def test_to_response_coercions():
    assert to_response(None).status_code == 204
    assert to_response({"a": 1}).media_type == "application/json"
    assert to_response("<b>hi</b>").media_type == "text/html"
    assert to_response(b"raw").body == b"raw"
    with pytest.raises(TypeError):
        to_response(object())


# ============================================================================
# Binding
# ============================================================================

def test_bind_serves_routes_with_path_params(app):
    def get_user(request):
        return {"id": request.path_params["id"]}

    async def create_user(request):
        payload = await request.json()
        return {"created": payload["name"]}

    RouteBinder().bind(app, [
        {"method": "GET", "path": "/users/{id}", "handler": get_user},
        {"method": "POST", "path": "/users", "handler": create_user},
        {"method": "DELETE", "path": "/users/{id}", "handler": lambda request: None},
    ])

    client = TestClient(app)
    assert client.get("/users/7").json() == {"id": "7"}
    assert client.post("/users", json={"name": "ada"}).json() == {"created": "ada"}
    assert client.delete("/users/7").status_code == 204
    assert client.get("/missing").status_code == 404


def test_bind_replaces_previous_source_routes(app):
    binder = RouteBinder()
    binder.bind(app, [{"method": "GET", "path": "/", "handler": _text("h1")}])
    binder.bind(app, [{"method": "GET", "path": "/next", "handler": _text("next")}])

    client = TestClient(app)
    assert client.get("/").status_code == 404
    assert client.get("/next").text == "next"
    assert len(binder.bound_routes(app)) == 1


def test_invalid_list_leaves_existing_routes_untouched(app):
    binder = RouteBinder()
    binder.bind(app, [{"method": "GET", "path": "/", "handler": _text("h1")}])

    with pytest.raises(ValidationError):
        binder.bind(app, [
            {"method": "GET", "path": "/", "handler": _text("h2")},
            {"method": "BREW", "path": "/coffee", "handler": _text("x")},
        ])

    assert TestClient(app).get("/").text == "h1"


def test_manual_routes_survive_source_rebind(app):
    binder = RouteBinder()
    binder.bind(app, [{"method": "GET", "path": "/", "handler": _text("h1")}])
    binder.add(app, {"method": "GET", "path": "/extra", "handler": _text("extra")})

    binder.bind(app, [{"method": "GET", "path": "/", "handler": _text("h2")}])

    client = TestClient(app)
    assert client.get("/").text == "h2"
    assert client.get("/extra").text == "extra"
    origins = [info["origin"] for info in binder.introspect(app)]
    assert origins == [ORIGIN_SOURCE, ORIGIN_MANUAL]


def test_source_routes_take_precedence_over_manual(app):
    binder = RouteBinder()
    binder.add(app, {"method": "GET", "path": "/", "handler": _text("manual")})
    binder.bind(app, [{"method": "GET", "path": "/", "handler": _text("source")}])

    assert TestClient(app).get("/").text == "source"


def test_middleware_runs_in_declared_order(app):
    calls = []

    async def first(request, call_next):
        calls.append("first")
        response = await call_next(request)
        response.headers["X-First"] = "1"
        return response

    def second(request, call_next):
        calls.append("second")
        return call_next(request)

    RouteBinder().bind(app, [
        {"method": "GET", "path": "/", "handler": _text("ok"), "middleware": [first, second]},
    ])

    response = TestClient(app).get("/")
    assert response.text == "ok"
    assert response.headers["X-First"] == "1"
    assert calls == ["first", "second"]


def test_middleware_can_short_circuit(app):
    async def deny(request, call_next):
        return PlainTextResponse("denied", status_code=403)

    RouteBinder().bind(app, [
        {"method": "GET", "path": "/admin", "handler": _text("secret"), "middleware": deny},
    ])

    response = TestClient(app).get("/admin")
    assert response.status_code == 403
    assert response.text == "denied"


def test_introspect_reports_declared_method_and_keys(app):
    binder = RouteBinder()
    binder.bind(app, [{"method": "put", "path": "/items/{item_id}", "handler": _text("x")}])

    assert binder.introspect(app) == [
        {"path": "/items/{item_id}", "methods": ["PUT"], "keys": ["item_id"], "origin": ORIGIN_SOURCE},
    ]


# ============================================================================
# Application shell
# ============================================================================

def test_routes_are_matched_before_static_files(tmp_path, defaults):
    public = tmp_path / "public"
    public.mkdir()
    (public / "page.txt").write_text("static page")
    (public / "shadowed.txt").write_text("static copy")
    app = build_application("static", defaults)

    RouteBinder().bind(app, [{"method": "GET", "path": "/shadowed.txt", "handler": _text("route")}])

    client = TestClient(app)
    assert client.get("/page.txt").text == "static page"
    assert client.get("/shadowed.txt").text == "route"


def test_multiple_public_directories_are_searched_in_order(tmp_path, defaults):
    first = tmp_path / "first"
    second = tmp_path / "second"
    first.mkdir()
    second.mkdir()
    (first / "a.txt").write_text("from first")
    (second / "a.txt").write_text("from second")
    (second / "b.txt").write_text("only second")

    app = build_application("multi", defaults, path_public=[first, second, tmp_path / "absent"])

    client = TestClient(app)
    assert client.get("/a.txt").text == "from first"
    assert client.get("/b.txt").text == "only second"
    assert client.get("/c.txt").status_code == 404
    assert isinstance(app.routes[-1].app, MultiDirStaticFiles)
    assert app.state.public_dirs == [first.resolve(), second.resolve()]


def test_security_headers_and_template_directory(tmp_path, app):
    RouteBinder().bind(app, [{"method": "GET", "path": "/", "handler": _text("ok")}])

    response = TestClient(app).get("/")
    for header, value in SECURITY_HEADERS.items():
        assert response.headers[header] == value
    assert app.state.views_path == (tmp_path / "views").resolve()
    assert app.state.templates is not None
