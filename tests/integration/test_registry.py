"""
Integration tests for ServerRegistry: real instances on real ports.
"""

import asyncio
import socket

import httpx
import pytest
from starlette.responses import PlainTextResponse

from dynserve.errors import ErrorCode, NotFoundError, ValidationError
from dynserve.server.registry import InstanceState, ServerRegistry


def _text(body):
    async def handler(request):
        return PlainTextResponse(body)
    return handler


def _base(registry, name) -> str:
    return f"http://127.0.0.1:{registry.get_instance(name).port}"


async def _get(url: str) -> httpx.Response:
    async with httpx.AsyncClient(timeout=5.0) as client:
        return await client.get(url)


@pytest.mark.asyncio
async def test_create_instance_from_route_list(registry, free_port):
    url = await registry.create_instance("api", [
        {"method": "GET", "path": "/", "handler": _text("hello")},
        {"method": "GET", "path": "/json", "handler": lambda request: {"ok": True}},
    ], free_port)

    assert url == f"http://localhost:{free_port}/"
    assert "api" in registry
    response = await _get(_base(registry, "api") + "/")
    assert response.status_code == 200
    assert response.text == "hello"
    assert (await _get(_base(registry, "api") + "/json")).json() == {"ok": True}


@pytest.mark.asyncio
async def test_create_instance_is_idempotent_per_name(registry, free_port):
    routes = [{"method": "GET", "path": "/", "handler": _text("one")}]

    first = await registry.create_instance("api", routes, free_port)
    second = await registry.create_instance("api", [{"method": "GET", "path": "/", "handler": _text("two")}], free_port + 5)

    assert first == second
    assert len(registry) == 1
    assert (await _get(_base(registry, "api") + "/")).text == "one"


@pytest.mark.asyncio
async def test_concurrent_creation_shares_one_instance(registry, free_port):
    routes = [{"method": "GET", "path": "/", "handler": _text("shared")}]

    urls = await asyncio.gather(
        registry.create_instance("api", routes, free_port),
        registry.create_instance("api", routes, free_port),
    )

    assert urls[0] == urls[1]
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_busy_port_is_negotiated(registry, free_port):
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", free_port))
    blocker.listen(1)
    try:
        url = await registry.create_instance("api", [{"method": "GET", "path": "/", "handler": _text("x")}], free_port)
    finally:
        blocker.close()

    port = registry.get_instance("api").port
    assert port > free_port
    assert url == f"http://localhost:{port}/"


@pytest.mark.asyncio
async def test_create_instance_from_route_file(registry, free_port, tmp_path, write_routes):
    route_file = write_routes(tmp_path / "site.py", "from file")

    await registry.create_instance("site", str(route_file), free_port)

    assert (await _get(_base(registry, "site") + "/")).text == "from file"
    summary = registry.get_instance("site")
    assert summary.route_file == str(route_file.resolve())
    assert summary.watching_file is False


@pytest.mark.asyncio
async def test_launch_selects_route_attribute(registry, free_port, tmp_path):
    route_file = tmp_path / "multi.py"
    route_file.write_text(
        "def public(request):\n"
        "    return 'public'\n"
        "def admin(request):\n"
        "    return 'admin'\n"
        "routes = [{'method': 'GET', 'path': '/', 'handler': public}]\n"
        "admin_routes = [{'method': 'GET', 'path': '/', 'handler': admin}]\n"
    )

    await registry.create_instance("admin", route_file, free_port, launch="admin_routes")

    assert (await _get(_base(registry, "admin") + "/")).text == "admin"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "source, code",
    [
        ("routes.txt", ErrorCode.ROUTE_FILE_EXTENSION),
        ("missing.py", ErrorCode.ROUTE_FILE_MISSING),
        (42, ErrorCode.ROUTE_SOURCE_INVALID),
        ([{"method": "FETCH", "path": "/", "handler": print}], ErrorCode.ROUTE_METHOD_UNSUPPORTED),
    ],
)
async def test_invalid_route_sources_are_rejected(registry, free_port, tmp_path, source, code):
    if isinstance(source, str):
        source = str(tmp_path / source)

    with pytest.raises(ValidationError) as exc_info:
        await registry.create_instance("bad", source, free_port)

    assert exc_info.value.code == code
    assert "bad" not in registry


@pytest.mark.asyncio
async def test_missing_export_frees_the_name(registry, free_port, tmp_path, write_routes):
    route_file = tmp_path / "noexport.py"
    route_file.write_text("handlers = []\n")

    with pytest.raises(ValidationError) as exc_info:
        await registry.create_instance("site", route_file, free_port)
    assert exc_info.value.code == ErrorCode.ROUTE_EXPORT_MISSING
    assert "site" not in registry
    assert registry.engine.get_unit(route_file) is None

    write_routes(route_file, "fixed")
    await registry.create_instance("site", route_file, free_port)
    assert (await _get(_base(registry, "site") + "/")).text == "fixed"


@pytest.mark.asyncio
async def test_invalid_name_is_rejected(registry, free_port):
    with pytest.raises(ValidationError) as exc_info:
        await registry.create_instance("", [], free_port)

    assert exc_info.value.code == ErrorCode.INSTANCE_NAME_INVALID


@pytest.mark.asyncio
async def test_stop_frees_name_and_port(registry, free_port):
    routes = [{"method": "GET", "path": "/", "handler": _text("x")}]
    await registry.create_instance("api", routes, free_port)
    port = registry.get_instance("api").port

    assert await registry.stop_instance("api") is True
    assert "api" not in registry
    with pytest.raises(httpx.ConnectError):
        await _get(f"http://127.0.0.1:{port}/")

    await registry.create_instance("api", routes, port)
    assert registry.get_instance("api").port == port


@pytest.mark.asyncio
async def test_unknown_names_raise_not_found(registry):
    with pytest.raises(NotFoundError) as exc_info:
        await registry.stop_instance("ghost")
    assert exc_info.value.code == ErrorCode.INSTANCE_NOT_FOUND

    with pytest.raises(NotFoundError):
        await registry.reset_instance("ghost")
    with pytest.raises(NotFoundError):
        registry.add_route("ghost", {"method": "GET", "path": "/", "handler": _text("x")})
    with pytest.raises(NotFoundError):
        registry.get_instance("ghost")


@pytest.mark.asyncio
async def test_reset_rereads_route_file(registry, free_port, tmp_path, write_routes):
    route_file = write_routes(tmp_path / "resettable.py", "before")
    await registry.create_instance("site", route_file, free_port)
    port = registry.get_instance("site").port

    write_routes(route_file, "after")
    url = await registry.reset_instance("site")

    assert url == f"http://localhost:{port}/"
    assert (await _get(_base(registry, "site") + "/")).text == "after"


@pytest.mark.asyncio
async def test_reset_negotiates_from_the_requested_port(registry, free_port):
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", free_port))
    blocker.listen(1)
    try:
        await registry.create_instance("api", [{"method": "GET", "path": "/", "handler": _text("x")}], free_port)
    finally:
        blocker.close()
    assert registry.get_instance("api").port > free_port

    url = await registry.reset_instance("api")

    assert url == f"http://localhost:{free_port}/"
    assert registry.get_instance("api").port == free_port


@pytest.mark.asyncio
async def test_add_route_is_live_immediately(registry, free_port):
    await registry.create_instance("api", [{"method": "GET", "path": "/", "handler": _text("root")}], free_port)

    registry.add_route("api", {"method": "POST", "path": "/echo/{word}", "handler": lambda r: {"word": r.path_params["word"]}})

    async with httpx.AsyncClient(timeout=5.0) as client:
        response = await client.post(_base(registry, "api") + "/echo/hi")
    assert response.json() == {"word": "hi"}

    with pytest.raises(ValidationError):
        registry.add_route("api", {"method": "GET", "path": "no-slash", "handler": _text("x")})

    routes = registry.get_instance("api").routes
    assert [(r.path, r.methods, r.origin) for r in routes] == [
        ("/", ["GET"], "source"),
        ("/echo/{word}", ["POST"], "manual"),
    ]
    assert routes[1].keys == ["word"]


@pytest.mark.asyncio
async def test_list_instances_reports_summaries(registry, free_port):
    await registry.create_instance("one", [{"method": "GET", "path": "/", "handler": _text("1")}], free_port)
    await registry.create_instance("two", [{"method": "GET", "path": "/", "handler": _text("2")}], free_port)

    summaries = {s.name: s for s in registry.list_instances()}

    assert set(summaries) == {"one", "two"}
    assert summaries["one"].port != summaries["two"].port
    assert summaries["one"].state == InstanceState.LISTENING
    assert summaries["one"].last_updated >= summaries["one"].start_time


@pytest.mark.asyncio
async def test_static_files_are_served(registry, free_port, tmp_path):
    public = tmp_path / "assets"
    public.mkdir()
    (public / "style.css").write_text("body {}")

    await registry.create_instance("web", [], free_port, path_public=str(public))

    response = await _get(_base(registry, "web") + "/style.css")
    assert response.status_code == 200
    assert response.text == "body {}"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


@pytest.mark.asyncio
async def test_cleanup_with_no_instances(test_config):
    registry = ServerRegistry(test_config)

    await registry.cleanup()
    await registry.cleanup()

    assert len(registry) == 0


@pytest.mark.asyncio
async def test_cleanup_stops_every_instance(test_config, free_port):
    registry = ServerRegistry(test_config)
    for i in range(3):
        await registry.create_instance(f"s{i}", [{"method": "GET", "path": "/", "handler": _text(str(i))}], free_port)
    ports = [s.port for s in registry.list_instances()]

    await registry.cleanup()

    assert len(registry) == 0
    for port in ports:
        with pytest.raises(httpx.ConnectError):
            await _get(f"http://127.0.0.1:{port}/")


@pytest.mark.asyncio
async def test_cleanup_continues_past_failing_instance(test_config, free_port):
    registry = ServerRegistry(test_config)
    routes = [{"method": "GET", "path": "/", "handler": _text("x")}]
    await registry.create_instance("good", routes, free_port)
    await registry.create_instance("bad", routes, free_port)

    bad_server = registry._instances["bad"].server
    real_stop = bad_server.stop

    async def failing_stop():
        raise RuntimeError("stop failed")

    bad_server.stop = failing_stop
    try:
        await registry.cleanup()
        assert len(registry) == 0
    finally:
        await real_stop()
