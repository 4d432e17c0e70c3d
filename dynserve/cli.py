"""
DynServe CLI: run a route file as a hot-reloading server.

Usage examples:
    dynserve serve routes.py --port 3000 --watch
    python -m dynserve serve api.py --name api --launch api_routes --public ./public
"""

import argparse
import asyncio
import logging
import signal
from dataclasses import replace

from dynserve.base.config import DynServeConfig, setup_logging
from dynserve.errors import DynServeError
from dynserve.server.registry import ServerRegistry

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dynserve", description="DynServe hot-reloading server host")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Serve a route file")
    serve.add_argument("route_file", help="Python file exposing a route list")
    serve.add_argument("--name", default="default", help="Instance name")
    serve.add_argument("--port", type=int, default=3000, help="Base port (next free port is used)")
    serve.add_argument("--watch", action="store_true", help="Reload routes when the file changes")
    serve.add_argument("--launch", default=None, help="Module attribute holding the routes")
    serve.add_argument("--views", default=None, help="Template directory")
    serve.add_argument("--public", nargs="*", default=None, help="Static directories")
    serve.add_argument("--max-depth", type=int, default=None, help="Dependency tracking depth")
    return parser


async def _serve(args: argparse.Namespace) -> int:
    config = DynServeConfig.from_env()
    if args.max_depth is not None:
        config = replace(config, reload=replace(config.reload, max_depth=args.max_depth))
    setup_logging(config)

    registry = ServerRegistry(config)
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except (NotImplementedError, AttributeError, RuntimeError):
            pass

    try:
        url = await registry.create_instance(
            args.name,
            args.route_file,
            args.port,
            path_views=args.views,
            path_public=args.public,
            watch_file=args.watch,
            launch=args.launch,
        )
    except DynServeError as e:
        logger.error(f"[CLI] {e}")
        await registry.cleanup()
        return 1

    print(f"Serving '{args.name}' at {url}" + (" (watching for changes)" if args.watch else ""))
    try:
        await shutdown.wait()
    finally:
        await registry.cleanup()
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        try:
            return asyncio.run(_serve(args))
        except KeyboardInterrupt:
            return 0
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
