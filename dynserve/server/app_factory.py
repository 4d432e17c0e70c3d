"""
dynserve/server/app_factory.py
Builds the FastAPI application handle behind one server instance.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

from fastapi import FastAPI, Request
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from dynserve.base.config import ServerConfig

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-XSS-Protection": "1; mode=block",
}

PathLike = Union[str, Path]


class MultiDirStaticFiles(StaticFiles):
    """StaticFiles that looks a file up in several directories, first hit wins."""

    def __init__(self, directories: Sequence[PathLike], **kwargs):
        self.directories = [str(d) for d in directories]
        super().__init__(directory=self.directories[0], **kwargs)

    def get_directories(self, directory=None, packages=None) -> List[str]:
        return list(self.directories)


def resolve_public_dirs(
    path_public: Optional[Union[PathLike, Sequence[PathLike]]],
    defaults: ServerConfig,
) -> List[Path]:
    """Existing static directories, in lookup order. Missing ones are skipped."""
    if path_public is None:
        candidates = [defaults.public_path]
    elif isinstance(path_public, (str, Path)):
        candidates = [path_public]
    else:
        candidates = list(path_public)

    dirs = []
    for candidate in candidates:
        path = Path(candidate).expanduser().resolve()
        if path.is_dir():
            dirs.append(path)
        else:
            logger.debug(f"[App] Static directory not found, skipping: {path}")
    return dirs


def build_application(
    name: str,
    defaults: ServerConfig,
    path_views: Optional[PathLike] = None,
    path_public: Optional[Union[PathLike, Sequence[PathLike]]] = None,
) -> FastAPI:
    """
    Create an application with templates, static files and security headers.

    Routes are bound separately by the RouteBinder; the static mount is
    registered here so it always sits behind them.

    Args:
        name: Instance name (used as the app title)
        defaults: Server defaults for directories and headers
        path_views: Template directory override
        path_public: One or more static directories

    Returns:
        A FastAPI application without any routes bound yet
    """
    app = FastAPI(title=f"dynserve:{name}", docs_url=None, redoc_url=None, openapi_url=None)

    if defaults.security_headers:
        @app.middleware("http")
        async def add_security_headers(request: Request, call_next):
            response = await call_next(request)
            for header, value in SECURITY_HEADERS.items():
                response.headers.setdefault(header, value)
            return response

    views_dir = Path(path_views or defaults.views_path).expanduser().resolve()
    app.state.views_path = views_dir
    app.state.templates = Jinja2Templates(directory=str(views_dir))

    public_dirs = resolve_public_dirs(path_public, defaults)
    app.state.public_dirs = public_dirs
    if public_dirs:
        app.mount("/", MultiDirStaticFiles(public_dirs), name="static")

    return app
