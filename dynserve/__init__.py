# ============================================================================
# dynserve/__init__.py
# DynServe: hot-reloading multi-instance server orchestration
# ============================================================================
#
# PURPOSE:
# Runs several named HTTP server instances inside one host process. Route
# definitions live in ordinary Python files and are swapped in when those
# files (or the files they import) change, without restarting the host or
# dropping connections.
#
# LAYOUT:
# - base/: configuration and logging setup
# - reload/: dependency tracking, file watching, reload-with-rollback
# - server/: route binding, port negotiation, instance registry
# - cli.py: command line host
#
# ============================================================================

from dynserve.server.registry import DynServe, ServerRegistry

__version__ = "1.0.0"

__all__ = ["DynServe", "ServerRegistry", "__version__"]
