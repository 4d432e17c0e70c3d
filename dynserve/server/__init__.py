# ============================================================================
# dynserve/server/__init__.py
# Server Package - named FastAPI instances served by uvicorn
# ============================================================================
#
# KEY MODULES:
# - registry.py: ServerRegistry (create / stop / reset / add_route / cleanup)
# - routes.py: RouteDescriptor validation and RouteBinder
# - ports.py: port negotiation and socket binding
# - app_factory.py: FastAPI app with templates, static files, headers
# - runner.py: uvicorn server on a pre-bound socket
#
# ============================================================================
