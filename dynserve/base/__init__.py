# ============================================================================
# dynserve/base/__init__.py
# Foundational pieces shared by the reload engine and the server registry.
# ============================================================================
#
# WHAT'S IN THIS MODULE:
# - config.py: Reload timing, port negotiation, server defaults, logging
#
