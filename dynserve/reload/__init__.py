# ============================================================================
# dynserve/reload/__init__.py
# Hot Reload Package
# ============================================================================
#
# WHAT'S IN THIS MODULE:
# - models.py: TrackedUnit (versioned slot) and DependencyGraph
# - tracker.py: static import scanning and resolution
# - engine.py: execute / validate / publish, change propagation
# - watcher.py: file change subscriptions with settle delay and coalescing
# - slot.py: capacity-1 in-flight guard
#
# FLOW:
#   file saved -> FileWatchEngine.notify -> settle delay
#     -> ReloadEngine.propagate -> graph refresh -> affected set
#     -> dependency-first reload -> subscriber callbacks
#
# ============================================================================

from dynserve.reload.engine import ReloadEngine
from dynserve.reload.models import DependencyGraph, ReloadResult, TrackedUnit
from dynserve.reload.slot import CoalescingSlot
from dynserve.reload.tracker import DependencyTracker
from dynserve.reload.watcher import FileWatchEngine

__all__ = [
    "CoalescingSlot",
    "DependencyGraph",
    "DependencyTracker",
    "FileWatchEngine",
    "ReloadEngine",
    "ReloadResult",
    "TrackedUnit",
]
