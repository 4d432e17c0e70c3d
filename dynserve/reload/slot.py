"""
dynserve/reload/slot.py
Capacity-1 in-flight guard for per-file reloads.
"""

import logging

logger = logging.getLogger(__name__)


class CoalescingSlot:
    """
    Holds at most one in-flight reload for a file.

    A trigger that arrives while the slot is taken is dropped, not queued.
    The reload that is running reads the file when it starts, so a burst of
    saves collapses into one reload of whatever was on disk at that moment.
    Later saves inside the burst are only picked up by the next distinct
    change event.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._busy = False
        self.accepted = 0
        self.dropped = 0

    @property
    def busy(self) -> bool:
        return self._busy

    def try_acquire(self) -> bool:
        """Take the slot. Returns False (and counts a drop) if it is already taken."""
        if self._busy:
            self.dropped += 1
            logger.debug(f"[Slot] Dropped trigger for {self.name} (reload in flight)")
            return False
        self._busy = True
        self.accepted += 1
        return True

    def release(self) -> None:
        self._busy = False
