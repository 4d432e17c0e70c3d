"""
File Watch Engine (dynserve/reload/watcher.py)

PURPOSE:
Listens for changes to route files (and, with depth > 1, the files they
import) and hands each change to the ReloadEngine.

FEATURES:
- One watch task per file; watching the parent directory survives editors
  that save by replace-and-rename
- Settle delay before reading, so half-written files are not executed
- Per-file CoalescingSlot: a change during an in-flight reload is dropped
- Dependency watches are reference counted by the root that opened them
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Set, Union

from watchfiles import awatch

from dynserve.base.config import ReloadConfig
from dynserve.reload.engine import ReloadEngine
from dynserve.reload.slot import CoalescingSlot

logger = logging.getLogger(__name__)


class _Watch:
    __slots__ = ("path", "task", "stop_event", "slot", "owners", "inflight")

    def __init__(self, path: Path):
        self.path = path
        self.task: Optional[asyncio.Task] = None
        self.stop_event = asyncio.Event()
        self.slot = CoalescingSlot(path.name)
        self.owners: Set[Path] = set()
        self.inflight: Optional[asyncio.Task] = None


class FileWatchEngine:
    """
    Watches files and triggers dependency-aware reloads.

    The engine does not own any reload state; it only decides when the
    ReloadEngine should propagate a change.
    """

    def __init__(self, engine: ReloadEngine, config: Optional[ReloadConfig] = None):
        self.engine = engine
        self.config = config or engine.config
        self._watches: Dict[Path, _Watch] = {}

    def is_watching(self, path: Union[str, Path]) -> bool:
        return Path(path).resolve() in self._watches

    def get_watched_files(self) -> List[Path]:
        return list(self._watches)

    def get_slot(self, path: Union[str, Path]) -> Optional[CoalescingSlot]:
        watch = self._watches.get(Path(path).resolve())
        return watch.slot if watch else None

    async def watch(self, path: Union[str, Path], _owner: Optional[Path] = None) -> None:
        """Start watching a file. No-op if it is already watched."""
        absolute = Path(path).resolve()
        # A file watched directly owns itself and survives its importers' unwatch
        owner = _owner or absolute
        existing = self._watches.get(absolute)
        if existing is not None:
            existing.owners.add(owner)
            return

        watch = _Watch(absolute)
        watch.owners.add(owner)
        self._watches[absolute] = watch
        watch.task = asyncio.create_task(self._watch_loop(watch))
        logger.info(f"[Watcher] Started watching {absolute}")

        if self.engine.max_depth > 1:
            await self._watch_dependencies(absolute, absolute, 1)

    async def _watch_dependencies(self, root: Path, path: Path, depth: int) -> None:
        if depth >= self.engine.max_depth:
            return
        for dependency in self.engine.graph.get(path):
            if dependency in self._watches:
                self._watches[dependency].owners.add(root)
                continue
            await self.watch(dependency, _owner=root)
            await self._watch_dependencies(root, dependency, depth + 1)

    async def _watch_loop(self, watch: _Watch) -> None:
        target = os.path.normcase(str(watch.path))

        def _only_target(change, changed_path: str) -> bool:
            return os.path.normcase(os.path.realpath(changed_path)) == target

        try:
            async for _changes in awatch(
                watch.path.parent,
                watch_filter=_only_target,
                stop_event=watch.stop_event,
                debounce=self.config.watch_debounce_ms,
                force_polling=self.config.force_polling,
                poll_delay_ms=self.config.poll_delay_ms,
                recursive=False,
            ):
                self.notify(watch.path)
        except asyncio.CancelledError:
            logger.debug(f"[Watcher] Watch loop cancelled for {watch.path.name}")
            raise
        except Exception as e:
            logger.error(f"[Watcher] Watch error for {watch.path}: {e}")
            await self.unwatch(watch.path)

    def notify(self, path: Union[str, Path]) -> bool:
        """
        Report a change of a watched file.

        Returns:
            True if a reload was scheduled, False if the file is not watched
            or a reload for it is already in flight
        """
        watch = self._watches.get(Path(path).resolve())
        if watch is None:
            return False
        if not watch.slot.try_acquire():
            return False
        watch.inflight = asyncio.create_task(self._handle_change(watch))
        return True

    async def _handle_change(self, watch: _Watch) -> None:
        try:
            await asyncio.sleep(self.config.settle_delay)
            await self.engine.propagate(watch.path)
            if self.engine.max_depth > 1 and watch.path in self._watches:
                # Pick up imports added by this edit
                for root in list(watch.owners):
                    await self._watch_dependencies(root, watch.path, 1)
        except Exception as e:
            logger.error(f"[Watcher] Error processing update for {watch.path}: {e}. Keeping previous valid versions")
        finally:
            watch.slot.release()

    async def wait_idle(self) -> None:
        """Wait until no reload scheduled by this engine is in flight."""
        pending = [w.inflight for w in self._watches.values() if w.inflight and not w.inflight.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def unwatch(self, path: Union[str, Path]) -> None:
        """
        Stop watching a file and release its reload state.

        Dependency watches opened on behalf of this file are closed when no
        other watched root still needs them. An in-flight reload is not
        aborted, but its callbacks are already gone when it completes.
        """
        absolute = Path(path).resolve()
        watch = self._watches.pop(absolute, None)
        if watch is None:
            return

        watch.stop_event.set()
        if watch.task and watch.task is not asyncio.current_task():
            watch.task.cancel()
            try:
                await watch.task
            except asyncio.CancelledError:
                pass
        self.engine.unsubscribe(absolute)
        self.engine.release(absolute)
        logger.info(f"[Watcher] Stopped watching {absolute.name}")

        for dep_path, dep_watch in list(self._watches.items()):
            if absolute in dep_watch.owners:
                dep_watch.owners.discard(absolute)
                if not dep_watch.owners:
                    await self.unwatch(dep_path)

    async def unwatch_all(self) -> None:
        for path in list(self._watches):
            await self.unwatch(path)
