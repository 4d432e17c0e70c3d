"""
Reload Engine (dynserve/reload/engine.py)

PURPOSE:
Executes route files (and the local files they import) as fresh module
objects, keeps the last-known-good version of each, and pushes new versions
to subscribers only after they executed and validated cleanly.

FEATURES:
- preload: first execution, raises on failure
- reload: re-execution that never raises; failures keep the old version
- propagate: graph refresh, affected set, dependency-first reload, callbacks
- Cache busting: source is compiled from disk on every execution and stale
  imported siblings are evicted from sys.modules
"""

import asyncio
import importlib.util
import inspect
import logging
import os
import sys
import time
import types
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from dynserve.base.config import ReloadConfig, get_config
from dynserve.errors import ErrorCode, LoadError, NotFoundError, ValidationError
from dynserve.reload.models import DependencyGraph, ReloadResult, TrackedUnit
from dynserve.reload.tracker import DependencyTracker

logger = logging.getLogger(__name__)

ReloadCallback = Callable[[Any], Union[None, Awaitable[None]]]
Validator = Callable[[Any], Any]
ErrorCallback = Callable[[Path, LoadError], None]

_UNIT_PREFIX = "_dynserve_unit"

# A local file shadowing one of these is never allowed to replace the loaded module
_PROTECTED_NAMES = frozenset(getattr(sys, "stdlib_module_names", ())) | {"dynserve"}


class _Subscription:
    __slots__ = ("on_reload", "validate")

    def __init__(self, on_reload: ReloadCallback, validate: Optional[Validator]):
        self.on_reload = on_reload
        self.validate = validate


def _resolve(path: Union[str, Path]) -> Path:
    return Path(path).expanduser().resolve()


class ReloadEngine:
    """
    Owner of all TrackedUnits and the DependencyGraph.

    One engine per registry; nothing here is module-global, so several
    engines can live in one process.
    """

    def __init__(
        self,
        config: Optional[ReloadConfig] = None,
        on_error: Optional[ErrorCallback] = None,
        on_parse_error: Optional[Callable[[Path, Exception], None]] = None,
    ):
        """
        Args:
            config: Reload settings (defaults to the process fallback config)
            on_error: Diagnostic callback for failed reloads, called once per failure
            on_parse_error: Called when the tracker cannot parse a file's imports
        """
        self.config = config or get_config().reload
        self.graph = DependencyGraph()
        self.tracker = DependencyTracker(
            self.graph,
            file_extensions=self.config.file_extensions,
            index_name=self.config.index_name,
            max_depth=self.config.max_depth,
            on_parse_error=on_parse_error,
        )
        self._units: Dict[Path, TrackedUnit] = {}
        self._roots: List[Path] = []
        self._subscriptions: Dict[Path, Dict[str, _Subscription]] = {}
        self._on_error = on_error

    @property
    def max_depth(self) -> int:
        return self.tracker.max_depth

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def preload(self, path: Union[str, Path]) -> types.ModuleType:
        """
        Execute a file for the first time and start tracking it.

        Args:
            path: File to load (relative paths resolve against the cwd)

        Returns:
            The executed module

        Raises:
            NotFoundError: If the file does not exist
            LoadError: If the file fails to compile or execute
        """
        absolute = _resolve(path)
        if not absolute.is_file():
            raise NotFoundError(
                f"File {path} does not exist",
                code=ErrorCode.UNIT_NOT_FOUND,
                details={"path": str(absolute)},
            )

        # Graph first so the execution can evict stale copies of its imports
        await self.tracker.update_graph(absolute)
        module = await self._execute(absolute)
        mtime = absolute.stat().st_mtime

        unit = self._units.get(absolute)
        if unit is None:
            self._units[absolute] = TrackedUnit(
                path=absolute,
                current=module,
                last_modified=mtime,
                dependencies=self.graph.get(absolute),
            )
        else:
            unit.publish(module, mtime)
            unit.dependencies = self.graph.get(absolute)

        if absolute not in self._roots:
            self._roots.append(absolute)

        logger.info(f"[Reload] Preloaded {absolute.name} ({len(self.graph.get(absolute))} local deps)")
        return module

    async def reload(self, path: Union[str, Path]) -> ReloadResult:
        """
        Re-execute a file and publish it only if it is valid.

        Never raises for load problems. On failure the last-known-good
        artifact stays in place and the error callback fires once.
        """
        absolute = _resolve(path)
        try:
            if not absolute.is_file():
                raise LoadError(
                    f"File {absolute} disappeared",
                    code=ErrorCode.LOAD_READ_FAILED,
                    details={"path": str(absolute)},
                )
            module = await self._execute(absolute)
            self._validate(absolute, module)
        except LoadError as e:
            logger.error(f"[Reload] Invalid module in {absolute.name}. Keeping previous version. {e.message}")
            self._report(absolute, e)
            unit = self._units.get(absolute)
            return ReloadResult(path=absolute, success=False, error=e, version=unit.version if unit else 0)

        mtime = absolute.stat().st_mtime
        unit = self._units.get(absolute)
        if unit is None:
            unit = TrackedUnit(path=absolute, current=module, last_modified=mtime)
            self._units[absolute] = unit
        else:
            unit.publish(module, mtime)
        unit.dependencies = self.graph.get(absolute)

        logger.debug(f"[Reload] {absolute.name} now at version {unit.version}")
        return ReloadResult(path=absolute, success=True, artifact=module, version=unit.version)

    def _validate(self, path: Path, module: types.ModuleType) -> None:
        for key, sub in list(self._subscriptions.get(path, {}).items()):
            if sub.validate is None:
                continue
            try:
                sub.validate(module)
            except Exception as e:
                raise LoadError(
                    f"Module {path.name} rejected by '{key}': {e}",
                    code=ErrorCode.LOAD_INVALID_ARTIFACT,
                    details={"path": str(path), "subscriber": key},
                ) from e

    def _report(self, path: Path, error: LoadError) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(path, error)
        except Exception as e:
            logger.error(f"[Reload] Error callback failed for {path.name}: {e}")

    async def _execute(self, path: Path) -> types.ModuleType:
        loop = asyncio.get_running_loop()
        try:
            source = await loop.run_in_executor(None, path.read_bytes)
        except OSError as e:
            raise LoadError(
                f"Cannot read {path}: {e}",
                code=ErrorCode.LOAD_READ_FAILED,
                details={"path": str(path)},
            ) from e

        try:
            code = compile(source, str(path), "exec")
        except (SyntaxError, ValueError) as e:
            raise LoadError(
                f"Syntax error in {path.name}: {e}",
                code=ErrorCode.LOAD_SYNTAX_ERROR,
                details={"path": str(path), "line": getattr(e, "lineno", None)},
            ) from e

        self._evict_dependencies(path)

        unique_name = f"{_UNIT_PREFIX}_{path.stem}_{time.time_ns()}"
        module = types.ModuleType(unique_name)
        module.__file__ = str(path)
        search_dir = str(path.parent)
        sys.path.insert(0, search_dir)
        sys.modules[unique_name] = module
        try:
            exec(code, module.__dict__)
        except Exception as e:
            raise LoadError(
                f"Error executing {path.name}: {type(e).__name__}: {e}",
                code=ErrorCode.LOAD_EXECUTION_FAILED,
                details={"path": str(path), "original_type": type(e).__name__},
            ) from e
        finally:
            sys.modules.pop(unique_name, None)
            if search_dir in sys.path:
                sys.path.remove(search_dir)
        return module

    def _evict_dependencies(self, path: Path) -> None:
        """
        Drop imported copies of this unit's local dependencies so they re-execute.

        A module is evicted when its file is in the dependency closure, or
        when it sits under a name this unit (or one of its dependencies)
        imports a local file as. The second rule catches a same-named module
        that another unit loaded from a different directory.
        """
        stale = self.graph.dependency_closure(path)
        names = set()
        for node in {path} | stale:
            for imported in self.graph.import_names(node):
                parts = imported.split(".")
                names.update(".".join(parts[:i]) for i in range(1, len(parts) + 1))
        names -= _PROTECTED_NAMES
        if not stale and not names:
            return

        stale_files = {os.path.normcase(str(dep)) for dep in stale}
        for name, module in list(sys.modules.items()):
            if name in names or name.partition(".")[0] in names:
                del sys.modules[name]
                continue
            module_file = getattr(module, "__file__", None)
            if module_file and os.path.normcase(os.path.realpath(module_file)) in stale_files:
                del sys.modules[name]
        for dep in stale:
            try:
                cached = importlib.util.cache_from_source(str(dep))
            except (NotImplementedError, ValueError):
                continue
            try:
                os.remove(cached)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.debug(f"[Reload] Cannot remove bytecode cache {cached}: {e}")
        importlib.invalidate_caches()

    # ------------------------------------------------------------------
    # Change propagation
    # ------------------------------------------------------------------

    def find_affected(self, path: Union[str, Path]) -> List[Path]:
        """The changed file plus every tracked file that imports it, transitively."""
        return self.graph.find_affected(_resolve(path))

    async def propagate(self, path: Union[str, Path]) -> Dict[Path, ReloadResult]:
        """
        Handle one change of `path`: refresh its edges, reload everything
        affected in dependency order, and notify subscribers of each success.

        Once a unit fails, the units depending on it are not attempted and
        keep their last-known-good version, so one broken file is reported
        once.

        Returns:
            Reload result per affected path, in reload order
        """
        absolute = _resolve(path)
        await self.tracker.update_graph(absolute)

        affected = self.graph.find_affected(absolute)
        ordered = self.graph.reload_order(affected)
        logger.info(f"[Reload] File changed: {absolute.name}, affected modules: {len(ordered)}")

        results: Dict[Path, ReloadResult] = {}
        failed: Set[Path] = set()
        for unit_path in ordered:
            broken = failed & self.graph.dependency_closure(unit_path)
            if broken:
                # Would fail for the same reason; the failure is already reported
                unit = self._units.get(unit_path)
                logger.warning(
                    f"[Reload] Skipping {unit_path.name}: dependency "
                    f"{sorted(p.name for p in broken)[0]} failed to reload"
                )
                failed.add(unit_path)
                results[unit_path] = ReloadResult(
                    path=unit_path,
                    success=False,
                    version=unit.version if unit else 0,
                    skipped=True,
                )
                continue

            result = await self.reload(unit_path)
            results[unit_path] = result
            if result.success:
                await self._notify(unit_path, result.artifact)
            else:
                failed.add(unit_path)

        if failed:
            logger.warning(f"[Reload] Reload of {absolute.name} finished with {len(failed)} failure(s)")
        else:
            logger.info(f"[Reload] Reload complete for {absolute.name} and dependents")
        return results

    async def _notify(self, path: Path, artifact: Any) -> None:
        for key, sub in list(self._subscriptions.get(path, {}).items()):
            try:
                outcome = sub.on_reload(artifact)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"[Reload] Callback '{key}' failed for {path.name}: {e}")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        path: Union[str, Path],
        key: str,
        on_reload: ReloadCallback,
        validate: Optional[Validator] = None,
    ) -> Path:
        """
        Register a reload callback (and optional validator) for a file.

        The validator runs before a new version is published; raising from
        it rejects the version. `key` identifies the subscriber so several
        can share one file.
        """
        absolute = _resolve(path)
        self._subscriptions.setdefault(absolute, {})[key] = _Subscription(on_reload, validate)
        return absolute

    def unsubscribe(self, path: Union[str, Path], key: Optional[str] = None) -> None:
        """Remove one subscriber, or all of them when `key` is None."""
        absolute = _resolve(path)
        if key is None:
            self._subscriptions.pop(absolute, None)
            return
        subs = self._subscriptions.get(absolute)
        if subs is not None:
            subs.pop(key, None)
            if not subs:
                del self._subscriptions[absolute]

    def has_subscribers(self, path: Union[str, Path]) -> bool:
        return bool(self._subscriptions.get(_resolve(path)))

    # ------------------------------------------------------------------
    # Introspection and teardown
    # ------------------------------------------------------------------

    def get_unit(self, path: Union[str, Path]) -> Optional[TrackedUnit]:
        return self._units.get(_resolve(path))

    def get_artifact(self, path: Union[str, Path]) -> Any:
        """Last-known-good artifact of a file, or None if it was never loaded."""
        unit = self.get_unit(path)
        return unit.current if unit else None

    def get_dependency_graph(self) -> Dict[str, List[str]]:
        return self.graph.snapshot()

    async def set_depth(self, depth: int) -> None:
        """Change the dependency tracking depth and rebuild the graph of loaded roots."""
        if not isinstance(depth, int) or isinstance(depth, bool) or depth < 1:
            raise ValidationError("Depth must be a positive number", code=ErrorCode.CONFIG_INVALID)
        self.tracker.max_depth = depth
        self.graph.clear()
        for root in list(self._roots):
            await self.tracker.update_graph(root)
        logger.info(f"[Reload] Update depth set to {depth}")

    def release(self, path: Union[str, Path]) -> None:
        """Forget a file: its unit, its subscribers and its outgoing edges."""
        absolute = _resolve(path)
        self._units.pop(absolute, None)
        self._subscriptions.pop(absolute, None)
        self.graph.remove(absolute)
        if absolute in self._roots:
            self._roots.remove(absolute)

    def cleanup(self) -> None:
        self._units.clear()
        self._subscriptions.clear()
        self._roots.clear()
        self.graph.clear()
