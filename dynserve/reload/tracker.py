"""
Dependency Tracker (dynserve/reload/tracker.py)

PURPOSE:
Finds which local files a code unit imports, without executing it, and
records those edges in the DependencyGraph owned by the reload engine.

RESOLUTION RULES:
- Every `import` / `from ... import` node in the file is considered
- References are resolved against the importing file's directory
  (`from .. import x` walks up one directory per extra dot)
- For each candidate: literal path, then configured extensions, then the
  package index file
- Anything that does not exist on disk is treated as an external library
  and skipped
- A file that fails to parse gets an empty dependency set (fail-open)
- Absolute imports also record the module name they were imported under,
  so a same-named module loaded from another directory can be evicted
"""

import ast
import asyncio
import logging
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from dynserve.reload.models import DependencyGraph

logger = logging.getLogger(__name__)

ParseErrorHook = Callable[[Path, Exception], None]


class DependencyTracker:
    """Scans static imports and keeps the dependency graph current."""

    def __init__(
        self,
        graph: DependencyGraph,
        file_extensions: Sequence[str] = (".py",),
        index_name: str = "__init__",
        max_depth: int = 1,
        on_parse_error: Optional[ParseErrorHook] = None,
    ):
        """
        Args:
            graph: Graph to write edges into (owned by the reload engine)
            file_extensions: Extensions tried when resolving a reference
            index_name: Package index file stem tried for directories
            max_depth: 1 = direct imports only, N = N levels of imports
            on_parse_error: Called when a file cannot be read or parsed
        """
        self.graph = graph
        self.file_extensions = tuple(file_extensions)
        self.index_name = index_name
        self.max_depth = max_depth
        self._on_parse_error = on_parse_error

    async def extract_dependencies(self, path: Path) -> List[Path]:
        """
        Return the existing local files `path` imports.

        Args:
            path: Absolute path of the file to scan

        Returns:
            Resolved dependency paths in source order, without duplicates
        """
        return list(await self.scan(path))

    async def scan(self, path: Path) -> Dict[Path, Set[str]]:
        """
        Map each local file `path` imports to the module names it was
        imported under.

        Only absolute imports contribute names (`import helpers` gives
        "helpers", `from pkg import views` gives "pkg" and "pkg.views").
        Relative imports resolve to files but carry no name.
        """
        loop = asyncio.get_running_loop()
        try:
            source = await loop.run_in_executor(None, path.read_text, "utf-8")
            tree = ast.parse(source, filename=str(path))
        except (OSError, SyntaxError, ValueError) as e:
            logger.warning(f"[Tracker] Cannot scan imports of {path}: {e}")
            if self._on_parse_error:
                self._on_parse_error(path, e)
            return {}

        base_dir = path.parent
        found: Dict[Path, Set[str]] = {}
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                hits = [
                    hit
                    for alias in node.names
                    for hit in self.resolve_named(base_dir, alias.name, 0, ())
                ]
            elif isinstance(node, ast.ImportFrom):
                names = [alias.name for alias in node.names if alias.name != "*"]
                hits = self.resolve_named(base_dir, node.module, node.level or 0, names)
            else:
                continue
            for module_name, dep in hits:
                if dep == path:
                    continue
                bucket = found.setdefault(dep, set())
                if module_name:
                    bucket.add(module_name)

        logger.debug(f"[Tracker] {path.name}: {len(found)} local dependencies")
        return found

    def resolve_reference(
        self,
        base_dir: Path,
        module: Optional[str],
        level: int,
        names: Iterable[str],
    ) -> List[Path]:
        """
        Resolve one import statement to files on disk.

        Args:
            base_dir: Directory of the importing file
            module: Dotted module name (None for `from . import x`)
            level: Number of leading dots (0 for absolute imports)
            names: Imported names, tried as submodules of `module`

        Returns:
            Existing files referenced by the statement
        """
        return [dep for _, dep in self.resolve_named(base_dir, module, level, names)]

    def resolve_named(
        self,
        base_dir: Path,
        module: Optional[str],
        level: int,
        names: Iterable[str],
    ) -> List[Tuple[Optional[str], Path]]:
        """Like resolve_reference, paired with the sys.modules name (None for relative imports)."""
        anchor = base_dir
        for _ in range(max(level - 1, 0)):
            anchor = anchor.parent

        target = anchor.joinpath(*module.split(".")) if module else anchor
        resolved: List[Tuple[Optional[str], Path]] = []

        if module:
            hit = self._resolve_candidate(target)
            if hit is not None:
                resolved.append((module if level == 0 else None, hit))

        # `from pkg import mod` / `from . import mod` may name submodules
        for name in names:
            hit = self._resolve_candidate(target / name)
            if hit is not None:
                qualified = f"{module}.{name}" if module and level == 0 else None
                resolved.append((qualified, hit))

        return resolved


    def _resolve_candidate(self, candidate: Path) -> Optional[Path]:
        if candidate.is_file():
            return candidate.resolve()
        for ext in self.file_extensions:
            with_ext = candidate.with_name(candidate.name + ext)
            if with_ext.is_file():
                return with_ext.resolve()
        for ext in self.file_extensions:
            index = candidate / f"{self.index_name}{ext}"
            if index.is_file():
                return index.resolve()
        return None

    async def update_graph(self, root: Path, depth: int = 1) -> None:
        """
        Refresh the edges of `root` and, below max depth, of its dependencies.

        Dependencies already present in the graph are not rescanned; they get
        their own refresh when they change.
        """
        if depth > self.max_depth:
            return

        scanned = await self.scan(root)
        dependencies = list(scanned)
        self.graph.set(root, dependencies, names=scanned)

        if depth < self.max_depth:
            for dependency in dependencies:
                if dependency not in self.graph:
                    await self.update_graph(dependency, depth + 1)
