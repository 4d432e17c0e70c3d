"""
dynserve/reload/models.py
Tracked code units and the dependency graph between them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import networkx as nx

from dynserve.errors import LoadError

@dataclass
class TrackedUnit:
    """
    Versioned slot for one file's executed artifact.

    `current` is always the last-known-good artifact: a new artifact is only
    published after it executed and passed validation, and the displaced one
    moves to `previous`.
    """
    path: Path
    current: Any
    last_modified: float
    previous: Any = None
    version: int = 1
    dependencies: Tuple[Path, ...] = ()
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def last_known_good(self) -> Any:
        return self.current

    def publish(self, artifact: Any, last_modified: float) -> None:
        self.previous = self.current
        self.current = artifact
        self.last_modified = last_modified
        self.version += 1
        self.loaded_at = datetime.now(timezone.utc)

@dataclass
class ReloadResult:
    """Outcome of re-executing one unit."""
    path: Path
    success: bool
    artifact: Any = None
    error: Optional[LoadError] = None
    version: int = 0
    # Not attempted because a dependency failed earlier in the same batch
    skipped: bool = False


class DependencyGraph:
    """
    Directed edges from a tracked file to the files it imports.

    Backed by a networkx DiGraph. A node counts as tracked once its own
    imports were scanned; files that only appear as import targets are
    nodes without the `tracked` flag. Each edge carries the module names
    the importer used for the target (`names`). Cycles are allowed.
    """

    def __init__(self):
        self._graph: nx.DiGraph = nx.DiGraph()

    def __contains__(self, path: Path) -> bool:
        return path in self._graph and self._graph.nodes[path].get("tracked", False)

    def __len__(self) -> int:
        return len(self.paths())

    def set(
        self,
        path: Path,
        dependencies: Iterable[Path],
        names: Optional[Mapping[Path, Iterable[str]]] = None,
    ) -> None:
        """Replace the outgoing edges of `path`."""
        names = names or {}
        self._graph.add_node(path, tracked=True)
        self._graph.remove_edges_from(list(self._graph.out_edges(path)))
        for dep in dependencies:
            self._graph.add_edge(path, dep, names=frozenset(names.get(dep, ())))

    def get(self, path: Path) -> Tuple[Path, ...]:
        if path not in self:
            return ()
        return tuple(self._graph.successors(path))

    def import_names(self, path: Path) -> Set[str]:
        """Module names `path` used for its local imports."""
        if path not in self._graph:
            return set()
        found: Set[str] = set()
        for _, _, names in self._graph.out_edges(path, data="names", default=frozenset()):
            found.update(names)
        return found

    def remove(self, path: Path) -> None:
        if path not in self._graph:
            return
        self._graph.remove_edges_from(list(self._graph.out_edges(path)))
        if self._graph.in_degree(path):
            self._graph.nodes[path]["tracked"] = False
        else:
            self._graph.remove_node(path)
        self._prune_orphans()

    def _prune_orphans(self) -> None:
        orphans = [
            node for node, tracked in self._graph.nodes(data="tracked", default=False)
            if not tracked and self._graph.degree(node) == 0
        ]
        self._graph.remove_nodes_from(orphans)

    def clear(self) -> None:
        self._graph.clear()

    def paths(self) -> List[Path]:
        return [node for node, tracked in self._graph.nodes(data="tracked", default=False) if tracked]

    def dependents_of(self, path: Path) -> List[Path]:
        """Tracked files that import `path` directly."""
        if path not in self._graph:
            return []
        return list(self._graph.predecessors(path))

    def find_affected(self, changed: Path) -> List[Path]:
        """
        Everything that must reload when `changed` changes.

        `changed` itself plus its ancestors (every file importing it,
        transitively), in breadth-first discovery order.
        """
        if changed not in self._graph:
            return [changed]
        return list(nx.bfs_tree(self._graph, changed, reverse=True))

    def dependency_closure(self, path: Path) -> Set[Path]:
        """All files reachable from `path` through import edges, excluding `path`."""
        if path not in self._graph:
            return set()
        return nx.descendants(self._graph, path) - {path}

    def reload_order(self, paths: List[Path]) -> List[Path]:
        """
        Order `paths` so every file comes after the files it depends on.

        Topological sort of the subgraph spanned by `paths`, ties broken by
        the input order. Members of an import cycle are collapsed into one
        strongly connected component and kept together in input order.
        """
        subset = list(dict.fromkeys(paths))
        position = {node: index for index, node in enumerate(subset)}

        # Edges point from a dependency to its dependents
        view = nx.DiGraph()
        view.add_nodes_from(subset)
        view.add_edges_from(
            (dep, node)
            for node in subset
            for dep in self.get(node)
            if dep in position and dep != node
        )

        if nx.is_directed_acyclic_graph(view):
            return list(nx.lexicographical_topological_sort(view, key=position.__getitem__))

        condensed = nx.condensation(view)
        members = {
            component: sorted(condensed.nodes[component]["members"], key=position.__getitem__)
            for component in condensed
        }
        ordered: List[Path] = []
        for component in nx.lexicographical_topological_sort(
            condensed, key=lambda c: position[members[c][0]]
        ):
            ordered.extend(members[component])
        return ordered

    def snapshot(self) -> Dict[str, List[str]]:
        """JSON-friendly copy of the graph."""
        return {str(node): [str(dep) for dep in self.get(node)] for node in self.paths()}
