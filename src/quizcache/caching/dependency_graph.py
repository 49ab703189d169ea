"""
Explicit dependency graph between cache keys.

An edge ``key -> dependent`` means that the dependent entry was derived
from ``key`` and must be invalidated when ``key`` changes.
"""

from collections import deque
from typing import Dict, Iterable, List, Set


class DependencyGraph:
    """Adjacency map of cache key dependencies with reverse edges."""

    def __init__(self):
        self._dependents: Dict[str, Set[str]] = {}
        self._dependencies: Dict[str, Set[str]] = {}

    def add(self, key: str, depends_on: Iterable[str]) -> None:
        """Record that ``key`` depends on every key in ``depends_on``."""
        for parent in depends_on:
            if parent == key:
                continue
            self._dependents.setdefault(parent, set()).add(key)
            self._dependencies.setdefault(key, set()).add(parent)

    def remove(self, key: str, depends_on: Iterable[str]) -> None:
        for parent in depends_on:
            dependents = self._dependents.get(parent)
            if dependents is not None:
                dependents.discard(key)
                if not dependents:
                    del self._dependents[parent]
            parents = self._dependencies.get(key)
            if parents is not None:
                parents.discard(parent)
                if not parents:
                    del self._dependencies[key]

    def set_dependencies(self, key: str, depends_on: Iterable[str]) -> None:
        """Replace the keys ``key`` depends on."""
        self.drop_dependencies(key)
        self.add(key, depends_on)

    def drop_dependencies(self, key: str) -> None:
        """Forget the edges from the parents of ``key``, keeping its dependents."""
        self.remove(key, list(self._dependencies.get(key, ())))

    def discard(self, key: str) -> None:
        """Forget every edge touching ``key``."""
        self.drop_dependencies(key)
        for dependent in list(self._dependents.get(key, ())):
            self.remove(dependent, [key])

    def clear(self) -> None:
        self._dependents.clear()
        self._dependencies.clear()

    def dependents(self, key: str) -> Set[str]:
        return set(self._dependents.get(key, ()))

    def dependencies(self, key: str) -> Set[str]:
        return set(self._dependencies.get(key, ()))

    def cascade(self, root: str) -> List[str]:
        """Every key transitively depending on ``root``, in BFS order.

        Each key is emitted at most once and the root is never emitted,
        even when a cycle leads back to it.
        """
        visited: Set[str] = {root}
        ordered: List[str] = []
        queue = deque([root])

        while queue:
            current = queue.popleft()
            for dependent in sorted(self._dependents.get(current, ())):
                if dependent in visited:
                    continue
                visited.add(dependent)
                ordered.append(dependent)
                queue.append(dependent)

        return ordered

    def find_cycles(self) -> List[List[str]]:
        """Return the dependency cycles present in the graph."""
        cycles: List[List[str]] = []
        seen_cycles: Set[frozenset] = set()
        done: Set[str] = set()

        def visit(node: str, path: List[str], on_path: Set[str]) -> None:
            for dependent in sorted(self._dependents.get(node, ())):
                if dependent in on_path:
                    cycle = path[path.index(dependent):]
                    signature = frozenset(cycle)
                    if signature not in seen_cycles:
                        seen_cycles.add(signature)
                        cycles.append(cycle + [dependent])
                elif dependent not in done:
                    path.append(dependent)
                    on_path.add(dependent)
                    visit(dependent, path, on_path)
                    on_path.discard(dependent)
                    path.pop()
            done.add(node)

        for start in sorted(self._dependents):
            if start not in done:
                visit(start, [start], {start})

        return cycles

    def edge_count(self) -> int:
        return sum(len(dependents) for dependents in self._dependents.values())

    def to_dict(self) -> Dict[str, List[str]]:
        return {key: sorted(dependents) for key, dependents in self._dependents.items()}

    def __contains__(self, key: str) -> bool:
        return key in self._dependents or key in self._dependencies

    def __len__(self) -> int:
        return len(set(self._dependents) | set(self._dependencies))
