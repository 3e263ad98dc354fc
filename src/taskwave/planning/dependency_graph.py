"""Deterministic adjacency-list dependency graph over task ids."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Sequence, Set
from heapq import heapify, heappop, heappush
from typing import Any


class CycleError(ValueError):
    """Raised when a cycle is detected in the dependency graph."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized

        if not normalized:
            message = "Dependency graph contains at least one cycle."
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"Dependency graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class DependencyGraph:
    """Directed graph where an edge ``parent -> child`` means child waits on parent.

    Dependencies on ids that are not nodes of the graph are kept aside in
    :attr:`missing` instead of creating phantom nodes.
    """

    __slots__ = ("_nodes", "_children", "_parents", "_missing")

    def __init__(
        self,
        nodes: Iterable[str] | None = None,
        edges: Iterable[tuple[str, str]] | None = None,
    ) -> None:
        self._nodes: set[str] = set()
        self._children: dict[str, set[str]] = {}
        self._parents: dict[str, set[str]] = {}
        self._missing: dict[str, set[str]] = {}

        if nodes is not None:
            for node_id in nodes:
                self.add_node(node_id)

        if edges is not None:
            for parent, child in edges:
                self.add_edge(parent, child)

    @classmethod
    def from_dependencies(cls, dependencies: dict[str, Iterable[str]]) -> DependencyGraph:
        """Build a graph from ``{task_id: [ids it waits on]}``."""
        graph = cls(nodes=dependencies)
        for child in sorted(dependencies):
            for parent in sorted(dependencies[child]):
                if parent in graph._nodes:
                    graph.add_edge(parent, child)
                else:
                    graph._missing.setdefault(child, set()).add(parent)
        return graph

    @property
    def nodes(self) -> tuple[str, ...]:
        """All node IDs in deterministic order."""
        return tuple(sorted(self._nodes))

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        """All edges as ``(parent, child)`` pairs in deterministic order."""
        ordered_edges: list[tuple[str, str]] = []
        for parent in sorted(self._nodes):
            for child in sorted(self._children[parent]):
                ordered_edges.append((parent, child))
        return tuple(ordered_edges)

    @property
    def missing(self) -> dict[str, tuple[str, ...]]:
        """Dependencies that reference ids outside the graph, keyed by dependent."""
        return {node: tuple(sorted(refs)) for node, refs in sorted(self._missing.items())}

    def add_node(self, node_id: str) -> None:
        """Add a node if it does not already exist."""
        self._validate_node_id(node_id)
        if node_id in self._nodes:
            return

        self._nodes.add(node_id)
        self._children[node_id] = set()
        self._parents[node_id] = set()

    def add_edge(self, parent: str, child: str) -> None:
        """Add a directed edge ``parent -> child``."""
        self._validate_node_id(parent)
        self._validate_node_id(child)

        if parent not in self._nodes:
            self.add_node(parent)
        if child not in self._nodes:
            self.add_node(child)

        if child in self._children[parent]:
            return

        self._children[parent].add(child)
        self._parents[child].add(parent)

    def topological_sort(self) -> tuple[str, ...]:
        """Return a deterministic topological ordering or raise ``CycleError``."""
        indegree: dict[str, int] = {node: len(self._parents[node]) for node in self._nodes}
        ready: list[str] = [node for node, degree in indegree.items() if degree == 0]
        heapify(ready)

        order: list[str] = []
        while ready:
            node = heappop(ready)
            order.append(node)

            for child in sorted(self._children[node]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, child)

        if len(order) != len(self._nodes):
            raise CycleError(self.detect_cycles())

        return tuple(order)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Detect directed cycles.

        Returns cycle paths as closed paths, e.g. ``("A", "B", "C", "A")``.
        """
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in sorted(self._nodes):
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack.append(start)
            stack_index[start] = len(stack) - 1
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(sorted(self._children[start])))]

            while frames:
                node, child_iter = frames[-1]

                try:
                    child = next(child_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    stack_index[child] = len(stack)
                    stack.append(child)
                    frames.append((child, iter(sorted(self._children[child]))))
                    continue

                if child_state == 1:
                    start_index = stack_index[child]
                    cycle = tuple(stack[start_index:] + [child])
                    cycles[self._canonicalize_cycle(cycle)] = None

        return tuple(sorted(cycles))

    def get_dependencies(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive dependencies for ``node_id``."""
        self._assert_node_exists(node_id)
        if not transitive:
            return tuple(sorted(self._parents[node_id]))
        return self._transitive_closure(node_id, upstream=True)

    def get_dependents(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive dependents for ``node_id``."""
        self._assert_node_exists(node_id)
        if not transitive:
            return tuple(sorted(self._children[node_id]))
        return self._transitive_closure(node_id, upstream=False)

    def are_independent(self, first: str, second: str) -> bool:
        """True when neither node transitively depends on the other."""
        if first == second:
            return False
        return (
            second not in self._transitive_closure(first, upstream=True)
            and first not in self._transitive_closure(second, upstream=True)
        )

    def get_runnable(self, completed: Set[str]) -> tuple[str, ...]:
        """
        Return nodes ready to run.

        A node is runnable when it is not already completed, all graph parents
        are present in ``completed`` and every out-of-graph dependency is too.
        """
        completed_nodes = set(completed)
        runnable: list[str] = []
        for node in sorted(self._nodes):
            if node in completed_nodes:
                continue
            if not self._parents[node].issubset(completed_nodes):
                continue
            if not self._missing.get(node, set()).issubset(completed_nodes):
                continue
            runnable.append(node)
        return tuple(runnable)

    def layers(
        self,
        completed: Set[str] = frozenset(),
        *,
        sort_key: Callable[[str], Any] | None = None,
        admit: Callable[[Sequence[str], str], bool] | None = None,
    ) -> tuple[tuple[tuple[str, ...], ...], tuple[str, ...]]:
        """
        Breadth-first layering.

        Each layer holds the nodes whose dependencies all sit in earlier layers
        or in ``completed``. ``admit(layer_so_far, node)`` may refuse a node, which
        defers it to a later layer; the first candidate of a layer is always
        admitted so layering always progresses. Returns ``(layers, unscheduled)``
        where ``unscheduled`` lists nodes that can never become runnable.
        """
        placed: set[str] = set(completed)
        remaining = self._nodes - placed
        result: list[tuple[str, ...]] = []

        while remaining:
            candidates = [node for node in self.get_runnable(placed) if node in remaining]
            if not candidates:
                break
            if sort_key is not None:
                candidates.sort(key=sort_key)

            layer: list[str] = []
            for node in candidates:
                if layer and admit is not None and not admit(layer, node):
                    continue
                layer.append(node)

            result.append(tuple(layer))
            placed.update(layer)
            remaining.difference_update(layer)

        return tuple(result), tuple(sorted(remaining))

    def _transitive_closure(self, node_id: str, *, upstream: bool) -> tuple[str, ...]:
        self._assert_node_exists(node_id)

        adjacency = self._parents if upstream else self._children
        visited: set[str] = set()
        pending: list[str] = list(adjacency[node_id])

        while pending:
            node = pending.pop()
            if node in visited:
                continue

            visited.add(node)
            for neighbor in adjacency[node]:
                if neighbor not in visited:
                    pending.append(neighbor)

        return tuple(sorted(visited))

    @staticmethod
    def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
        if len(cycle) < 2:
            raise ValueError("Cycle path must contain at least two nodes.")

        core = tuple(cycle[:-1])
        if len(core) == 1:
            return (core[0], core[0])

        best = core
        for offset in range(1, len(core)):
            rotated = core[offset:] + core[:offset]
            if rotated < best:
                best = rotated

        return best + (best[0],)

    @staticmethod
    def _validate_node_id(node_id: str) -> None:
        if not node_id:
            raise ValueError("Node ID must be non-empty.")

    def _assert_node_exists(self, node_id: str) -> None:
        if node_id not in self._nodes:
            raise KeyError(f"Unknown node: {node_id}")


__all__ = ["CycleError", "DependencyGraph"]
