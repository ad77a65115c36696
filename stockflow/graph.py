"""
Dependency graph for stock-and-flow models
Builds id-keyed adjacency from node formulas and flows, detects auxiliary
cycles and computes the per-round auxiliary evaluation order
"""

import heapq
import logging
from collections import deque
from typing import Dict, Iterable, List, Optional, Set, Tuple

from stockflow.constants import BUILT_IN_VARIABLES, KIND_AUXILIARY, KIND_LEVEL
from stockflow.exceptions import CircularDependencyError
from stockflow.models import BaseNode, LevelNode

logger = logging.getLogger(__name__)


class DependencyGraph:
    """
    Directed graph keyed by node id

    An edge A -> B means "B depends on A": A appears in B's formula, or
    A is a rate listed in level B's inflows or outflows. Ids that do not
    name a node may appear as edge sources; the validator reports them.
    """

    def __init__(self):
        self.kinds: Dict[str, str] = {}
        # node id -> ids it depends on
        self._dependencies: Dict[str, Set[str]] = {}
        # node id -> ids depending on it
        self._dependents: Dict[str, Set[str]] = {}

    @classmethod
    def build(cls, nodes: Iterable[BaseNode]) -> "DependencyGraph":
        """
        Build the graph from node definitions

        Args:
            nodes: Node definitions (ids assumed unique; the last one wins otherwise)

        Returns:
            Populated dependency graph
        """
        graph = cls()
        nodes = list(nodes)
        for node in nodes:
            graph.kinds[node.id] = node.kind
            graph._dependencies.setdefault(node.id, set())
            graph._dependents.setdefault(node.id, set())

        for node in nodes:
            for ref in node.formula_references():
                if ref in BUILT_IN_VARIABLES:
                    continue
                graph.add_edge(ref, node.id)
            if isinstance(node, LevelNode):
                for rate_id in node.flow_references():
                    graph.add_edge(rate_id, node.id)

        logger.debug(
            f"Built dependency graph: {len(graph.kinds)} nodes, {len(graph.edges())} edges"
        )
        return graph

    def add_edge(self, source: str, target: str) -> None:
        """Record that target depends on source"""
        self._dependencies.setdefault(target, set()).add(source)
        self._dependents.setdefault(source, set()).add(target)

    def dependencies_of(self, node_id: str) -> List[str]:
        """Ids the node depends on, sorted"""
        return sorted(self._dependencies.get(node_id, ()))

    def dependents_of(self, node_id: str) -> List[str]:
        """Ids depending on the node, sorted"""
        return sorted(self._dependents.get(node_id, ()))

    def edges(self) -> List[Tuple[str, str]]:
        """All (source, target) pairs, sorted"""
        return sorted(
            (source, target)
            for target, sources in self._dependencies.items()
            for source in sources
        )

    def ids_of_kind(self, kind: str) -> List[str]:
        """Node ids of one kind, sorted"""
        return sorted(node_id for node_id, k in self.kinds.items() if k == kind)

    # ------------------------------------------------------------------
    # Auxiliary subgraph
    # ------------------------------------------------------------------

    def _auxiliary_successors(self, node_id: str) -> List[str]:
        return [
            dep
            for dep in self.dependents_of(node_id)
            if self.kinds.get(dep) == KIND_AUXILIARY
        ]

    def find_auxiliary_cycle(self) -> Optional[List[str]]:
        """
        Search the auxiliary-induced subgraph for a cycle

        Depth-first search in node-id order. Level and rate values are
        round-start inputs, so only auxiliary edges can form a cycle.

        Returns:
            Cycle path starting at the node that was re-entered while still
            on the traversal stack, or None if the subgraph is acyclic
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        auxiliaries = self.ids_of_kind(KIND_AUXILIARY)
        color: Dict[str, int] = {node: WHITE for node in auxiliaries}

        for root in auxiliaries:
            if color[root] != WHITE:
                continue

            # Iterative DFS: stack of (node, remaining successors)
            path: List[str] = [root]
            stack = [(root, iter(self._auxiliary_successors(root)))]
            color[root] = GRAY

            while stack:
                node, successors = stack[-1]
                advanced = False
                for successor in successors:
                    if color[successor] == GRAY:
                        cycle_start = path.index(successor)
                        return path[cycle_start:]
                    if color[successor] == WHITE:
                        color[successor] = GRAY
                        path.append(successor)
                        stack.append(
                            (successor, iter(self._auxiliary_successors(successor)))
                        )
                        advanced = True
                        break
                if not advanced:
                    color[node] = BLACK
                    path.pop()
                    stack.pop()

        return None

    def topological_order(self) -> List[str]:
        """
        Order auxiliary nodes so every node follows all of its inputs

        Kahn's algorithm; among nodes that are ready at the same time the
        smallest id goes first.

        Returns:
            Auxiliary node ids in evaluation order

        Raises:
            CircularDependencyError: If the auxiliary subgraph has a cycle
        """
        auxiliaries = self.ids_of_kind(KIND_AUXILIARY)
        in_degree: Dict[str, int] = {
            node: sum(
                1
                for dep in self._dependencies.get(node, ())
                if self.kinds.get(dep) == KIND_AUXILIARY
            )
            for node in auxiliaries
        }

        ready = [node for node in auxiliaries if in_degree[node] == 0]
        heapq.heapify(ready)
        order: List[str] = []

        while ready:
            node = heapq.heappop(ready)
            order.append(node)
            for dependent in self._auxiliary_successors(node):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(auxiliaries):
            cycle = self.find_auxiliary_cycle() or sorted(set(auxiliaries) - set(order))
            raise CircularDependencyError(
                message=f"Circular dependency detected. Cycle: {' -> '.join(cycle + cycle[:1])}",
                cycle=cycle,
            )

        return order

    # ------------------------------------------------------------------
    # Reachability
    # ------------------------------------------------------------------

    def upstream_of(self, node_ids: Iterable[str]) -> Set[str]:
        """
        Every node from which one of node_ids can be reached

        The start nodes themselves are included.
        """
        seen: Set[str] = set(node_ids)
        queue = deque(sorted(seen))
        while queue:
            node = queue.popleft()
            for dep in self.dependencies_of(node):
                if dep not in seen:
                    seen.add(dep)
                    queue.append(dep)
        return seen

    def attached_rates(self) -> Set[str]:
        """Rate ids listed as an inflow or outflow of some level"""
        return {
            dep
            for level in self.ids_of_kind(KIND_LEVEL)
            for dep in self._dependencies.get(level, ())
        }
