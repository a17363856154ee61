"""
Category parent resolution.

Upstream category data can arrive in any order and is not guaranteed to
be a tree. Categories are first stored without parent links; this module
then resolves the links over an arena of nodes, dropping references to
missing parents and any edge that would close a cycle.
"""

from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


class CyclicReference(Exception):
    """A parent link would create a cycle. Logged and dropped, never raised to callers."""

    def __init__(self, category_id: int, parent_id: int, path: list[int]):
        super().__init__(
            f"Category {category_id} -> {parent_id} closes cycle {' -> '.join(map(str, path))}"
        )
        self.category_id = category_id
        self.parent_id = parent_id
        self.path = path


@dataclass
class CategoryNode:
    upstream_id: int
    requested_parent: int | None
    parent: int | None = None  # arena index, set during resolution


@dataclass
class DroppedEdge:
    category_id: int
    parent_id: int
    reason: str


@dataclass
class Resolution:
    parents: dict[int, int | None] = field(default_factory=dict)
    dropped: list[DroppedEdge] = field(default_factory=list)


class CategoryArena:
    """Nodes in a flat list, parents referenced by index."""

    def __init__(self, links: dict[int, int | None]):
        self.nodes: list[CategoryNode] = []
        self.index: dict[int, int] = {}
        for upstream_id in sorted(links):
            self.index[upstream_id] = len(self.nodes)
            self.nodes.append(CategoryNode(upstream_id, links[upstream_id]))

    def _closes_cycle(self, child: int, parent: int) -> list[int] | None:
        """Walk up from `parent`; reaching `child` means the edge closes a cycle."""
        path = [self.nodes[child].upstream_id]
        visited: set[int] = set()
        current: int | None = parent
        while current is not None:
            path.append(self.nodes[current].upstream_id)
            if current == child:
                return path
            if current in visited:
                # Existing links are acyclic by construction
                return None
            visited.add(current)
            current = self.nodes[current].parent
        return None

    def resolve(self) -> Resolution:
        """
        Link every node to its parent, in upstream id order.

        Edges are added one at a time and each is checked against the links
        already accepted, so the result is always a forest.
        """
        result = Resolution()
        for i, node in enumerate(self.nodes):
            wanted = node.requested_parent
            if wanted is None:
                result.parents[node.upstream_id] = None
                continue

            if wanted == node.upstream_id:
                result.dropped.append(DroppedEdge(node.upstream_id, wanted, "self-reference"))
                result.parents[node.upstream_id] = None
                continue

            parent_index = self.index.get(wanted)
            if parent_index is None:
                result.dropped.append(DroppedEdge(node.upstream_id, wanted, "missing parent"))
                result.parents[node.upstream_id] = None
                continue

            cycle = self._closes_cycle(i, parent_index)
            if cycle is not None:
                error = CyclicReference(node.upstream_id, wanted, cycle)
                logger.warning("Dropping cyclic category link", error=str(error))
                result.dropped.append(DroppedEdge(node.upstream_id, wanted, "cycle"))
                result.parents[node.upstream_id] = None
                continue

            node.parent = parent_index
            result.parents[node.upstream_id] = wanted
        return result


def resolve_parents(links: dict[int, int | None]) -> Resolution:
    """
    Resolve requested parent links into a forest.

    Args:
        links: category upstream id -> requested parent upstream id (or None)

    Returns:
        Resolution with the accepted parent per category and the dropped edges
    """
    return CategoryArena(links).resolve()
