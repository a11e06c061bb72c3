"""
ARBOR Link Graph

The composability forest: every node has at most one outgoing edge
(source -> target, target being the parent) and the edge relation is acyclic.

Architecture
────────────

    _targets   source -> target           (the edge table, single parent)
    _sources   target -> {source, ...}    (reverse index for enumeration)

    find_root(n):  n -> target(n) -> target(target(n)) -> ... -> root

Roots are never cached. A cached root would have to be invalidated across
the whole subtree below every changed edge, which costs more than the lazy
walk and adds a cache-coherency invariant. The only invariant maintained
here is acyclicity, checked on every insert by walking from the prospective
parent towards its root and failing if the walk meets the source.

Every walk is bounded by ``max_depth`` hops. Exceeding it raises
GraphCorrupted, which can only happen if the acyclicity invariant has been
broken by a defect elsewhere.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Dict, Iterator, List, Optional, Set, Tuple

from arbor.errors import AlreadyLinked, CycleDetected, GraphCorrupted, NotLinked, SelfLink
from arbor.registry import NodeRef


DEFAULT_MAX_DEPTH = 4096


class LinkGraph:
    """
    Parent-pointer forest with reverse adjacency.

    Example:
        graph = LinkGraph()
        graph.link(a, b)
        graph.find_root(a)     # b
        graph.link(b, a)       # raises CycleDetected
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        if max_depth <= 0:
            raise ValueError("max_depth must be positive")
        self.max_depth = max_depth
        self._targets: Dict[NodeRef, NodeRef] = {}
        self._sources: Dict[NodeRef, Set[NodeRef]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_target(self, node: NodeRef) -> Optional[NodeRef]:
        """Single-hop read of the node's parent."""
        with self._lock:
            return self._targets.get(node)

    def is_linked(self, node: NodeRef) -> bool:
        with self._lock:
            return node in self._targets

    def path_to_root(self, node: NodeRef) -> List[NodeRef]:
        """
        Nodes visited from ``node`` up to and including its root.

        Raises GraphCorrupted if the walk exceeds ``max_depth`` hops.
        """
        with self._lock:
            path = [node]
            current = node
            for _ in range(self.max_depth):
                parent = self._targets.get(current)
                if parent is None:
                    return path
                path.append(parent)
                current = parent
            if current not in self._targets:
                return path
            raise GraphCorrupted(
                f"Root walk from {node} exceeded {self.max_depth} hops",
                nodes=path,
                node=node,
            )

    def find_root(self, node: NodeRef) -> NodeRef:
        """Follow target edges until a node with no target is reached."""
        return self.path_to_root(node)[-1]

    def depth(self, node: NodeRef) -> int:
        """Number of edges between ``node`` and its root."""
        return len(self.path_to_root(node)) - 1

    def children(self, node: NodeRef) -> List[NodeRef]:
        """Direct sources linked to ``node``, in sorted order."""
        with self._lock:
            return sorted(self._sources.get(node, ()))

    def descendants(self, node: NodeRef) -> List[NodeRef]:
        """
        Every node whose root walk passes through ``node`` (breadth first).

        Bounded by the number of edges; a revisit means the reverse index
        contains a cycle and raises GraphCorrupted.
        """
        with self._lock:
            seen: Set[NodeRef] = {node}
            order: List[NodeRef] = []
            queue = deque([node])
            while queue:
                current = queue.popleft()
                for child in sorted(self._sources.get(current, ())):
                    if child in seen:
                        raise GraphCorrupted(
                            f"Node {child} reached twice below {node}",
                            nodes=order + [child],
                            node=node,
                        )
                    seen.add(child)
                    order.append(child)
                    queue.append(child)
            return order

    def would_create_cycle(self, source: NodeRef, target: NodeRef) -> bool:
        """True if making ``target`` the parent of ``source`` closes a cycle."""
        return source in self.path_to_root(target)

    def edges(self) -> Iterator[Tuple[NodeRef, NodeRef]]:
        """Iterate (source, target) pairs in sorted source order."""
        with self._lock:
            items = sorted(self._targets.items())
        return iter(items)

    def nodes(self) -> Set[NodeRef]:
        """Every node that is a source or a target of some edge."""
        with self._lock:
            return set(self._targets) | set(self._sources)

    def __len__(self) -> int:
        with self._lock:
            return len(self._targets)

    def __contains__(self, node: object) -> bool:
        with self._lock:
            return node in self._targets or node in self._sources

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _check_new_parent(self, source: NodeRef, target: NodeRef) -> None:
        if source == target:
            raise SelfLink(f"Cannot link {source} to itself", source=source)
        if self.would_create_cycle(source, target):
            raise CycleDetected(
                f"Linking {source} -> {target} would create a cycle",
                source=source,
                target=target,
            )

    def _attach(self, source: NodeRef, target: NodeRef) -> None:
        self._targets[source] = target
        self._sources.setdefault(target, set()).add(source)

    def _detach(self, source: NodeRef) -> NodeRef:
        target = self._targets.pop(source)
        siblings = self._sources.get(target)
        if siblings is not None:
            siblings.discard(source)
            if not siblings:
                del self._sources[target]
        return target

    def link(self, source: NodeRef, target: NodeRef) -> None:
        """Create the edge source -> target."""
        with self._lock:
            if source in self._targets:
                raise AlreadyLinked(
                    f"{source} is already linked to {self._targets[source]}",
                    source=source,
                    target=self._targets[source],
                )
            self._check_new_parent(source, target)
            self._attach(source, target)

    def update_target(self, source: NodeRef, new_target: NodeRef) -> NodeRef:
        """Replace the source's edge. Returns the previous target."""
        with self._lock:
            if source not in self._targets:
                raise NotLinked(f"{source} has no target to update", source=source)
            self._check_new_parent(source, new_target)
            old_target = self._detach(source)
            self._attach(source, new_target)
            return old_target

    def unlink(self, source: NodeRef) -> NodeRef:
        """Remove the source's edge. Returns the previous target."""
        with self._lock:
            if source not in self._targets:
                raise NotLinked(f"{source} has no target to unlink", source=source)
            return self._detach(source)

    def restore(self, source: NodeRef, target: Optional[NodeRef]) -> None:
        """
        Reinstate a previously valid edge (or its absence) without checks.

        Only for rolling back a failed operation and for loading persisted
        state; callers loading state must run check_invariants() afterwards.
        """
        with self._lock:
            if source in self._targets:
                self._detach(source)
            if target is not None:
                self._attach(source, target)

    def check_invariants(self) -> None:
        """
        Verify reverse-index coherence and acyclicity of the whole forest.

        Raises GraphCorrupted on the first violation found.
        """
        with self._lock:
            indexed = sum(len(s) for s in self._sources.values())
            if indexed != len(self._targets):
                raise GraphCorrupted(
                    f"Reverse index holds {indexed} edges, edge table {len(self._targets)}"
                )
            for target, sources in self._sources.items():
                for source in sources:
                    if self._targets.get(source) != target:
                        raise GraphCorrupted(
                            f"Reverse index lists {source} under {target}",
                            nodes=[source, target],
                        )

            # A node reached again on the current path is a cycle; depths of
            # finished nodes are memoised so each edge is walked once.
            depths: Dict[NodeRef, int] = {}
            for start in sorted(self._targets):
                path: List[NodeRef] = []
                on_path: Set[NodeRef] = set()
                current: Optional[NodeRef] = start
                while current is not None and current not in depths:
                    if current in on_path:
                        cycle = path[path.index(current):]
                        raise GraphCorrupted(
                            f"Cycle through {current} ({len(cycle)} nodes)",
                            nodes=cycle,
                        )
                    on_path.add(current)
                    path.append(current)
                    current = self._targets.get(current)
                depth = depths[current] + 1 if current is not None else 0
                for node in reversed(path):
                    depths[node] = depth
                    depth += 1
                if path and depths[path[0]] > self.max_depth:
                    raise GraphCorrupted(
                        f"Chain from {start} deeper than {self.max_depth}",
                        nodes=path,
                    )
