"""
Tests for the link graph: single-parent forest with a bounded root walk.
"""

import random

import pytest

from arbor.errors import AlreadyLinked, CycleDetected, GraphCorrupted, NotLinked, SelfLink
from arbor.graph import LinkGraph
from arbor.registry import NodeRef


COLLECTION = "0x" + "11" * 20


def n(token_id: int) -> NodeRef:
    return NodeRef(COLLECTION, token_id)


class TestLinking:
    """Edge creation and the acyclicity check."""

    def test_link_and_root(self):
        graph = LinkGraph()
        graph.link(n(1), n(2))

        assert graph.get_target(n(1)) == n(2)
        assert graph.find_root(n(1)) == n(2)
        assert graph.find_root(n(2)) == n(2)
        assert graph.find_root(n(3)) == n(3)

    def test_reverse_link_is_cycle(self):
        graph = LinkGraph()
        graph.link(n(1), n(2))
        with pytest.raises(CycleDetected):
            graph.link(n(2), n(1))
        assert graph.get_target(n(2)) is None
        assert len(graph) == 1

    def test_long_cycle(self):
        graph = LinkGraph()
        for i in range(1, 10):
            graph.link(n(i), n(i + 1))
        with pytest.raises(CycleDetected):
            graph.link(n(10), n(1))

    def test_already_linked(self):
        graph = LinkGraph()
        graph.link(n(1), n(2))
        with pytest.raises(AlreadyLinked):
            graph.link(n(1), n(3))
        assert graph.get_target(n(1)) == n(2)

    def test_self_link(self):
        graph = LinkGraph()
        with pytest.raises(SelfLink):
            graph.link(n(1), n(1))

    def test_siblings_share_parent(self):
        graph = LinkGraph()
        graph.link(n(3), n(1))
        graph.link(n(2), n(1))
        assert graph.children(n(1)) == [n(2), n(3)]
        assert graph.would_create_cycle(n(2), n(3)) is False


class TestRetargeting:
    """update_target, unlink and restore keep the reverse index coherent."""

    def test_update_target(self):
        graph = LinkGraph()
        graph.link(n(1), n(2))
        old = graph.update_target(n(1), n(3))

        assert old == n(2)
        assert graph.children(n(2)) == []
        assert graph.children(n(3)) == [n(1)]
        graph.check_invariants()

    def test_update_into_subtree_is_cycle(self):
        graph = LinkGraph()
        graph.link(n(2), n(1))
        graph.link(n(3), n(2))
        with pytest.raises(CycleDetected):
            graph.update_target(n(2), n(3))
        assert graph.get_target(n(2)) == n(1)

    def test_update_requires_edge(self):
        with pytest.raises(NotLinked):
            LinkGraph().update_target(n(1), n(2))

    def test_unlink(self):
        graph = LinkGraph()
        graph.link(n(1), n(2))
        assert graph.unlink(n(1)) == n(2)
        assert not graph.is_linked(n(1))
        assert n(2) not in graph
        with pytest.raises(NotLinked):
            graph.unlink(n(1))

    def test_restore_round_trip(self):
        graph = LinkGraph()
        graph.link(n(1), n(2))
        graph.restore(n(1), n(3))
        assert graph.children(n(3)) == [n(1)]
        graph.restore(n(1), None)
        assert len(graph) == 0
        assert graph.nodes() == set()


class TestWalks:
    """Depth, paths and descendants."""

    def test_path_and_depth(self):
        graph = LinkGraph()
        graph.link(n(1), n(2))
        graph.link(n(2), n(3))
        assert graph.path_to_root(n(1)) == [n(1), n(2), n(3)]
        assert graph.depth(n(1)) == 2
        assert graph.depth(n(3)) == 0

    def test_descendants_breadth_first(self):
        graph = LinkGraph()
        graph.link(n(2), n(1))
        graph.link(n(3), n(1))
        graph.link(n(4), n(2))
        assert graph.descendants(n(1)) == [n(2), n(3), n(4)]

    def test_chain_at_bound_resolves(self):
        graph = LinkGraph(max_depth=5)
        for i in range(1, 6):
            graph.link(n(i), n(i + 1))
        assert graph.find_root(n(1)) == n(6)

    @pytest.mark.slow
    def test_default_bound_chain(self):
        graph = LinkGraph()
        for i in range(graph.max_depth):
            graph.link(n(i), n(i + 1))
        assert graph.find_root(n(0)) == n(graph.max_depth)
        graph.check_invariants()
        graph.restore(n(2 ** 200), n(0))
        with pytest.raises(GraphCorrupted):
            graph.find_root(n(2 ** 200))

    def test_edges_sorted(self):
        graph = LinkGraph()
        graph.link(n(5), n(1))
        graph.link(n(2), n(1))
        assert [s for s, _ in graph.edges()] == [n(2), n(5)]

    def test_invalid_bound(self):
        with pytest.raises(ValueError):
            LinkGraph(max_depth=0)


class TestCorruption:
    """A broken invariant is reported, never looped on."""

    def _cyclic(self) -> LinkGraph:
        graph = LinkGraph(max_depth=8)
        graph.link(n(1), n(2))
        graph.link(n(2), n(3))
        graph.restore(n(3), n(1))
        return graph

    def test_root_walk_overrun(self):
        graph = self._cyclic()
        with pytest.raises(GraphCorrupted) as excinfo:
            graph.find_root(n(1))
        assert set(excinfo.value.nodes) == {n(1), n(2), n(3)}

    def test_check_invariants_finds_cycle(self):
        graph = self._cyclic()
        with pytest.raises(GraphCorrupted) as excinfo:
            graph.check_invariants()
        assert len(excinfo.value.nodes) == 3

    def test_check_invariants_depth(self):
        graph = LinkGraph(max_depth=3)
        for i in range(1, 6):
            graph.restore(n(i), n(i + 1))
        with pytest.raises(GraphCorrupted):
            graph.check_invariants()

    def test_reverse_index_drift(self):
        graph = LinkGraph()
        graph.link(n(1), n(2))
        graph._sources[n(3)] = {n(1)}
        with pytest.raises(GraphCorrupted):
            graph.check_invariants()


class TestRandomSequences:
    """Mixed link, update_target and unlink sequences keep the forest well formed."""

    NODES = [n(i) for i in range(20)]

    @pytest.mark.parametrize("seed", range(10))
    def test_forest_invariants_hold(self, seed):
        rng = random.Random(seed)
        graph = LinkGraph()
        applied = 0

        for _ in range(300):
            op = rng.choice(("link", "link", "update", "unlink"))
            source, target = rng.choice(self.NODES), rng.choice(self.NODES)
            before = list(graph.edges())
            try:
                if op == "link":
                    graph.link(source, target)
                elif op == "update":
                    graph.update_target(source, target)
                else:
                    graph.unlink(source)
            except (AlreadyLinked, CycleDetected, NotLinked, SelfLink):
                assert list(graph.edges()) == before
            else:
                applied += 1

            graph.check_invariants()
            for node in self.NODES:
                root = graph.find_root(node)
                assert graph.get_target(root) is None
                assert len(graph.path_to_root(node)) <= len(self.NODES)
            assert all(graph.get_target(s) == t for s, t in graph.edges())

        assert applied > 0
