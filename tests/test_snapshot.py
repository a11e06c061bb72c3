"""
Tests for persisted state: export, schema validation, digest and load.
"""

import copy
from decimal import Decimal

import pytest

from arbor.errors import SnapshotError
from arbor.registry import ResourceKey
from arbor.snapshot import (
    STATE_FORMAT,
    canonicalize,
    export_state,
    load_state,
    read_state,
    state_digest,
    validate_state,
    write_state,
)


@pytest.fixture
def state(world):
    """State of a small composition: a -> b with currency and items attached."""
    a, b, _ = world.mint(world.alice, 1, 2, 3)
    world.fund(world.alice, "12.5")
    world.stock(world.alice, 7, 3)
    world.protocol.link_non_fungible(world.alice, a, b)
    world.protocol.link_fungible(world.alice, world.usdc.address, "12.5", a)
    world.protocol.link_counted_asset(world.alice, world.items.address, 7, 3, b)
    return export_state(world.protocol.graph, world.protocol.ledger, world.protocol.address)


def _reseal(state):
    state["digest"] = state_digest(state)
    return state


class TestCanonicalJson:
    def test_sorted_and_compact(self):
        assert canonicalize({"b": 1, "a": [Decimal("1.50"), None]}) == b'{"a":["1.50",null],"b":1}'

    def test_floats_rejected(self):
        with pytest.raises(ValueError):
            canonicalize({"amount": 1.5})


class TestExport:
    def test_layout(self, state, world):
        assert state["format"] == STATE_FORMAT
        assert state["protocol_address"] == world.protocol.address
        assert state["edges"] == [{"source": world.node(1).to_dict(), "target": world.node(2).to_dict()}]
        kinds = sorted((row["kind"], row["amount"]) for row in state["attachments"])
        assert kinds == [("counted_asset", "3"), ("fungible", "12.5")]
        assert validate_state(state) == []

    def test_digest_is_deterministic(self, state):
        assert state_digest(copy.deepcopy(state)) == state["digest"]


class TestLoad:
    def test_round_trip(self, state, world):
        loaded = load_state(state)

        assert loaded.protocol_address == world.protocol.address
        assert loaded.digest == state["digest"]
        assert loaded.graph.find_root(world.node(1)) == world.node(2)
        assert loaded.graph.children(world.node(2)) == [world.node(1)]
        usdc = ResourceKey.currency(world.usdc.address)
        assert loaded.ledger.balance_of(usdc, world.node(1)) == Decimal("12.5")
        assert export_state(loaded.graph, loaded.ledger, loaded.protocol_address) == state

    @pytest.mark.parametrize("suffix", [".json", ".yaml"])
    def test_files(self, state, tmp_path, suffix):
        path = write_state(tmp_path / "nested" / f"state{suffix}", state)
        assert read_state(path) == state
        assert load_state(read_state(path)).digest == state["digest"]

    def test_tampering_breaks_digest(self, state):
        state["attachments"][0]["amount"] = "999"
        with pytest.raises(SnapshotError) as excinfo:
            load_state(state)
        assert "digest" in excinfo.value.message
        load_state(state, verify_digest=False)

    def test_schema_errors_are_listed(self, state):
        state["format"] = "arbor.state/0"
        state["edges"][0]["source"]["token_id"] = -1
        del state["digest"]
        errors = validate_state(state)
        assert len(errors) == 3
        with pytest.raises(SnapshotError) as excinfo:
            load_state(state)
        assert excinfo.value.errors == errors

    def test_fungible_rows_have_no_asset_id(self, state):
        row = next(r for r in state["attachments"] if r["kind"] == "fungible")
        row["asset_id"] = 4
        assert validate_state(_reseal(state)) != []

    def test_cycle_is_rejected(self, state, world):
        state["edges"].append({"source": world.node(2).to_dict(), "target": world.node(1).to_dict()})
        with pytest.raises(SnapshotError) as excinfo:
            load_state(_reseal(state))
        assert any("Cycle" in e for e in excinfo.value.errors)

    def test_duplicate_rows_are_rejected(self, state, world):
        state["edges"].append({"source": world.node(1).to_dict(), "target": world.node(3).to_dict()})
        state["attachments"].append(copy.deepcopy(state["attachments"][0]))
        state["edges"].append({"source": world.node(3).to_dict(), "target": world.node(3).to_dict()})
        with pytest.raises(SnapshotError) as excinfo:
            load_state(_reseal(state))
        assert len(excinfo.value.errors) == 3

    def test_bounds_apply_on_load(self, state):
        with pytest.raises(SnapshotError):
            load_state(state, max_amount=Decimal("10"))

    def test_unreadable_files(self, tmp_path):
        with pytest.raises(SnapshotError):
            read_state(tmp_path / "missing.json")
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        with pytest.raises(SnapshotError):
            read_state(bad)
        listing = tmp_path / "list.yaml"
        listing.write_text("- 1\n")
        with pytest.raises(SnapshotError):
            read_state(listing)
