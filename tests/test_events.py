"""
Tests for composition events, the event bus and the event store.
"""

import pytest

from arbor.events import (
    ConcurrencyError,
    CountedAssetUnlinked,
    EventBus,
    EventStore,
    FungibleLinked,
    NonFungibleLinked,
    NonFungibleUnlinked,
    event_from_dict,
)


NODE = "0x" + "11" * 20 + ":1"
PARENT = "0x" + "11" * 20 + ":2"
USDC = "0x" + "22" * 20


def linked(**overrides):
    fields = dict(actor="0x" + "a1" * 20, source=NODE, target=PARENT)
    fields.update(overrides)
    return NonFungibleLinked(**fields)


class TestEvents:
    """Serialisation and stream routing."""

    def test_stream_ids(self):
        assert linked().stream_id == NODE
        assert FungibleLinked(currency=USDC, amount="1", target=NODE).stream_id == USDC
        counted = CountedAssetUnlinked(
            collection="0x" + "33" * 20, asset_id=7, amount="2", source=NODE, recipient="0x" + "b0" * 20,
        )
        assert counted.stream_id == "0x" + "33" * 20 + "#7"

    def test_dict_round_trip(self):
        event = linked(annotation="0xbeef")
        data = event.to_dict()
        assert data["event_type"] == "NonFungibleLinked"

        rebuilt = event_from_dict(data)
        assert rebuilt == event
        assert rebuilt.digest() == event.digest()

    def test_digest_tracks_content(self):
        event = linked()
        other = linked()
        other.event_id = event.event_id
        other.event_timestamp = event.event_timestamp
        assert other.digest() == event.digest()
        other.target = NODE
        assert other.digest() != event.digest()

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            event_from_dict({"event_type": "Teleported"})


class TestEventBus:
    """Synchronous dispatch with isolated handler failures."""

    def test_type_filtering_and_priority(self):
        bus = EventBus()
        calls = []

        @bus.subscribe(NonFungibleLinked, priority=1)
        def low(event):
            calls.append("low")

        @bus.subscribe(NonFungibleLinked, priority=5)
        def high(event):
            calls.append("high")

        @bus.subscribe(FungibleLinked)
        def other(event):
            calls.append("other")

        bus.publish(linked())
        assert calls == ["high", "low"]

    def test_filter_func(self):
        bus = EventBus()
        seen = []
        bus.subscribe(filter_func=lambda e: e.actor == "0x" + "b0" * 20)(seen.append)
        bus.publish(linked())
        bus.publish(linked(actor="0x" + "b0" * 20))
        assert len(seen) == 1

    def test_handler_error_is_isolated(self):
        errors = []
        bus = EventBus(on_error=errors.append)
        seen = []

        @bus.subscribe(priority=10)
        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe()(seen.append)
        bus.publish(linked())

        assert len(seen) == 1
        assert len(errors) == 1
        assert isinstance(errors[0].cause, RuntimeError)
        assert bus.metrics == {
            "published_count": 1,
            "handled_count": 1,
            "error_count": 1,
            "handler_count": 2,
        }

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        handler = bus.subscribe()(seen.append)
        assert bus.unsubscribe(handler)
        assert not bus.unsubscribe(handler)
        bus.publish(linked())
        assert seen == []


class TestEventStore:
    """Append-only streams with a global sequence."""

    def test_streams_and_sequence(self):
        store = EventStore()
        store.append(NODE, [linked()])
        store.append(USDC, [FungibleLinked(currency=USDC, amount="5", target=NODE)])
        records = store.append(NODE, [NonFungibleUnlinked(source=NODE, old_target=PARENT, recipient="0x" + "b0" * 20)])

        assert records[0].sequence_number == 3
        assert records[0].version == 2
        assert store.get_stream_version(NODE) == 2
        assert [type(e) for e in store.read_stream(NODE)] == [NonFungibleLinked, NonFungibleUnlinked]
        assert store.get_stream_ids() == [NODE, USDC]
        assert store.total_events == 3
        assert [r.sequence_number for r in store.read_all(from_position=1)] == [2, 3]

    def test_optimistic_concurrency(self):
        store = EventStore()
        store.append(NODE, [linked()], expected_version=0)
        with pytest.raises(ConcurrencyError):
            store.append(NODE, [linked()], expected_version=0)
        assert store.get_stream_version(NODE) == 1

    def test_unknown_stream_is_empty(self):
        assert EventStore().read_stream("nothing") == []
