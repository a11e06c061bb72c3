"""
ARBOR Event Infrastructure

Notifications emitted by the Composition Protocol. Every successful mutating
operation produces exactly one event, published synchronously on the event
bus and appended to the event store.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────┐
    │                        EVENT INFRASTRUCTURE                          │
    │                                                                      │
    │  Composition Events        Event Bus            Event Store          │
    │  ├─ NonFungible*           ├─ Typed pub/sub     ├─ Append-only       │
    │  ├─ Fungible*              ├─ Priorities        ├─ Per-source streams│
    │  └─ CountedAsset*          └─ Filters           └─ Global sequence   │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Each family has Linked, TargetUpdated and Unlinked variants. Descriptors are
carried in their text form (``collection:token_id`` for nodes, the contract
address for currencies) so that events serialise without custom encoders.
Annotations are hex strings with a ``0x`` prefix.

Usage
─────

    bus = EventBus()

    @bus.subscribe(NonFungibleLinked)
    def on_link(event):
        print(event.source, "->", event.target)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for all events.

    Events are immutable facts. Each event has a unique ID, timestamp,
    and optional metadata.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        """Get the event type name."""
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """Serialize event to dictionary."""
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        """Deserialize event from dictionary."""
        data = data.copy()
        data.pop("event_type", None)
        return cls(**data)

    def to_json(self) -> str:
        """Serialize event to JSON for display/transport (not for digest computation)."""
        return json.dumps(self.to_dict(), default=str, sort_keys=True)

    def digest(self) -> str:
        """Deterministic SHA-256 of the canonical event content."""
        from arbor.snapshot import canonicalize
        return hashlib.sha256(canonicalize(self.to_dict())).hexdigest()


@dataclass
class CompositionEvent(Event):
    """Common fields of every composition notification."""
    actor: str = ""
    annotation: str = "0x"

    @property
    def stream_id(self) -> str:
        """Event store stream: the descriptor of the resource that moved."""
        raise NotImplementedError


# ════════════════════════════════════════════════════════════════════════════
# NON-FUNGIBLE EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class NonFungibleLinked(CompositionEvent):
    """A node was linked under a target node."""
    source: str = ""
    target: str = ""

    @property
    def stream_id(self) -> str:
        return self.source


@dataclass
class NonFungibleTargetUpdated(CompositionEvent):
    """A linked node was moved to a new target."""
    source: str = ""
    old_target: str = ""
    new_target: str = ""

    @property
    def stream_id(self) -> str:
        return self.source


@dataclass
class NonFungibleUnlinked(CompositionEvent):
    """A node was detached and released to a recipient."""
    source: str = ""
    old_target: str = ""
    recipient: str = ""

    @property
    def stream_id(self) -> str:
        return self.source


# ════════════════════════════════════════════════════════════════════════════
# FUNGIBLE EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class FungibleLinked(CompositionEvent):
    """Currency units were attached to a node."""
    currency: str = ""
    amount: str = "0"
    target: str = ""

    @property
    def stream_id(self) -> str:
        return self.currency


@dataclass
class FungibleTargetUpdated(CompositionEvent):
    """A node's whole currency balance moved to another node."""
    currency: str = ""
    amount: str = "0"
    source: str = ""
    new_target: str = ""

    @property
    def stream_id(self) -> str:
        return self.currency


@dataclass
class FungibleUnlinked(CompositionEvent):
    """A node's whole currency balance was released to a recipient."""
    currency: str = ""
    amount: str = "0"
    source: str = ""
    recipient: str = ""

    @property
    def stream_id(self) -> str:
        return self.currency


# ════════════════════════════════════════════════════════════════════════════
# COUNTED-ASSET EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class CountedAssetLinked(CompositionEvent):
    """Counted-asset units were attached to a node."""
    collection: str = ""
    asset_id: int = 0
    amount: str = "0"
    target: str = ""

    @property
    def stream_id(self) -> str:
        return f"{self.collection}#{self.asset_id}"


@dataclass
class CountedAssetTargetUpdated(CompositionEvent):
    """A node's whole counted-asset balance moved to another node."""
    collection: str = ""
    asset_id: int = 0
    amount: str = "0"
    source: str = ""
    new_target: str = ""

    @property
    def stream_id(self) -> str:
        return f"{self.collection}#{self.asset_id}"


@dataclass
class CountedAssetUnlinked(CompositionEvent):
    """A node's whole counted-asset balance was released to a recipient."""
    collection: str = ""
    asset_id: int = 0
    amount: str = "0"
    source: str = ""
    recipient: str = ""

    @property
    def stream_id(self) -> str:
        return f"{self.collection}#{self.asset_id}"


EVENT_TYPES: Dict[str, Type[CompositionEvent]] = {
    cls.__name__: cls
    for cls in (
        NonFungibleLinked,
        NonFungibleTargetUpdated,
        NonFungibleUnlinked,
        FungibleLinked,
        FungibleTargetUpdated,
        FungibleUnlinked,
        CountedAssetLinked,
        CountedAssetTargetUpdated,
        CountedAssetUnlinked,
    )
}


def event_from_dict(data: Dict[str, Any]) -> CompositionEvent:
    """Rebuild a composition event from its ``to_dict`` form."""
    event_type = data.get("event_type")
    cls = EVENT_TYPES.get(event_type)  # type: ignore[arg-type]
    if cls is None:
        raise ValueError(f"Unknown event type: {event_type!r}")
    return cls.from_dict(data)  # type: ignore[return-value]


# ════════════════════════════════════════════════════════════════════════════
# EVENT HANDLER
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    """Registration for an event handler."""
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0
    filter_func: Optional[Callable[[Event], bool]] = None


class EventHandlerError(Exception):
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


def _log_handler_error(error: EventHandlerError) -> None:
    logger.warning("%s", error)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


class EventBus:
    """
    In-memory synchronous event bus.

    Handlers run in priority order on the publishing thread. A failing
    handler never affects the publisher or other handlers; its error is
    passed to ``on_error`` (logged by default).

    Example:
        bus = EventBus()

        @bus.subscribe(FungibleLinked, FungibleUnlinked)
        def handle_currency(event):
            print(event.event_type, event.amount)
    """

    def __init__(self, on_error: Optional[Callable[[EventHandlerError], None]] = None):
        self._handlers: List[EventHandlerRegistration] = []
        self._lock = threading.RLock()
        self._on_error = on_error or _log_handler_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to subscribe a handler to event types.

        Args:
            event_types: Event types to subscribe to (all events if omitted)
            priority: Handler priority (higher = earlier)
            filter_func: Optional filter function
        """
        def decorator(handler: EventHandler) -> EventHandler:
            registration = EventHandlerRegistration(
                handler=handler,
                event_types=set(event_types) if event_types else {Event},
                priority=priority,
                filter_func=filter_func,
            )
            with self._lock:
                self._handlers.append(registration)
                self._handlers.sort(key=lambda r: -r.priority)
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        """Unsubscribe a handler."""
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers."""
        with self._lock:
            self._published_count += 1
            handlers_to_call = [
                registration
                for registration in self._handlers
                if any(isinstance(event, t) for t in registration.event_types)
                and (registration.filter_func is None or registration.filter_func(event))
            ]

        # Call handlers (outside lock)
        for registration in handlers_to_call:
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        """Call a handler with error handling."""
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            self._on_error(EventHandlerError(event, handler, e))

    @property
    def metrics(self) -> Dict[str, int]:
        """Get event bus metrics."""
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }


# ════════════════════════════════════════════════════════════════════════════
# EVENT STORE
# ════════════════════════════════════════════════════════════════════════════


class ConcurrencyError(Exception):
    """Optimistic concurrency violation."""
    def __init__(self, stream_id: str, expected: int, actual: int):
        self.stream_id = stream_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Concurrency error for stream '{stream_id}': "
            f"expected version {expected}, actual {actual}"
        )


@dataclass
class EventRecord:
    """A persisted event record."""
    sequence_number: int
    event: Event
    stream_id: str
    version: int
    recorded_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "sequence_number": self.sequence_number,
            "event": self.event.to_dict(),
            "stream_id": self.stream_id,
            "version": self.version,
            "recorded_at": self.recorded_at,
        }


class EventStore:
    """
    Append-only event store.

    Events are organized into streams keyed by the descriptor of the
    resource they concern, with a global sequence across streams.

    Example:
        store = EventStore()
        store.append(str(node), [NonFungibleLinked(source=str(node), ...)])
        store.read_stream(str(node))
    """

    def __init__(self):
        self._events: List[EventRecord] = []
        self._streams: Dict[str, List[EventRecord]] = {}
        self._sequence_number = 0
        self._lock = threading.RLock()

    def append(
        self,
        stream_id: str,
        events: List[Event],
        expected_version: Optional[int] = None,
    ) -> List[EventRecord]:
        """
        Append events to a stream.

        Raises:
            ConcurrencyError: If expected_version doesn't match
        """
        with self._lock:
            stream = self._streams.setdefault(stream_id, [])
            current_version = len(stream)

            if expected_version is not None and expected_version != current_version:
                raise ConcurrencyError(stream_id, expected_version, current_version)

            records = []
            for event in events:
                self._sequence_number += 1
                current_version += 1
                record = EventRecord(
                    sequence_number=self._sequence_number,
                    event=event,
                    stream_id=stream_id,
                    version=current_version,
                )
                self._events.append(record)
                stream.append(record)
                records.append(record)

            return records

    def read_stream(
        self,
        stream_id: str,
        from_version: int = 0,
        to_version: Optional[int] = None,
    ) -> List[Event]:
        """Read events from a stream."""
        with self._lock:
            stream = self._streams.get(stream_id, [])
            end = len(stream) if to_version is None else to_version
            return [r.event for r in stream[from_version:end]]

    def read_all(
        self,
        from_position: int = 0,
        max_count: int = 1000,
    ) -> List[EventRecord]:
        """Read events from all streams."""
        with self._lock:
            return self._events[from_position:from_position + max_count]

    def get_stream_version(self, stream_id: str) -> int:
        """Get current version of a stream."""
        with self._lock:
            return len(self._streams.get(stream_id, []))

    def get_stream_ids(self) -> List[str]:
        """Get all stream IDs."""
        with self._lock:
            return list(self._streams.keys())

    @property
    def total_events(self) -> int:
        """Total number of events."""
        with self._lock:
            return len(self._events)
