"""
ARBOR: Composability Graph Engine

A forest of non-fungible nodes that can be linked into tree-shaped
compositions, with fungible and counted-asset quantities attachable to any
node.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                        COMPOSABILITY GRAPH ENGINE                        │
    │                                                                          │
    │  ORCHESTRATION                                                          │
    │    protocol.py    Atomic link / update target / unlink, custody, events │
    │                                                                          │
    │  STATE                                                                  │
    │    graph.py       Parent pointers, reverse index, bounded root walk     │
    │    ledger.py      (resource, owner node) -> amount                      │
    │    registry.py    Node identity, existence via collaborators            │
    │                                                                          │
    │  SUPPORT                                                                │
    │    custody.py     Collaborator interfaces and in-memory collaborators   │
    │    events.py      Notifications, event bus, event store                 │
    │    snapshot.py    Persisted Edges / Attachments tables                  │
    │    config.py      YAML + environment configuration                      │
    │    observability.py  Structured logging and tracing                     │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    One Invariant: the edge relation is acyclic. Roots are derived by a
    bounded walk on every query and never cached.

    All or Nothing: every mutating operation completes in full or is
    compensated entirely, custody transfer included.

    Fail Loudly: every failure is a specific ArborError subclass with a
    stable code. Nothing is retried automatically.

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import ARBOR modules on first access."""

    if name in ("CompositionProtocol", "AuthorizationPolicy", "RootHolderPolicy",
                "PermissivePolicy", "ConservationEntry", "OperationJournal"):
        from arbor import protocol
        return getattr(protocol, name)

    if name in ("LinkGraph", "DEFAULT_MAX_DEPTH"):
        from arbor import graph
        return getattr(graph, name)

    if name in ("AttachmentLedger", "Attachment"):
        from arbor import ledger
        return getattr(ledger, name)

    if name in ("NodeRef", "ResourceKey", "ResourceKind", "NodeRegistry"):
        from arbor import registry
        return getattr(registry, name)

    if name in ("CollaboratorDirectory", "InMemoryNonFungibleCollection",
                "InMemoryFungibleToken", "InMemoryCountedAssetCollection",
                "NON_FUNGIBLE_RECEIVED", "COUNTED_ASSET_RECEIVED"):
        from arbor import custody
        return getattr(custody, name)

    if name in ("ArborError", "NotFound", "AlreadyLinked", "NotLinked", "SelfLink",
                "CycleDetected", "InvalidAmount", "Unauthorized",
                "CustodyTransferFailed", "GraphCorrupted", "ValidationError",
                "SnapshotError"):
        from arbor import errors
        return getattr(errors, name)

    if name in ("EventBus", "EventStore"):
        from arbor import events
        return getattr(events, name)

    if name in ("export_state", "load_state", "read_state", "write_state"):
        from arbor import snapshot
        return getattr(snapshot, name)

    if name in ("get_config", "get_config_manager"):
        from arbor import config
        return getattr(config, name)

    raise AttributeError(f"module 'arbor' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Protocol
    "CompositionProtocol",
    "AuthorizationPolicy",
    "RootHolderPolicy",
    "PermissivePolicy",
    "ConservationEntry",
    "OperationJournal",
    # State
    "LinkGraph",
    "DEFAULT_MAX_DEPTH",
    "AttachmentLedger",
    "Attachment",
    "NodeRef",
    "ResourceKey",
    "ResourceKind",
    "NodeRegistry",
    # Collaborators
    "CollaboratorDirectory",
    "InMemoryNonFungibleCollection",
    "InMemoryFungibleToken",
    "InMemoryCountedAssetCollection",
    "NON_FUNGIBLE_RECEIVED",
    "COUNTED_ASSET_RECEIVED",
    # Errors
    "ArborError",
    "NotFound",
    "AlreadyLinked",
    "NotLinked",
    "SelfLink",
    "CycleDetected",
    "InvalidAmount",
    "Unauthorized",
    "CustodyTransferFailed",
    "GraphCorrupted",
    "ValidationError",
    "SnapshotError",
    # Events
    "EventBus",
    "EventStore",
    # Snapshots
    "export_state",
    "load_state",
    "read_state",
    "write_state",
    # Config
    "get_config",
    "get_config_manager",
]
