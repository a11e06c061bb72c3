"""
ARBOR Error Taxonomy

Every failure surfaced by the composition engine is a subclass of ArborError
carrying a stable machine-readable ``code``. Callers branch on the class (or
the code) rather than on message text, so a UI can tell "already composed, use
update instead" apart from "would create a cycle" or "insufficient authority".

    ArborError
    ├── NotFound                 referenced node, edge or attachment missing
    ├── AlreadyLinked            link on a source that already has a target
    ├── NotLinked                update/unlink on a source without a target
    ├── SelfLink                 source equals target
    ├── CycleDetected            edge would close a cycle
    ├── InvalidAmount            non-positive or out-of-range quantity
    ├── Unauthorized             actor lacks authority over the subject
    ├── CustodyTransferFailed    collaborator transfer step failed
    ├── GraphCorrupted           root walk exceeded its bound (fatal)
    ├── ValidationError          malformed input (address, id, annotation)
    └── SnapshotError            malformed persisted state

None of these are retried automatically.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class ArborError(Exception):
    """Base class for all composition engine errors."""

    code = "arbor_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class NotFound(ArborError):
    """A node, edge or attachment referenced by the operation does not exist."""
    code = "not_found"


class AlreadyLinked(ArborError):
    """The source already has a target; use update_target to re-parent."""
    code = "already_linked"


class NotLinked(ArborError):
    """The source has no target; use link to create one."""
    code = "not_linked"


class SelfLink(ArborError):
    """Source and target are the same node."""
    code = "self_link"


class CycleDetected(ArborError):
    """Inserting the edge would create a directed cycle."""
    code = "cycle_detected"


class InvalidAmount(ArborError):
    """Quantity is non-positive, non-integral where required, or out of range."""
    code = "invalid_amount"


class Unauthorized(ArborError):
    """The acting caller lacks authority over the subject node."""
    code = "unauthorized"


class CustodyTransferFailed(ArborError):
    """The asset collaborator rejected or failed the custody transfer."""
    code = "custody_transfer_failed"


class GraphCorrupted(ArborError):
    """
    Root resolution exceeded its defensive bound.

    Signals a broken acyclicity invariant, not bad input. ``nodes`` lists the
    walk that overran so the affected subtree can be quarantined.
    """
    code = "graph_corrupted"

    def __init__(self, message: str, nodes: Optional[Sequence[Any]] = None, **details: Any):
        super().__init__(message, **details)
        self.nodes: List[Any] = list(nodes or [])


class ValidationError(ArborError):
    """Malformed input value."""
    code = "validation_error"

    def __init__(self, field: str, message: str, value: Any = None):
        super().__init__(f"{field}: {message}", field=field)
        self.field = field
        self.value = value


class SnapshotError(ArborError):
    """Persisted state failed schema, digest or structural checks."""
    code = "snapshot_invalid"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


ERROR_CODES: Dict[str, type] = {
    cls.code: cls
    for cls in (
        NotFound,
        AlreadyLinked,
        NotLinked,
        SelfLink,
        CycleDetected,
        InvalidAmount,
        Unauthorized,
        CustodyTransferFailed,
        GraphCorrupted,
        ValidationError,
        SnapshotError,
    )
}
