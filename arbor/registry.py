"""
ARBOR Node Registry

Identity layer of the composability graph. A node is a non-fungible token
identified by (collection address, token id); a resource key identifies a
fungible currency contract or a single asset id inside a counted-asset
collection. Both are immutable value objects usable as mapping keys.

The registry keeps no state of its own: existence is always delegated to the
non-fungible collaborator registered for the node's collection, because a
token can be burnt independently of this engine.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from arbor.custody import CollaboratorDirectory, CollaboratorError
from arbor.errors import NotFound, ValidationError
from arbor.hardening import Validators


class ResourceKind(Enum):
    """Kinds of resource that can participate in a composition."""
    NON_FUNGIBLE = "non_fungible"
    FUNGIBLE = "fungible"
    COUNTED_ASSET = "counted_asset"

    @property
    def is_attachment(self) -> bool:
        """Fungible and counted assets are ledger attachments, not graph nodes."""
        return self is not ResourceKind.NON_FUNGIBLE


@dataclass(frozen=True, order=True)
class NodeRef:
    """A graph node: one token of a non-fungible collection."""
    collection: str
    token_id: int

    @classmethod
    def of(cls, collection: Any, token_id: Any) -> "NodeRef":
        """Build a NodeRef from untrusted input, normalising the address."""
        address = Validators.validate_address(collection, "collection").unwrap()
        tid = Validators.validate_token_id(token_id).unwrap()
        return cls(address, tid)

    @classmethod
    def parse(cls, text: str) -> "NodeRef":
        """Parse the ``<collection>:<token_id>`` text form."""
        if not isinstance(text, str) or ":" not in text:
            raise ValidationError("node", "Expected '<collection>:<token_id>'", text)
        collection, _, token_id = text.rpartition(":")
        return cls.of(collection, token_id)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeRef":
        return cls.of(data.get("collection"), data.get("token_id"))

    def to_dict(self) -> Dict[str, Any]:
        return {"collection": self.collection, "token_id": self.token_id}

    def __str__(self) -> str:
        return f"{self.collection}:{self.token_id}"


@dataclass(frozen=True, order=True)
class ResourceKey:
    """
    Identifies a fungible or counted-asset resource.

    ``asset_id`` is None for fungible currencies and set for counted assets.
    """
    kind: str
    contract: str
    asset_id: Optional[int] = None

    @classmethod
    def currency(cls, contract: Any) -> "ResourceKey":
        address = Validators.validate_address(contract, "currency").unwrap()
        return cls(ResourceKind.FUNGIBLE.value, address)

    @classmethod
    def counted(cls, collection: Any, asset_id: Any) -> "ResourceKey":
        address = Validators.validate_address(collection, "collection").unwrap()
        aid = Validators.validate_token_id(asset_id, "asset_id").unwrap()
        return cls(ResourceKind.COUNTED_ASSET.value, address, aid)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceKey":
        kind = ResourceKind(data.get("kind"))
        if kind is ResourceKind.FUNGIBLE:
            return cls.currency(data.get("contract"))
        if kind is ResourceKind.COUNTED_ASSET:
            return cls.counted(data.get("contract"), data.get("asset_id"))
        raise ValidationError("kind", "Non-fungible resources are graph nodes, not attachments", data)

    @property
    def resource_kind(self) -> ResourceKind:
        return ResourceKind(self.kind)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "contract": self.contract, "asset_id": self.asset_id}

    def __str__(self) -> str:
        if self.asset_id is None:
            return self.contract
        return f"{self.contract}#{self.asset_id}"


class NodeRegistry:
    """
    Existence and holder lookups for graph nodes.

    Delegates to the non-fungible collaborator registered in the directory
    for the node's collection. Results are never cached.
    """

    def __init__(self, collaborators: CollaboratorDirectory):
        self._collaborators = collaborators

    def exists(self, node: NodeRef) -> bool:
        """True iff the collection is known and reports an owner for the token."""
        collection = self._collaborators.non_fungible(node.collection)
        if collection is None:
            return False
        try:
            collection.owner_of(node.token_id)
        except CollaboratorError:
            return False
        return True

    def require(self, node: NodeRef, role: str = "node") -> None:
        """Raise NotFound unless the node exists."""
        if not self.exists(node):
            raise NotFound(f"{role} {node} does not exist", node=node, role=role)

    def holder_of(self, node: NodeRef) -> str:
        """Address currently holding custody of the token."""
        collection = self._collaborators.non_fungible(node.collection)
        if collection is None:
            raise NotFound(f"No collaborator for collection {node.collection}", node=node)
        try:
            return collection.owner_of(node.token_id)
        except CollaboratorError as e:
            raise NotFound(f"node {node} does not exist", node=node) from e
