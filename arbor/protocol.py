"""
ARBOR Composition Protocol

Orchestration layer of the composability graph. Every mutating call is one
atomic unit of work sequenced as

    validate -> mutate ledger -> mutate graph -> custody transfer -> emit

and either completes in full or leaves no trace.

Atomicity
─────────

    ┌─────────────────────────────────────────────────────────────────────┐
    │  with self._operation("link_fungible") as journal:                  │
    │      ledger.deposit(...)      journal.record(undo: ledger.withdraw) │
    │      graph.link(...)          journal.record(undo: graph.restore)   │
    │      collaborator.transfer    (raises -> CustodyTransferFailed)     │
    │      emit(event)                                                     │
    │                                                                      │
    │  any exception: journal.compensate() replays undos in reverse,      │
    │  then the error propagates to the caller unchanged                   │
    └─────────────────────────────────────────────────────────────────────┘

Operations are serialised behind one re-entrant lock; queries never mutate
graph or ledger state.

Authority
─────────

Who may operate on a subtree is decided by an AuthorizationPolicy. The
default RootHolderPolicy resolves the subject's root and accepts the holder
of that root, or an operator the holder approved on the root's collection.

Custody
───────

    escrow   linking a non-fungible node pulls it into the protocol address,
             unlinking sends it to the recipient
    none     non-fungible custody is left with the holder

Fungible and counted assets always move custody: pulled from the actor on
link, pushed to the recipient on unlink, untouched on target updates (the
recorded ledger amount is trusted).

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from arbor.config import ArborConfig, get_config
from arbor.custody import (
    COUNTED_ASSET_RECEIVED,
    NON_FUNGIBLE_RECEIVED,
    CollaboratorDirectory,
)
from arbor.errors import (
    ArborError,
    CustodyTransferFailed,
    GraphCorrupted,
    NotFound,
    NotLinked,
    SelfLink,
    Unauthorized,
    ValidationError,
)
from arbor.events import (
    CompositionEvent,
    CountedAssetLinked,
    CountedAssetTargetUpdated,
    CountedAssetUnlinked,
    Event,
    EventBus,
    EventStore,
    FungibleLinked,
    FungibleTargetUpdated,
    FungibleUnlinked,
    NonFungibleLinked,
    NonFungibleTargetUpdated,
    NonFungibleUnlinked,
)
from arbor.graph import LinkGraph
from arbor.hardening import Validators, coerce_amount
from arbor.ledger import Attachment, AttachmentLedger
from arbor.observability import Tracer, get_correlation_id, get_logger
from arbor.registry import NodeRef, NodeRegistry, ResourceKey


REJECTED = bytes(4)


# =============================================================================
# OPERATION JOURNAL
# =============================================================================

@dataclass
class CompensationRecord:
    """Outcome of one undo step replayed by the journal."""
    action: str
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "success": self.success, "error": self.error}


class OperationJournal:
    """
    Undo log for one protocol operation.

    Every state mutation registers its inverse. On failure the inverses are
    replayed newest first; each step is attempted even if an earlier one
    fails, and every outcome is kept in ``compensations``.
    """

    def __init__(self, operation: str):
        self.operation = operation
        self._undo: List[Tuple[str, Callable[[], Any]]] = []
        self.compensations: List[CompensationRecord] = []

    def record(self, action: str, undo: Callable[[], Any]) -> None:
        self._undo.append((action, undo))

    def __len__(self) -> int:
        return len(self._undo)

    def compensate(self) -> List[CompensationRecord]:
        while self._undo:
            action, undo = self._undo.pop()
            try:
                undo()
                self.compensations.append(CompensationRecord(action, True))
            except Exception as e:
                self.compensations.append(CompensationRecord(action, False, str(e)))
        return self.compensations


# =============================================================================
# AUTHORIZATION
# =============================================================================

class AuthorizationPolicy:
    """Decides whether an actor may operate on the subtree of a node."""

    def authorize(
        self,
        protocol: "CompositionProtocol",
        actor: str,
        subject: NodeRef,
        operation: str,
    ) -> None:
        """Raise Unauthorized to refuse."""
        raise NotImplementedError


class PermissivePolicy(AuthorizationPolicy):
    """Allows every actor. For deployments that authorise upstream."""

    def authorize(self, protocol, actor, subject, operation) -> None:
        return None


class RootHolderPolicy(AuthorizationPolicy):
    """Only the holder of the subject's root, or its approved operator."""

    def authorize(self, protocol, actor, subject, operation) -> None:
        root = protocol.find_root_token(subject)
        holder = protocol.registry.holder_of(root)
        if actor == holder:
            return
        collection = protocol.directory.non_fungible(root.collection)
        if collection is not None and collection.is_approved(holder, actor):
            return
        raise Unauthorized(
            f"{actor} may not {operation} below {root}",
            actor=actor,
            subject=subject,
            root=root,
        )


# =============================================================================
# CONSERVATION
# =============================================================================

@dataclass(frozen=True)
class ConservationEntry:
    """Ledger total for one resource against the custody the collaborator reports."""
    key: ResourceKey
    recorded: Decimal
    held: Decimal

    @property
    def conserved(self) -> bool:
        return self.recorded <= self.held

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.key.to_dict(),
            "recorded": str(self.recorded),
            "held": str(self.held),
            "conserved": self.conserved,
        }


# =============================================================================
# COMPOSITION PROTOCOL
# =============================================================================

class CompositionProtocol:
    """
    Link, retarget and unlink nodes and attachments atomically.

    Example:
        protocol = CompositionProtocol(directory, address="0x" + "cc" * 20)
        protocol.link_non_fungible(alice, a, b, b"")
        protocol.find_root_token(a)        # b
        protocol.link_fungible(alice, usdc, 100, a, b"")
        protocol.balance_of_fungible(a, usdc)   # Decimal("100")
    """

    def __init__(
        self,
        directory: CollaboratorDirectory,
        address: str,
        graph: Optional[LinkGraph] = None,
        ledger: Optional[AttachmentLedger] = None,
        event_bus: Optional[EventBus] = None,
        event_store: Optional[EventStore] = None,
        policy: Optional[AuthorizationPolicy] = None,
        config: Optional[ArborConfig] = None,
    ):
        self.config = config or get_config()
        self.address: str = Validators.validate_address(address, "address").unwrap()
        self.directory = directory
        self.registry = NodeRegistry(directory)
        self.graph = graph or LinkGraph(max_depth=self.config.graph.max_depth.get())
        self.ledger = ledger or AttachmentLedger(max_amount=self.config.ledger.max_amount.get())
        self.event_bus = event_bus or EventBus()
        self.event_store = event_store or EventStore()
        if policy is None:
            enforce = self.config.protocol.enforce_authorization.get()
            policy = RootHolderPolicy() if enforce else PermissivePolicy()
        self.policy = policy

        self._lock = threading.RLock()
        self._quarantined: Set[NodeRef] = set()
        self._inbound: Optional[Tuple[Any, ...]] = None
        self._log = get_logger("protocol")
        self._tracer = Tracer(self._log)

        directory.register_receiver(self.address, self)

    # ------------------------------------------------------------------
    # Input normalisation
    # ------------------------------------------------------------------

    @staticmethod
    def _node(value: Any, field_name: str) -> NodeRef:
        if isinstance(value, NodeRef):
            return value
        if isinstance(value, str):
            return NodeRef.parse(value)
        raise ValidationError(field_name, f"Expected NodeRef, got {type(value).__name__}", value)

    @staticmethod
    def _address(value: Any, field_name: str) -> str:
        return Validators.validate_address(value, field_name).unwrap()

    def _recipient(self, value: Any) -> str:
        recipient = self._address(value, "recipient")
        if recipient == self.address:
            raise ValidationError("recipient", "Cannot release custody to the protocol itself", value)
        return recipient

    def _annotation(self, value: Any) -> str:
        if value is None:
            value = b""
        data = Validators.validate_bytes(
            value,
            "annotation",
            max_length=self.config.protocol.max_annotation_bytes.get(),
        ).unwrap()
        return "0x" + data.hex()

    def _amount(self, value: Any, integral: bool = False) -> Decimal:
        return coerce_amount(value, max_value=self.ledger.max_amount, integral=integral)

    def _escrow(self) -> bool:
        return self.config.protocol.custody_mode.get() == "escrow"

    # ------------------------------------------------------------------
    # Operation plumbing
    # ------------------------------------------------------------------

    def _guard(self, *nodes: NodeRef) -> None:
        """Refuse to mutate around nodes isolated after a corruption report."""
        for node in nodes:
            if node in self._quarantined:
                raise GraphCorrupted(
                    f"{node} is quarantined pending investigation",
                    node=node,
                )

    def _quarantine(self, nodes: List[Any]) -> None:
        fresh = [n for n in nodes if isinstance(n, NodeRef) and n not in self._quarantined]
        self._quarantined.update(fresh)
        if fresh:
            self._log.critical(
                "Quarantined nodes after graph corruption",
                error_code=GraphCorrupted.code,
                nodes=[str(n) for n in fresh],
            )

    @contextmanager
    def _operation(self, name: str, **attributes: Any) -> Iterator[OperationJournal]:
        tracing = self.config.observability.enable_tracing.get()
        journal = OperationJournal(name)
        start = time.monotonic()
        with self._lock:
            span = (
                self._tracer.span(f"protocol.{name}", **attributes)
                if tracing else nullcontext()
            )
            with span:
                try:
                    yield journal
                except Exception as e:
                    undone = len(journal)
                    failed = [c for c in journal.compensate() if not c.success]
                    duration_ms = (time.monotonic() - start) * 1000
                    if failed:
                        self._log.critical(
                            f"Compensation incomplete for {name}",
                            error_code="compensation_failed",
                            failures=[c.to_dict() for c in failed],
                        )
                    if isinstance(e, GraphCorrupted):
                        self._quarantine(e.nodes)
                    if isinstance(e, ArborError):
                        self._log.operation(
                            name,
                            duration_ms,
                            error=e,
                            compensated=undone,
                            **attributes,
                        )
                    else:
                        self._log.error(
                            f"Operation {name} failed unexpectedly",
                            error_code="internal_error",
                            exc_info=True,
                            compensated=undone,
                            **attributes,
                        )
                    raise
                else:
                    self._log.operation(name, (time.monotonic() - start) * 1000, **attributes)

    def _transfer(
        self,
        description: str,
        expected: Optional[Tuple[Any, ...]],
        transfer: Callable[..., Any],
        *args: Any,
    ) -> None:
        """Run one collaborator transfer, arming the receiver for it."""
        self._inbound = expected
        try:
            transfer(*args)
        except ArborError:
            raise
        except Exception as e:
            raise CustodyTransferFailed(f"{description}: {e}", step=description) from e
        finally:
            self._inbound = None

    def _emit(self, event: CompositionEvent) -> None:
        event.correlation_id = get_correlation_id()
        self.event_store.append(event.stream_id, [event])
        self.event_bus.publish(event)

    def _authorize(self, actor: str, subject: NodeRef, operation: str) -> None:
        self.policy.authorize(self, actor, subject, operation)

    def _fungible_key(self, currency: Any) -> ResourceKey:
        key = ResourceKey.currency(currency)
        if self.directory.fungible(key.contract) is None:
            raise NotFound(f"Unknown currency {key.contract}", currency=key.contract)
        return key

    def _counted_key(self, collection: Any, asset_id: Any) -> ResourceKey:
        key = ResourceKey.counted(collection, asset_id)
        if self.directory.counted_asset(key.contract) is None:
            raise NotFound(f"Unknown counted-asset collection {key.contract}", collection=key.contract)
        return key

    # ------------------------------------------------------------------
    # Non-fungible family
    # ------------------------------------------------------------------

    def link_non_fungible(self, actor: str, source: Any, target: Any, annotation: Any = b"") -> NonFungibleLinked:
        """Make ``target`` the parent of ``source``."""
        actor = self._address(actor, "actor")
        source = self._node(source, "source")
        target = self._node(target, "target")
        note = self._annotation(annotation)

        with self._operation("link_non_fungible", source=str(source), target=str(target)) as journal:
            self._guard(source, target)
            self.registry.require(source, "source")
            self.registry.require(target, "target")
            self._authorize(actor, source, "link")

            self.graph.link(source, target)
            journal.record("graph.unlink", lambda: self.graph.restore(source, None))

            if self._escrow():
                collection = self.directory.non_fungible(source.collection)
                if collection is None:
                    raise NotFound(f"No collaborator for collection {source.collection}", node=source)
                holder = self.registry.holder_of(source)
                self._transfer(
                    "escrow source",
                    ("non_fungible", source.token_id),
                    collection.transfer_from,
                    self.address, holder, self.address, source.token_id, bytes.fromhex(note[2:]),
                )

            event = NonFungibleLinked(actor=actor, annotation=note, source=str(source), target=str(target))
            self._emit(event)
            return event

    def update_non_fungible_target(
        self,
        actor: str,
        source: Any,
        new_target: Any,
        annotation: Any = b"",
    ) -> NonFungibleTargetUpdated:
        """Re-parent an already linked node."""
        actor = self._address(actor, "actor")
        source = self._node(source, "source")
        new_target = self._node(new_target, "new_target")
        note = self._annotation(annotation)

        with self._operation(
            "update_non_fungible_target", source=str(source), target=str(new_target),
        ) as journal:
            self._guard(source, new_target)
            if not self.graph.is_linked(source):
                raise NotLinked(f"{source} has no target to update", source=source)
            self.registry.require(new_target, "new_target")
            self._authorize(actor, source, "update target")

            old_target = self.graph.update_target(source, new_target)
            journal.record("graph.update_target", lambda: self.graph.restore(source, old_target))

            event = NonFungibleTargetUpdated(
                actor=actor,
                annotation=note,
                source=str(source),
                old_target=str(old_target),
                new_target=str(new_target),
            )
            self._emit(event)
            return event

    def unlink_non_fungible(
        self,
        actor: str,
        recipient: str,
        source: Any,
        annotation: Any = b"",
    ) -> NonFungibleUnlinked:
        """Detach ``source`` from its target, releasing custody to ``recipient``."""
        actor = self._address(actor, "actor")
        recipient = self._recipient(recipient)
        source = self._node(source, "source")
        note = self._annotation(annotation)

        with self._operation("unlink_non_fungible", source=str(source), recipient=recipient) as journal:
            self._guard(source)
            if not self.graph.is_linked(source):
                raise NotLinked(f"{source} has no target to unlink", source=source)
            self._authorize(actor, source, "unlink")

            old_target = self.graph.unlink(source)
            journal.record("graph.unlink", lambda: self.graph.restore(source, old_target))

            if self._escrow():
                collection = self.directory.non_fungible(source.collection)
                if collection is None:
                    raise NotFound(f"No collaborator for collection {source.collection}", node=source)
                self._transfer(
                    "release source",
                    None,
                    collection.transfer_from,
                    self.address, self.address, recipient, source.token_id, bytes.fromhex(note[2:]),
                )

            event = NonFungibleUnlinked(
                actor=actor,
                annotation=note,
                source=str(source),
                old_target=str(old_target),
                recipient=recipient,
            )
            self._emit(event)
            return event

    # ------------------------------------------------------------------
    # Fungible family
    # ------------------------------------------------------------------

    def link_fungible(
        self,
        actor: str,
        currency: str,
        amount: Any,
        target: Any,
        annotation: Any = b"",
    ) -> FungibleLinked:
        """Attach ``amount`` units of ``currency`` (pulled from the actor) to ``target``."""
        actor = self._address(actor, "actor")
        key = self._fungible_key(currency)
        value = self._amount(amount)
        target = self._node(target, "target")
        note = self._annotation(annotation)

        with self._operation("link_fungible", resource=str(key), amount=str(value), target=str(target)) as journal:
            self._guard(target)
            self.registry.require(target, "target")

            self.ledger.deposit(key, target, value)
            journal.record("ledger.deposit", lambda: self.ledger.withdraw(key, target, value))

            token = self.directory.fungible(key.contract)
            self._transfer(
                "pull currency",
                None,
                token.transfer_from,
                self.address, actor, self.address, value,
            )

            event = FungibleLinked(
                actor=actor, annotation=note, currency=key.contract, amount=str(value), target=str(target),
            )
            self._emit(event)
            return event

    def update_fungible_target(
        self,
        actor: str,
        currency: str,
        source: Any,
        new_target: Any,
        annotation: Any = b"",
    ) -> FungibleTargetUpdated:
        """Move the whole ``currency`` balance of ``source`` onto ``new_target``."""
        actor = self._address(actor, "actor")
        key = self._fungible_key(currency)
        source = self._node(source, "source")
        new_target = self._node(new_target, "new_target")
        note = self._annotation(annotation)

        with self._operation(
            "update_fungible_target", resource=str(key), source=str(source), target=str(new_target),
        ) as journal:
            amount = self._move_attachment(journal, actor, key, source, new_target)
            event = FungibleTargetUpdated(
                actor=actor,
                annotation=note,
                currency=key.contract,
                amount=str(amount),
                source=str(source),
                new_target=str(new_target),
            )
            self._emit(event)
            return event

    def unlink_fungible(
        self,
        actor: str,
        recipient: str,
        currency: str,
        source: Any,
        annotation: Any = b"",
    ) -> FungibleUnlinked:
        """Release the whole ``currency`` balance of ``source`` to ``recipient``."""
        actor = self._address(actor, "actor")
        recipient = self._recipient(recipient)
        key = self._fungible_key(currency)
        source = self._node(source, "source")
        note = self._annotation(annotation)

        with self._operation(
            "unlink_fungible", resource=str(key), source=str(source), recipient=recipient,
        ) as journal:
            amount = self._release_attachment(journal, actor, key, source)

            token = self.directory.fungible(key.contract)
            self._transfer(
                "release currency",
                None,
                token.transfer_from,
                self.address, self.address, recipient, amount,
            )

            event = FungibleUnlinked(
                actor=actor,
                annotation=note,
                currency=key.contract,
                amount=str(amount),
                source=str(source),
                recipient=recipient,
            )
            self._emit(event)
            return event

    # ------------------------------------------------------------------
    # Counted-asset family
    # ------------------------------------------------------------------

    def link_counted_asset(
        self,
        actor: str,
        collection: str,
        asset_id: Any,
        amount: Any,
        target: Any,
        annotation: Any = b"",
    ) -> CountedAssetLinked:
        """Attach ``amount`` units of one counted asset (pulled from the actor) to ``target``."""
        actor = self._address(actor, "actor")
        key = self._counted_key(collection, asset_id)
        value = self._amount(amount, integral=True)
        target = self._node(target, "target")
        note = self._annotation(annotation)

        with self._operation(
            "link_counted_asset", resource=str(key), amount=str(value), target=str(target),
        ) as journal:
            self._guard(target)
            self.registry.require(target, "target")

            self.ledger.deposit(key, target, value)
            journal.record("ledger.deposit", lambda: self.ledger.withdraw(key, target, value))

            assets = self.directory.counted_asset(key.contract)
            self._transfer(
                "pull counted asset",
                ("counted_asset", key.asset_id, value),
                assets.safe_transfer_from,
                self.address, actor, self.address, key.asset_id, value, bytes.fromhex(note[2:]),
            )

            event = CountedAssetLinked(
                actor=actor,
                annotation=note,
                collection=key.contract,
                asset_id=key.asset_id,
                amount=str(value),
                target=str(target),
            )
            self._emit(event)
            return event

    def update_counted_asset_target(
        self,
        actor: str,
        collection: str,
        asset_id: Any,
        source: Any,
        new_target: Any,
        annotation: Any = b"",
    ) -> CountedAssetTargetUpdated:
        """Move the whole balance of one counted asset from ``source`` to ``new_target``."""
        actor = self._address(actor, "actor")
        key = self._counted_key(collection, asset_id)
        source = self._node(source, "source")
        new_target = self._node(new_target, "new_target")
        note = self._annotation(annotation)

        with self._operation(
            "update_counted_asset_target", resource=str(key), source=str(source), target=str(new_target),
        ) as journal:
            amount = self._move_attachment(journal, actor, key, source, new_target)
            event = CountedAssetTargetUpdated(
                actor=actor,
                annotation=note,
                collection=key.contract,
                asset_id=key.asset_id,
                amount=str(amount),
                source=str(source),
                new_target=str(new_target),
            )
            self._emit(event)
            return event

    def unlink_counted_asset(
        self,
        actor: str,
        recipient: str,
        collection: str,
        asset_id: Any,
        source: Any,
        annotation: Any = b"",
    ) -> CountedAssetUnlinked:
        """Release the whole balance of one counted asset held by ``source`` to ``recipient``."""
        actor = self._address(actor, "actor")
        recipient = self._recipient(recipient)
        key = self._counted_key(collection, asset_id)
        source = self._node(source, "source")
        note = self._annotation(annotation)

        with self._operation(
            "unlink_counted_asset", resource=str(key), source=str(source), recipient=recipient,
        ) as journal:
            amount = self._release_attachment(journal, actor, key, source)

            assets = self.directory.counted_asset(key.contract)
            self._transfer(
                "release counted asset",
                None,
                assets.safe_transfer_from,
                self.address, self.address, recipient, key.asset_id, amount, bytes.fromhex(note[2:]),
            )

            event = CountedAssetUnlinked(
                actor=actor,
                annotation=note,
                collection=key.contract,
                asset_id=key.asset_id,
                amount=str(amount),
                source=str(source),
                recipient=recipient,
            )
            self._emit(event)
            return event

    # ------------------------------------------------------------------
    # Shared attachment steps
    # ------------------------------------------------------------------

    def _move_attachment(
        self,
        journal: OperationJournal,
        actor: str,
        key: ResourceKey,
        source: NodeRef,
        new_target: NodeRef,
    ) -> Decimal:
        self._guard(source, new_target)
        if source == new_target:
            raise SelfLink(f"{key} is already attached to {source}", source=source)
        self.registry.require(new_target, "new_target")
        self._authorize(actor, source, "move attachments of")

        amount = self.ledger.withdraw_all(key, source)
        journal.record("ledger.withdraw_all", lambda: self.ledger.deposit(key, source, amount))
        self.ledger.deposit(key, new_target, amount)
        journal.record("ledger.deposit", lambda: self.ledger.withdraw(key, new_target, amount))
        return amount

    def _release_attachment(
        self,
        journal: OperationJournal,
        actor: str,
        key: ResourceKey,
        source: NodeRef,
    ) -> Decimal:
        self._guard(source)
        self._authorize(actor, source, "release attachments of")

        amount = self.ledger.withdraw_all(key, source)
        journal.record("ledger.withdraw_all", lambda: self.ledger.deposit(key, source, amount))
        return amount

    # ------------------------------------------------------------------
    # Receiver callbacks
    # ------------------------------------------------------------------

    def _accepts(self, operator: str, expected: Tuple[Any, ...]) -> bool:
        if self.config.protocol.accept_unsolicited_transfers.get():
            return True
        return operator.lower() == self.address and self._inbound == expected

    def on_non_fungible_received(self, operator: str, sender: str, token_id: int, data: bytes) -> bytes:
        """Acknowledge tokens this protocol is pulling into escrow."""
        if self._accepts(operator, ("non_fungible", token_id)):
            return NON_FUNGIBLE_RECEIVED
        self._log.warning(
            "Rejected unsolicited non-fungible transfer",
            operator=operator, sender=sender, token_id=token_id,
        )
        return REJECTED

    def on_counted_asset_received(
        self,
        operator: str,
        sender: str,
        asset_id: int,
        amount: Decimal,
        data: bytes,
    ) -> bytes:
        """Acknowledge counted-asset units this protocol is pulling in."""
        if self._accepts(operator, ("counted_asset", asset_id, Decimal(amount))):
            return COUNTED_ASSET_RECEIVED
        self._log.warning(
            "Rejected unsolicited counted-asset transfer",
            operator=operator, sender=sender, asset_id=asset_id, amount=str(amount),
        )
        return REJECTED

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_root_token(self, node: Any) -> NodeRef:
        """Root of the node's tree; the node itself when it has no target."""
        node = self._node(node, "node")
        try:
            return self.graph.find_root(node)
        except GraphCorrupted as e:
            with self._lock:
                self._quarantine(e.nodes)
            raise

    def get_target(self, node: Any) -> Optional[NodeRef]:
        return self.graph.get_target(self._node(node, "node"))

    def children(self, node: Any) -> List[NodeRef]:
        return self.graph.children(self._node(node, "node"))

    def owner_of(self, node: Any) -> str:
        """Holder of the node's root, which controls the whole subtree."""
        return self.registry.holder_of(self.find_root_token(node))

    def balance_of_fungible(self, owner: Any, currency: str) -> Decimal:
        return self.ledger.balance_of(ResourceKey.currency(currency), self._node(owner, "owner"))

    def balance_of_counted_asset(self, owner: Any, collection: str, asset_id: Any) -> Decimal:
        key = ResourceKey.counted(collection, asset_id)
        return self.ledger.balance_of(key, self._node(owner, "owner"))

    def attachments_of(self, node: Any) -> List[Attachment]:
        return self.ledger.attachments_of(self._node(node, "node"))

    def history(self, stream: Any) -> List[Event]:
        """Events recorded for a node or resource descriptor, oldest first."""
        return self.event_store.read_stream(str(stream))

    def is_quarantined(self, node: Any) -> bool:
        with self._lock:
            return self._node(node, "node") in self._quarantined

    def release_quarantine(self, node: Any) -> bool:
        """Lift the quarantine on a node after manual investigation."""
        node = self._node(node, "node")
        with self._lock:
            if node not in self._quarantined:
                return False
            self._quarantined.discard(node)
        self._log.warning("Quarantine released", node=str(node))
        return True

    def check_conservation(self) -> List[ConservationEntry]:
        """
        Compare every ledger total with the custody held by the protocol.

        An entry is conserved when the recorded total does not exceed what
        the collaborator reports for the protocol address.
        """
        entries = []
        with self._lock:
            for key in self.ledger.keys():
                held = Decimal("0")
                if key.asset_id is None:
                    token = self.directory.fungible(key.contract)
                    if token is not None:
                        held = Decimal(token.balance_of(self.address))
                else:
                    assets = self.directory.counted_asset(key.contract)
                    if assets is not None:
                        held = Decimal(assets.balance_of(self.address, key.asset_id))
                entries.append(ConservationEntry(key, self.ledger.total_of(key), held))
        return entries

    def verify_invariants(self) -> List[str]:
        """
        Run every structural and custody check; returns the problems found.

        Forest corruption quarantines the nodes involved.
        """
        problems: List[str] = []
        with self._lock:
            try:
                self.graph.check_invariants()
            except GraphCorrupted as e:
                self._quarantine(e.nodes)
                problems.append(e.message)

            for entry in self.check_conservation():
                if not entry.conserved:
                    problems.append(
                        f"{entry.key}: ledger records {entry.recorded}, custody holds {entry.held}"
                    )

            if self._escrow():
                for source, _ in self.graph.edges():
                    try:
                        holder = self.registry.holder_of(source)
                    except NotFound:
                        problems.append(f"{source}: linked but no longer exists")
                        continue
                    if holder != self.address:
                        problems.append(f"{source}: linked but held by {holder}, not in escrow")
        return problems

    @property
    def quarantined(self) -> List[NodeRef]:
        with self._lock:
            return sorted(self._quarantined)

    def state_summary(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "edges": len(self.graph),
            "attachments": len(self.ledger),
            "events": self.event_store.total_events,
            "quarantined": [str(n) for n in self.quarantined],
            "custody_mode": self.config.protocol.custody_mode.get(),
        }
