"""
ARBOR Custody Collaborators

The composition engine never owns asset semantics. Minting, burning,
approvals and transfers of the underlying tokens belong to external asset
collaborators reached through three narrow interfaces:

    NonFungibleAsset     owner_of / is_approved / transfer_from
    FungibleAsset        balance_of / transfer_from
    CountedAsset         balance_of / is_approved / safe_transfer_from

Transfers into a contract address registered as a TokenReceiver invoke the
matching receiver callback; the transfer is reverted unless the callback
returns the collaborator-mandated magic value.

This module also provides in-memory reference collaborators used by the test
suite, the CLI and local tooling, plus the CollaboratorDirectory that maps
contract addresses to collaborators.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, localcontext
from typing import Callable, Dict, List, Optional, Protocol, Set, Tuple

from arbor.hardening import AMOUNT_CONTEXT, Validators

logger = logging.getLogger(__name__)


# Receiver acknowledgement values (first four bytes of the callback selectors).
NON_FUNGIBLE_RECEIVED = bytes.fromhex("150b7a02")
COUNTED_ASSET_RECEIVED = bytes.fromhex("f23a6e61")

ZERO = Decimal("0")


# =============================================================================
# COLLABORATOR ERRORS
# =============================================================================

class CollaboratorError(Exception):
    """Raised by an asset collaborator when it refuses an operation."""
    pass


class TokenNotFound(CollaboratorError):
    """The token id has never been minted or has been burnt."""
    pass


class InsufficientFunds(CollaboratorError):
    """The sender's balance (or allowance) does not cover the transfer."""
    pass


class TransferRejected(CollaboratorError):
    """The transfer was refused: not approved, paused, or receiver declined."""
    pass


# =============================================================================
# COLLABORATOR INTERFACES
# =============================================================================

class TokenReceiver(Protocol):
    """Contract-side callbacks invoked on incoming safe transfers."""

    def on_non_fungible_received(
        self,
        operator: str,
        sender: str,
        token_id: int,
        data: bytes,
    ) -> bytes:
        """Return NON_FUNGIBLE_RECEIVED to accept the token."""
        ...

    def on_counted_asset_received(
        self,
        operator: str,
        sender: str,
        asset_id: int,
        amount: Decimal,
        data: bytes,
    ) -> bytes:
        """Return COUNTED_ASSET_RECEIVED to accept the units."""
        ...


class NonFungibleAsset(Protocol):
    """Collection of unique tokens (graph nodes)."""

    @property
    def address(self) -> str:
        ...

    def owner_of(self, token_id: int) -> str:
        """Current holder. Raises TokenNotFound for unknown ids."""
        ...

    def is_approved(self, owner: str, operator: str) -> bool:
        """True if ``operator`` may move every token held by ``owner``."""
        ...

    def transfer_from(
        self,
        operator: str,
        sender: str,
        recipient: str,
        token_id: int,
        data: bytes = b"",
    ) -> None:
        ...


class FungibleAsset(Protocol):
    """Currency-like resource."""

    @property
    def address(self) -> str:
        ...

    def balance_of(self, holder: str) -> Decimal:
        ...

    def transfer_from(
        self,
        operator: str,
        sender: str,
        recipient: str,
        amount: Decimal,
    ) -> None:
        ...


class CountedAsset(Protocol):
    """Multi-asset collection holding counted units per asset id."""

    @property
    def address(self) -> str:
        ...

    def balance_of(self, holder: str, asset_id: int) -> Decimal:
        ...

    def is_approved(self, owner: str, operator: str) -> bool:
        ...

    def safe_transfer_from(
        self,
        operator: str,
        sender: str,
        recipient: str,
        asset_id: int,
        amount: Decimal,
        data: bytes = b"",
    ) -> None:
        ...


# =============================================================================
# TRANSFER RECORDS
# =============================================================================

@dataclass(frozen=True)
class TransferRecord:
    """One completed custody movement, as seen by a collaborator."""
    contract: str
    operator: str
    sender: str
    recipient: str
    token_id: Optional[int]
    amount: Decimal
    recorded_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


ReceiverLookup = Callable[[str], Optional[TokenReceiver]]


def _no_receivers(address: str) -> Optional[TokenReceiver]:
    return None


class _InMemoryAsset:
    """Shared plumbing for the in-memory collaborators."""

    def __init__(self, address: str):
        self._address = Validators.validate_address(address, "address").unwrap()
        self._operators: Set[Tuple[str, str]] = set()
        self._lock = threading.RLock()
        self.receiver_lookup: ReceiverLookup = _no_receivers
        self.transfers: List[TransferRecord] = []
        self.paused = False

    @property
    def address(self) -> str:
        return self._address

    def set_approval_for_all(self, owner: str, operator: str, approved: bool = True) -> None:
        key = (owner.lower(), operator.lower())
        with self._lock:
            if approved:
                self._operators.add(key)
            else:
                self._operators.discard(key)

    def is_approved(self, owner: str, operator: str) -> bool:
        with self._lock:
            return (owner.lower(), operator.lower()) in self._operators

    def _authorize(self, operator: str, sender: str) -> None:
        if self.paused:
            raise TransferRejected(f"{self._address} is paused")
        if operator.lower() != sender.lower() and not self.is_approved(sender, operator):
            raise TransferRejected(f"{operator} is not approved to move assets of {sender}")


# =============================================================================
# IN-MEMORY NON-FUNGIBLE COLLECTION
# =============================================================================

class InMemoryNonFungibleCollection(_InMemoryAsset):
    """
    Reference non-fungible collection.

    Example:
        nft = InMemoryNonFungibleCollection("0x" + "11" * 20)
        nft.mint(alice, 1)
        nft.owner_of(1)   # alice
    """

    def __init__(self, address: str):
        super().__init__(address)
        self._owners: Dict[int, str] = {}

    def mint(self, to: str, token_id: int) -> None:
        with self._lock:
            if token_id in self._owners:
                raise TransferRejected(f"Token {token_id} already minted")
            self._owners[token_id] = to.lower()

    def burn(self, token_id: int) -> None:
        with self._lock:
            if self._owners.pop(token_id, None) is None:
                raise TokenNotFound(f"Token {token_id} does not exist")

    def owner_of(self, token_id: int) -> str:
        with self._lock:
            owner = self._owners.get(token_id)
        if owner is None:
            raise TokenNotFound(f"Token {token_id} does not exist in {self._address}")
        return owner

    def transfer_from(
        self,
        operator: str,
        sender: str,
        recipient: str,
        token_id: int,
        data: bytes = b"",
    ) -> None:
        with self._lock:
            owner = self.owner_of(token_id)
            if owner != sender.lower():
                raise TransferRejected(f"{sender} does not hold token {token_id}")
            self._authorize(operator, sender)
            self._owners[token_id] = recipient.lower()

            receiver = self.receiver_lookup(recipient.lower())
            if receiver is not None:
                try:
                    ack = receiver.on_non_fungible_received(operator.lower(), owner, token_id, data)
                except Exception as e:
                    self._owners[token_id] = owner
                    raise TransferRejected(f"Receiver {recipient} raised: {e}") from e
                if ack != NON_FUNGIBLE_RECEIVED:
                    self._owners[token_id] = owner
                    raise TransferRejected(f"Receiver {recipient} declined token {token_id}")

            self.transfers.append(TransferRecord(
                contract=self._address,
                operator=operator.lower(),
                sender=owner,
                recipient=recipient.lower(),
                token_id=token_id,
                amount=Decimal("1"),
            ))


# =============================================================================
# IN-MEMORY FUNGIBLE TOKEN
# =============================================================================

class InMemoryFungibleToken(_InMemoryAsset):
    """Reference currency with allowances."""

    def __init__(self, address: str):
        super().__init__(address)
        self._balances: Dict[str, Decimal] = {}
        self._allowances: Dict[Tuple[str, str], Decimal] = {}

    def mint(self, to: str, amount: Decimal) -> None:
        with self._lock:
            holder = to.lower()
            with localcontext(AMOUNT_CONTEXT):
                self._balances[holder] = self._balances.get(holder, ZERO) + Decimal(amount)

    def approve(self, owner: str, spender: str, amount: Decimal) -> None:
        with self._lock:
            self._allowances[(owner.lower(), spender.lower())] = Decimal(amount)

    def allowance(self, owner: str, spender: str) -> Decimal:
        with self._lock:
            return self._allowances.get((owner.lower(), spender.lower()), ZERO)

    def balance_of(self, holder: str) -> Decimal:
        with self._lock:
            return self._balances.get(holder.lower(), ZERO)

    def transfer_from(
        self,
        operator: str,
        sender: str,
        recipient: str,
        amount: Decimal,
    ) -> None:
        amount = Decimal(amount)
        src, dst, op = sender.lower(), recipient.lower(), operator.lower()
        with self._lock:
            if self.paused:
                raise TransferRejected(f"{self._address} is paused")
            spends_allowance = op != src
            allowed = self.allowance(src, op)
            if spends_allowance and allowed < amount:
                raise InsufficientFunds(f"Allowance {allowed} of {op} below {amount}")
            balance = self.balance_of(src)
            if balance < amount:
                raise InsufficientFunds(f"Balance {balance} of {src} below {amount}")

            with localcontext(AMOUNT_CONTEXT):
                if spends_allowance:
                    self._allowances[(src, op)] = allowed - amount
                self._balances[src] = balance - amount
                self._balances[dst] = self.balance_of(dst) + amount
            self.transfers.append(TransferRecord(
                contract=self._address,
                operator=op,
                sender=src,
                recipient=dst,
                token_id=None,
                amount=amount,
            ))


# =============================================================================
# IN-MEMORY COUNTED-ASSET COLLECTION
# =============================================================================

class InMemoryCountedAssetCollection(_InMemoryAsset):
    """Reference multi-asset collection with receiver callbacks."""

    def __init__(self, address: str):
        super().__init__(address)
        self._balances: Dict[Tuple[str, int], Decimal] = {}

    def mint(self, to: str, asset_id: int, amount: Decimal) -> None:
        with self._lock:
            key = (to.lower(), asset_id)
            with localcontext(AMOUNT_CONTEXT):
                self._balances[key] = self._balances.get(key, ZERO) + Decimal(amount)

    def balance_of(self, holder: str, asset_id: int) -> Decimal:
        with self._lock:
            return self._balances.get((holder.lower(), asset_id), ZERO)

    def _move(self, src: str, dst: str, asset_id: int, amount: Decimal) -> None:
        with localcontext(AMOUNT_CONTEXT):
            self._balances[(src, asset_id)] = self.balance_of(src, asset_id) - amount
            self._balances[(dst, asset_id)] = self.balance_of(dst, asset_id) + amount

    def safe_transfer_from(
        self,
        operator: str,
        sender: str,
        recipient: str,
        asset_id: int,
        amount: Decimal,
        data: bytes = b"",
    ) -> None:
        amount = Decimal(amount)
        src, dst, op = sender.lower(), recipient.lower(), operator.lower()
        with self._lock:
            self._authorize(op, src)
            balance = self.balance_of(src, asset_id)
            if balance < amount:
                raise InsufficientFunds(f"Balance {balance} of {src} below {amount} for asset {asset_id}")
            self._move(src, dst, asset_id, amount)

            receiver = self.receiver_lookup(dst)
            if receiver is not None:
                try:
                    ack = receiver.on_counted_asset_received(op, src, asset_id, amount, data)
                except Exception as e:
                    self._move(dst, src, asset_id, amount)
                    raise TransferRejected(f"Receiver {recipient} raised: {e}") from e
                if ack != COUNTED_ASSET_RECEIVED:
                    self._move(dst, src, asset_id, amount)
                    raise TransferRejected(f"Receiver {recipient} declined asset {asset_id}")

            self.transfers.append(TransferRecord(
                contract=self._address,
                operator=op,
                sender=src,
                recipient=dst,
                token_id=asset_id,
                amount=amount,
            ))


# =============================================================================
# COLLABORATOR DIRECTORY
# =============================================================================

class CollaboratorDirectory:
    """
    Address book of asset collaborators and receiver contracts.

    Collaborators registered here route their receiver callbacks through
    the directory, so registering the protocol as a receiver is enough for
    every collection to honour its acknowledgement.
    """

    def __init__(self):
        self._non_fungible: Dict[str, NonFungibleAsset] = {}
        self._fungible: Dict[str, FungibleAsset] = {}
        self._counted: Dict[str, CountedAsset] = {}
        self._receivers: Dict[str, TokenReceiver] = {}
        self._lock = threading.RLock()

    def _bind(self, collaborator: object) -> None:
        if isinstance(collaborator, _InMemoryAsset):
            collaborator.receiver_lookup = self.receiver_at

    def add_non_fungible(self, collection: NonFungibleAsset) -> NonFungibleAsset:
        with self._lock:
            self._non_fungible[collection.address.lower()] = collection
        self._bind(collection)
        logger.debug("Registered non-fungible collaborator %s", collection.address)
        return collection

    def add_fungible(self, token: FungibleAsset) -> FungibleAsset:
        with self._lock:
            self._fungible[token.address.lower()] = token
        self._bind(token)
        logger.debug("Registered fungible collaborator %s", token.address)
        return token

    def add_counted_asset(self, collection: CountedAsset) -> CountedAsset:
        with self._lock:
            self._counted[collection.address.lower()] = collection
        self._bind(collection)
        logger.debug("Registered counted-asset collaborator %s", collection.address)
        return collection

    def register_receiver(self, address: str, receiver: TokenReceiver) -> None:
        with self._lock:
            self._receivers[address.lower()] = receiver

    def receiver_at(self, address: str) -> Optional[TokenReceiver]:
        with self._lock:
            return self._receivers.get(address.lower())

    def non_fungible(self, address: str) -> Optional[NonFungibleAsset]:
        with self._lock:
            return self._non_fungible.get(address.lower())

    def fungible(self, address: str) -> Optional[FungibleAsset]:
        with self._lock:
            return self._fungible.get(address.lower())

    def counted_asset(self, address: str) -> Optional[CountedAsset]:
        with self._lock:
            return self._counted.get(address.lower())
