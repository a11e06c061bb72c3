"""
ARBOR Attachment Ledger

Bookkeeping for fungible and counted-asset quantities attached to graph
nodes. The ledger is a pure in-memory table

    (resource key, owner node) -> amount

with a per-key running total used for conservation checks against the
custody balances reported by the asset collaborators. It never talks to a
collaborator itself; the Composition Protocol sequences custody transfers
around ledger mutations.

All arithmetic runs under AMOUNT_CONTEXT, so balances and totals stay exact
across the whole uint256 range.

Invariants:
    - Every stored amount is strictly positive (zero entries are removed)
    - total_of(key) equals the sum of balance_of(key, owner) over owners
    - withdraw_all on an empty balance fails loudly with NotFound

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Any, Dict, Iterator, List, Set, Tuple

from arbor.errors import NotFound
from arbor.hardening import AMOUNT_CONTEXT, UINT256_MAX, InvariantChecker, coerce_amount
from arbor.registry import NodeRef, ResourceKey, ResourceKind


ZERO = Decimal("0")


@dataclass(frozen=True)
class Attachment:
    """A recorded quantity of a resource held by an owner node."""
    key: ResourceKey
    owner: NodeRef
    amount: Decimal

    @property
    def kind(self) -> ResourceKind:
        return self.key.resource_kind

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.key.to_dict(),
            "owner": self.owner.to_dict(),
            "amount": str(self.amount),
        }


class AttachmentLedger:
    """
    Per-node balances of fungible and counted-asset resources.

    Example:
        ledger = AttachmentLedger()
        usdc = ResourceKey.currency("0x" + "a" * 40)
        ledger.deposit(usdc, node, Decimal("100"))
        ledger.balance_of(usdc, node)      # Decimal("100")
        ledger.withdraw_all(usdc, node)    # Decimal("100")
    """

    def __init__(self, max_amount: Decimal = Decimal(UINT256_MAX)):
        self.max_amount = max_amount
        self._balances: Dict[Tuple[ResourceKey, NodeRef], Decimal] = {}
        self._by_owner: Dict[NodeRef, Set[ResourceKey]] = {}
        self._totals: Dict[ResourceKey, Decimal] = {}
        self._lock = threading.RLock()

    def _integral(self, key: ResourceKey) -> bool:
        return key.resource_kind is ResourceKind.COUNTED_ASSET

    def _store(self, key: ResourceKey, owner: NodeRef, balance: Decimal) -> None:
        InvariantChecker.check_non_negative("balance", balance)
        if balance == ZERO:
            self._balances.pop((key, owner), None)
            keys = self._by_owner.get(owner)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._by_owner[owner]
        else:
            self._balances[(key, owner)] = balance
            self._by_owner.setdefault(owner, set()).add(key)

    def _adjust_total(self, key: ResourceKey, amount: Decimal, release: bool = False) -> None:
        with localcontext(AMOUNT_CONTEXT):
            current = self._totals.get(key, ZERO)
            total = current - amount if release else current + amount
        InvariantChecker.check_non_negative("total", total)
        if total == ZERO:
            self._totals.pop(key, None)
        else:
            self._totals[key] = total

    def deposit(self, key: ResourceKey, owner: NodeRef, amount: Any) -> Decimal:
        """
        Add ``amount`` to the owner's balance.

        Returns the new balance. Raises InvalidAmount for non-positive,
        non-finite or (for counted assets) fractional amounts, and when the
        resulting balance would exceed ``max_amount``.
        """
        value = coerce_amount(amount, max_value=self.max_amount, integral=self._integral(key))
        with self._lock:
            with localcontext(AMOUNT_CONTEXT):
                balance = self._balances.get((key, owner), ZERO) + value
            InvariantChecker.check_balance_sufficient(self.max_amount, balance, "headroom")
            self._store(key, owner, balance)
            self._adjust_total(key, value)
            return balance

    def withdraw(self, key: ResourceKey, owner: NodeRef, amount: Any) -> Decimal:
        """Remove part of a balance. Returns the remaining balance."""
        value = coerce_amount(amount, max_value=self.max_amount, integral=self._integral(key))
        with self._lock:
            balance = self._balances.get((key, owner), ZERO)
            if balance == ZERO:
                raise NotFound(f"No {key} attached to {owner}", key=key, owner=owner)
            InvariantChecker.check_balance_sufficient(balance, value)
            with localcontext(AMOUNT_CONTEXT):
                remaining = balance - value
            self._store(key, owner, remaining)
            self._adjust_total(key, value, release=True)
            return remaining

    def withdraw_all(self, key: ResourceKey, owner: NodeRef) -> Decimal:
        """Zero the owner's balance and return what it held."""
        with self._lock:
            balance = self._balances.get((key, owner), ZERO)
            if balance == ZERO:
                raise NotFound(f"No {key} attached to {owner}", key=key, owner=owner)
            self._store(key, owner, ZERO)
            self._adjust_total(key, balance, release=True)
            return balance

    def balance_of(self, key: ResourceKey, owner: NodeRef) -> Decimal:
        """Current balance; zero for absent entries."""
        with self._lock:
            return self._balances.get((key, owner), ZERO)

    def total_of(self, key: ResourceKey) -> Decimal:
        """Sum of all balances recorded for ``key``."""
        with self._lock:
            return self._totals.get(key, ZERO)

    def attachments_of(self, owner: NodeRef) -> List[Attachment]:
        """All attachments held by one node, ordered by resource key."""
        with self._lock:
            return [
                Attachment(key, owner, self._balances[(key, owner)])
                for key in sorted(self._by_owner.get(owner, ()))
            ]

    def attachments(self) -> Iterator[Attachment]:
        """Iterate every attachment in deterministic order."""
        with self._lock:
            items = sorted(self._balances.items())
        for (key, owner), amount in items:
            yield Attachment(key, owner, amount)

    def keys(self) -> List[ResourceKey]:
        """Resource keys with a non-zero total."""
        with self._lock:
            return sorted(self._totals)

    def __len__(self) -> int:
        with self._lock:
            return len(self._balances)
