"""Proof ledger with spendable and pending partitions."""

from __future__ import annotations

import copy
import logging
from collections import defaultdict
from typing import Any, Iterable

from .counters import CounterAuthority
from .storage import Storage
from .types import Balances, Proof, ValidationError

logger = logging.getLogger(__name__)


class ProofLedger:
    """Owns every proof the wallet holds.

    Proofs are keyed by secret and live in exactly one of two partitions:
    *spendable* or *pending*. The pending-by-mint set tracks the subset of
    pending secrets the mint itself reported as PENDING (typically melt
    inputs waiting for a Lightning payment to settle).
    """

    def __init__(
        self, storage: Storage, counters: CounterAuthority | None = None
    ) -> None:
        self.storage = storage
        self.counters = counters
        self._spendable: dict[str, Proof] = {}
        self._pending: dict[str, Proof] = {}
        self._pending_by_mint: dict[str, None] = {}  # ordered set of secrets

    def load(self) -> None:
        self._spendable.clear()
        self._pending.clear()
        for record in self.storage.get_proofs(spendable=True, pending=True):
            proof = Proof(
                id=record["id"],
                amount=record["amount"],
                secret=record["secret"],
                C=record["C"],
                mint=record["mint"],
                unit=record["unit"],
                tid=record.get("tid"),
            )
            partition = self._pending if record["is_pending"] else self._spendable
            partition[proof["secret"]] = proof
        self._pending_by_mint = dict.fromkeys(
            secret
            for secret in self.storage.get_pending_by_mint_secrets()
            if secret in self._pending
        )

    def checkpoint(self) -> Any:
        return copy.deepcopy(
            (self._spendable, self._pending, self._pending_by_mint)
        )

    def restore(self, checkpoint: Any) -> None:
        self._spendable, self._pending, self._pending_by_mint = checkpoint

    def _partition(self, is_pending: bool) -> dict[str, Proof]:
        return self._pending if is_pending else self._spendable

    # ───────────────────────── Mutations ─────────────────────────────────

    def add(
        self,
        proofs: list[Proof],
        *,
        to_pending: bool = False,
        increase_counter: bool = True,
    ) -> tuple[int, list[Proof]]:
        """Insert proofs into one partition.

        Secrets already held in either partition are skipped. A batch mixing
        units is rejected as a whole. When adding to the spendable partition
        the owning keyset counters advance by the number of accepted proofs,
        unless the caller already reserved those indexes.

        Returns:
            Tuple of (added_amount, added_proofs)
        """
        if not proofs:
            logger.debug("No proofs to add")
            return 0, []

        unit = proofs[0]["unit"]
        mismatched = [p for p in proofs if p["unit"] != unit]
        if mismatched:
            raise ValidationError(
                f"Cannot add proofs with mixed units: expected {unit}, "
                f"got {sorted({p['unit'] for p in mismatched})}"
            )

        target = self._partition(to_pending)
        other = self._partition(not to_pending)
        added: list[Proof] = []
        for proof in proofs:
            secret = proof["secret"]
            if secret in target or secret in other:
                logger.warning(
                    "Skipping duplicate proof of %s %s from %s",
                    proof["amount"],
                    proof["unit"],
                    proof["mint"],
                )
                continue
            target[secret] = proof
            added.append(proof)

        if not added:
            return 0, []

        self.storage.add_or_update_proofs(added, is_pending=to_pending)

        if not to_pending and increase_counter and self.counters is not None:
            per_keyset: dict[tuple[str, str], int] = defaultdict(int)
            for proof in added:
                per_keyset[(proof["mint"], proof["id"])] += 1
            for (mint_url, keyset_id), count in per_keyset.items():
                self.counters.increase(mint_url, keyset_id, count, unit=unit)

        return sum(p["amount"] for p in added), added

    def remove(
        self,
        proofs: Iterable[Proof],
        *,
        from_pending: bool = False,
        is_recovered: bool = False,
    ) -> list[Proof]:
        """Remove proofs from a partition by secret. Absent secrets are ignored.

        Removed proofs are persisted as spent unless ``is_recovered`` marks
        them as moving elsewhere.

        Returns:
            The proofs that were actually removed
        """
        partition = self._partition(from_pending)
        removed = [
            partition.pop(proof["secret"])
            for proof in proofs
            if proof["secret"] in partition
        ]
        if removed:
            self.storage.add_or_update_proofs(
                removed, is_pending=from_pending, is_spent=not is_recovered
            )
            if from_pending:
                self.remove_from_pending_by_mint(p["secret"] for p in removed)
        return removed

    def move_to_pending(
        self, proofs: Iterable[Proof], *, transaction_id: int | None = None
    ) -> list[Proof]:
        """Move spendable proofs to the pending partition."""
        return self._move(proofs, to_pending=True, transaction_id=transaction_id)

    def move_to_spendable(self, proofs: Iterable[Proof]) -> list[Proof]:
        """Move pending proofs back to the spendable partition.

        Their indexes were already counted when first added, so counters are
        left alone.
        """
        return self._move(proofs, to_pending=False)

    def _move(
        self,
        proofs: Iterable[Proof],
        *,
        to_pending: bool,
        transaction_id: int | None = None,
    ) -> list[Proof]:
        source = self._partition(not to_pending)
        target = self._partition(to_pending)
        moved: list[Proof] = []
        for proof in proofs:
            held = source.pop(proof["secret"], None)
            if held is None:
                continue
            if transaction_id is not None:
                held = Proof(**{**held, "tid": transaction_id})
            target[held["secret"]] = held
            if not to_pending:
                self._pending_by_mint.pop(held["secret"], None)
            moved.append(held)

        if moved:
            self.storage.add_or_update_proofs(moved, is_pending=to_pending)
            if not to_pending:
                self.storage.save_pending_by_mint_secrets(list(self._pending_by_mint))
        return moved

    # ───────────────────────── Pending by mint ─────────────────────────────────

    @property
    def pending_by_mint_secrets(self) -> list[str]:
        return list(self._pending_by_mint)

    def is_pending_by_mint(self, secret: str) -> bool:
        return secret in self._pending_by_mint

    def add_to_pending_by_mint(self, proof: Proof) -> bool:
        """Record that the mint reports ``proof`` as PENDING.

        The proof must already be in the pending partition.

        Returns:
            False if the secret was already tracked
        """
        secret = proof["secret"]
        if secret in self._pending_by_mint:
            return False
        if secret not in self._pending:
            raise ValidationError(
                "Only proofs in the pending partition can be pending by mint"
            )
        self._pending_by_mint[secret] = None
        self.storage.save_pending_by_mint_secrets(list(self._pending_by_mint))
        return True

    def remove_from_pending_by_mint(self, secrets: Iterable[str]) -> list[str]:
        removed: list[str] = []
        for secret in secrets:
            if secret in self._pending_by_mint:
                del self._pending_by_mint[secret]
                removed.append(secret)
        if removed:
            self.storage.save_pending_by_mint_secrets(list(self._pending_by_mint))
        return removed

    # ───────────────────────── Queries ─────────────────────────────────

    def get_by_mint(
        self,
        mint_url: str,
        *,
        is_pending: bool = False,
        unit: str | None = None,
        keyset_ids: Iterable[str] | None = None,
        ascending: bool = False,
    ) -> list[Proof]:
        """Proofs of one mint, sorted by amount (descending by default)."""
        ids = set(keyset_ids) if keyset_ids is not None else None
        proofs = [
            p
            for p in self._partition(is_pending).values()
            if p["mint"] == mint_url
            and (unit is None or p["unit"] == unit)
            and (ids is None or p["id"] in ids)
        ]
        return sorted(proofs, key=lambda p: p["amount"], reverse=not ascending)

    def get_by_secret(self, secret: str, *, is_pending: bool = False) -> Proof | None:
        return self._partition(is_pending).get(secret)

    def get_by_transaction_id(
        self, transaction_id: int, *, is_pending: bool = False
    ) -> list[Proof]:
        return [
            p
            for p in self._partition(is_pending).values()
            if p.get("tid") == transaction_id
        ]

    def already_exists(self, secret: str) -> bool:
        return secret in self._spendable or secret in self._pending

    def all_proofs(self, *, is_pending: bool = False) -> list[Proof]:
        return list(self._partition(is_pending).values())

    @property
    def mint_urls(self) -> list[str]:
        return list(
            dict.fromkeys(
                p["mint"] for p in [*self._spendable.values(), *self._pending.values()]
            )
        )

    @property
    def balances(self) -> Balances:
        """Balances recomputed from the current partitions."""
        balances = Balances()
        for proofs, per_mint, per_unit in (
            (self._spendable, balances.mint_balances, balances.unit_balances),
            (
                self._pending,
                balances.mint_pending_balances,
                balances.unit_pending_balances,
            ),
        ):
            for proof in proofs.values():
                mint_units = per_mint.setdefault(proof["mint"], {})
                mint_units[proof["unit"]] = (
                    mint_units.get(proof["unit"], 0) + proof["amount"]
                )
                per_unit[proof["unit"]] = per_unit.get(proof["unit"], 0) + proof["amount"]
        return balances
