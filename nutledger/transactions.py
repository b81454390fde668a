"""Transaction records and their status lifecycle."""

from __future__ import annotations

import copy
import logging
import time
from typing import Any

from .storage import Storage
from .types import (
    CurrencyUnit,
    NotFoundError,
    Transaction,
    TransactionStatus,
    TransactionType,
    ValidationError,
)

logger = logging.getLogger(__name__)

_TERMINAL = frozenset(
    {
        TransactionStatus.COMPLETED,
        TransactionStatus.ERROR,
        TransactionStatus.REVERTED,
        TransactionStatus.EXPIRED,
    }
)

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.DRAFT: frozenset(TransactionStatus),
    TransactionStatus.PENDING: frozenset({TransactionStatus.PENDING}) | _TERMINAL,
    TransactionStatus.COMPLETED: frozenset(),
    # Only in-flight recovery may complete a failed transaction
    TransactionStatus.ERROR: frozenset(),
    TransactionStatus.REVERTED: frozenset(),
    TransactionStatus.EXPIRED: frozenset(),
}


def can_transition(
    current: TransactionStatus, new: TransactionStatus, *, recovery: bool = False
) -> bool:
    if recovery and current == TransactionStatus.ERROR:
        return new == TransactionStatus.COMPLETED
    return new in ALLOWED_TRANSITIONS[current]


class TransactionStore:
    """In-memory index of transactions, written through to storage."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage
        self._transactions: dict[int, Transaction] = {}
        self._next_id = 1

    def load(self) -> None:
        self._transactions = {tx.id: tx for tx in self.storage.get_transactions()}
        self._next_id = max(self._transactions, default=0) + 1

    def checkpoint(self) -> Any:
        return copy.deepcopy(self._transactions), self._next_id

    def restore(self, checkpoint: Any) -> None:
        self._transactions, self._next_id = checkpoint

    # ───────────────────────── Queries ─────────────────────────────────

    def get(self, transaction_id: int) -> Transaction:
        try:
            return self._transactions[transaction_id]
        except KeyError:
            raise NotFoundError(f"Unknown transaction {transaction_id}") from None

    def find(self, transaction_id: int) -> Transaction | None:
        return self._transactions.get(transaction_id)

    def all(self) -> list[Transaction]:
        return sorted(self._transactions.values(), key=lambda tx: tx.id)

    def by_status(self, *statuses: TransactionStatus) -> list[Transaction]:
        return [tx for tx in self.all() if tx.status in statuses]

    # ───────────────────────── Mutations ─────────────────────────────────

    def create(
        self,
        type: TransactionType,
        amount: int,
        mint_url: str,
        *,
        unit: CurrencyUnit = "sat",
        status: TransactionStatus = TransactionStatus.DRAFT,
        memo: str | None = None,
        quote: str | None = None,
        payment_request: str | None = None,
        expires_at: int | None = None,
    ) -> Transaction:
        if amount < 0:
            raise ValidationError(f"Transaction amount must not be negative: {amount}")

        tx = Transaction(
            id=self._next_id,
            type=type,
            amount=amount,
            unit=unit,
            mint_url=mint_url,
            status=status,
            memo=memo,
            quote=quote,
            payment_request=payment_request,
            expires_at=expires_at,
        )
        tx.data.append(self._snapshot(status, {"message": "created"}))
        self._next_id += 1
        self._transactions[tx.id] = tx
        self.storage.save_transaction(tx)
        return tx

    def update_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        data: dict[str, Any] | None = None,
        *,
        recovery: bool = False,
    ) -> Transaction:
        """Move a transaction to ``status``, appending a history snapshot.

        Raises:
            ValidationError: If the transition is not allowed
        """
        tx = self.get(transaction_id)
        if not can_transition(tx.status, status, recovery=recovery):
            raise ValidationError(
                f"Transaction {transaction_id} cannot move from "
                f"{tx.status.value} to {status.value}"
            )
        self._apply(tx, status, data)
        return tx

    def update_statuses(
        self,
        transaction_ids: list[int],
        status: TransactionStatus,
        data: dict[str, Any] | None = None,
    ) -> list[int]:
        """Best-effort status update used by reconciliation.

        Unknown ids and disallowed transitions are logged and skipped. A
        transaction that already has ``status`` is left untouched.

        Returns:
            Ids that actually changed
        """
        updated: list[int] = []
        for transaction_id in transaction_ids:
            tx = self._transactions.get(transaction_id)
            if tx is None:
                logger.warning("Skipping unknown transaction %s", transaction_id)
                continue
            if tx.status == status:
                continue
            if not can_transition(tx.status, status):
                logger.info(
                    "Skipping transaction %s: %s -> %s not allowed",
                    transaction_id,
                    tx.status.value,
                    status.value,
                )
                continue
            self._apply(tx, status, data)
            updated.append(transaction_id)
        return updated

    def append_data(self, transaction_id: int, data: dict[str, Any]) -> Transaction:
        """Append a history entry without changing the status."""
        tx = self.get(transaction_id)
        tx.data.append(self._snapshot(tx.status, data))
        self.storage.save_transaction(tx)
        return tx

    def set_fee(self, transaction_id: int, fee: int) -> None:
        tx = self.get(transaction_id)
        tx.fee = fee
        self.storage.save_transaction(tx)

    def _apply(
        self,
        tx: Transaction,
        status: TransactionStatus,
        data: dict[str, Any] | None,
    ) -> None:
        logger.debug(
            "Transaction %s: %s -> %s", tx.id, tx.status.value, status.value
        )
        tx.status = status
        tx.data.append(self._snapshot(status, data))
        self.storage.save_transaction(tx)

    @staticmethod
    def _snapshot(status: TransactionStatus, data: dict[str, Any] | None) -> dict[str, Any]:
        return {"status": status.value, "created_at": time.time(), **(data or {})}
