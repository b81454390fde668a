"""Persistence for proofs, transactions, counters and keysets."""

from __future__ import annotations

import copy
import json
import logging
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Protocol

from .types import (
    Keyset,
    MintProofsCounter,
    Proof,
    StorageError,
    StoredProof,
    Transaction,
)

logger = logging.getLogger(__name__)


class Storage(ABC):
    """Persistence contract used by the ledger, counters and transaction store."""

    # ───────────────────────── Proofs ─────────────────────────────────

    @abstractmethod
    def add_or_update_proofs(
        self,
        proofs: Iterable[Proof],
        *,
        is_pending: bool = False,
        is_spent: bool = False,
    ) -> None:
        """Upsert proof records keyed by secret."""

    @abstractmethod
    def get_proofs(
        self, *, spendable: bool = True, pending: bool = True
    ) -> list[StoredProof]:
        """Return unspent proof records from the requested partitions."""

    # ───────────────────────── Transactions ─────────────────────────────────

    @abstractmethod
    def save_transaction(self, transaction: Transaction) -> None: ...

    @abstractmethod
    def get_transactions(self) -> list[Transaction]: ...

    # ───────────────────────── Counters ─────────────────────────────────

    @abstractmethod
    def save_counter(self, counter: MintProofsCounter) -> None: ...

    @abstractmethod
    def get_counters(self) -> list[MintProofsCounter]: ...

    # ───────────────────────── Pending by mint ─────────────────────────────────

    @abstractmethod
    def save_pending_by_mint_secrets(self, secrets: list[str]) -> None: ...

    @abstractmethod
    def get_pending_by_mint_secrets(self) -> list[str]: ...

    # ───────────────────────── Keysets ─────────────────────────────────

    @abstractmethod
    def save_keysets(self, mint_url: str, keysets: list[Keyset]) -> None: ...

    @abstractmethod
    def get_keysets(self) -> list[Keyset]: ...

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes so that either all of them persist or none do."""


class MemoryStorage(Storage):
    """In-memory storage. Subclasses persist the state in :meth:`_commit`."""

    def __init__(self, state: dict[str, Any] | None = None) -> None:
        self._state: dict[str, Any] = state or self._empty_state()
        self._depth = 0

    @staticmethod
    def _empty_state() -> dict[str, Any]:
        return {
            "proofs": {},
            "transactions": {},
            "counters": {},
            "pending_by_mint": [],
            "keysets": {},
        }

    def _changed(self) -> None:
        if self._depth == 0:
            self._commit()

    def _commit(self) -> None:
        """Flush state to the backing store. No-op in memory."""

    @contextmanager
    def transaction(self) -> Iterator[None]:
        snapshot = copy.deepcopy(self._state) if self._depth == 0 else None
        self._depth += 1
        try:
            yield
            if self._depth == 1:
                self._commit()
        except BaseException:
            if snapshot is not None:
                logger.warning("Rolling back storage transaction")
                self._state = snapshot
            raise
        finally:
            self._depth -= 1

    # ───────────────────────── Proofs ─────────────────────────────────

    def add_or_update_proofs(
        self,
        proofs: Iterable[Proof],
        *,
        is_pending: bool = False,
        is_spent: bool = False,
    ) -> None:
        records = self._state["proofs"]
        for proof in proofs:
            record = dict(proof)
            record["is_pending"] = is_pending
            record["is_spent"] = is_spent
            records[proof["secret"]] = record
        self._changed()

    def get_proofs(
        self, *, spendable: bool = True, pending: bool = True
    ) -> list[StoredProof]:
        result: list[StoredProof] = []
        for record in self._state["proofs"].values():
            if record["is_spent"]:
                continue
            if (record["is_pending"] and pending) or (
                not record["is_pending"] and spendable
            ):
                result.append(StoredProof(**record))
        return result

    # ───────────────────────── Transactions ─────────────────────────────────

    def save_transaction(self, transaction: Transaction) -> None:
        self._state["transactions"][str(transaction.id)] = transaction.to_dict()
        self._changed()

    def get_transactions(self) -> list[Transaction]:
        return [
            Transaction.from_dict(data)
            for data in self._state["transactions"].values()
        ]

    # ───────────────────────── Counters ─────────────────────────────────

    def save_counter(self, counter: MintProofsCounter) -> None:
        key = f"{counter.mint_url}|{counter.keyset_id}"
        self._state["counters"][key] = counter.to_dict()
        self._changed()

    def get_counters(self) -> list[MintProofsCounter]:
        return [
            MintProofsCounter.from_dict(data)
            for data in self._state["counters"].values()
        ]

    # ───────────────────────── Pending by mint ─────────────────────────────────

    def save_pending_by_mint_secrets(self, secrets: list[str]) -> None:
        self._state["pending_by_mint"] = list(secrets)
        self._changed()

    def get_pending_by_mint_secrets(self) -> list[str]:
        return list(self._state["pending_by_mint"])

    # ───────────────────────── Keysets ─────────────────────────────────

    def save_keysets(self, mint_url: str, keysets: list[Keyset]) -> None:
        self._state["keysets"][mint_url] = [keyset.to_dict() for keyset in keysets]
        self._changed()

    def get_keysets(self) -> list[Keyset]:
        return [
            Keyset.from_dict(data)
            for keysets in self._state["keysets"].values()
            for data in keysets
        ]


class JsonFileStorage(MemoryStorage):
    """Storage backed by a single JSON document.

    Writes go to a temporary file that atomically replaces the document, so
    a crash mid-write leaves the previous state intact.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return self._empty_state()
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            raise StorageError(f"Could not read wallet data from {self.path}: {e}") from e

        state = self._empty_state()
        state.update(data)
        return state

    def _commit(self) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(self._state, indent=2, sort_keys=True))
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Could not write wallet data to {self.path}: {e}") from e


class Checkpointable(Protocol):
    def checkpoint(self) -> Any: ...

    def restore(self, checkpoint: Any) -> None: ...


@contextmanager
def atomic(storage: Storage, *stores: Checkpointable) -> Iterator[None]:
    """Apply a group of ledger and transaction changes all-or-nothing.

    Persistence is rolled back by the storage transaction, in-memory state
    of ``stores`` by restoring their checkpoints.
    """
    checkpoints = [store.checkpoint() for store in stores]
    try:
        with storage.transaction():
            yield
    except BaseException:
        for store, checkpoint in zip(stores, checkpoints):
            store.restore(checkpoint)
        raise
