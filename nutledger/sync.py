"""Reconcile the local proof ledger with what each mint reports."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable

from .counters import CounterAuthority
from .crypto import construct_proofs, derive_blinded_messages
from .keysets import KeysetRegistry
from .ledger import ProofLedger
from .mint import Mint
from .storage import Storage, atomic
from .transactions import TransactionStore, can_transition
from .types import (
    Proof,
    RecoveryResult,
    SyncResult,
    TransactionStateUpdate,
    TransactionStatus,
    TransactionType,
    ValidationError,
)

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Applies mint-reported proof states to the ledger and transactions.

    Every pass is all-or-nothing: the ledger and transaction changes made
    for one mint partition are committed together or not at all. Errors are
    reported on the returned result instead of being raised.
    """

    def __init__(
        self,
        *,
        ledger: ProofLedger,
        transactions: TransactionStore,
        counters: CounterAuthority,
        registry: KeysetRegistry,
        storage: Storage,
        get_mint: Callable[[str], Mint],
        seed: bytes | None = None,
    ) -> None:
        self.ledger = ledger
        self.transactions = transactions
        self.counters = counters
        self.registry = registry
        self.storage = storage
        self._get_mint = get_mint
        self.seed = seed

    # ───────────────────────── State sync ─────────────────────────────────

    async def sync_state_with_mint(self, mint_url: str, *, is_pending: bool) -> SyncResult:
        """Reconcile one partition of one mint's proofs.

        Spent proofs are removed and their transactions completed (or set to
        ERROR when only part of the amount was spent). Proofs the mint holds
        as PENDING are parked in the pending partition. On the pending pass,
        proofs the mint no longer considers pending and did not spend are
        returned to spendable and their transactions reverted.
        """
        result = SyncResult(mint_url=mint_url, is_pending=is_pending)
        proofs = self.ledger.get_by_mint(mint_url, is_pending=is_pending)
        if not proofs:
            logger.debug(
                "No %s proofs to sync for %s",
                "pending" if is_pending else "spendable",
                mint_url,
            )
            return result

        try:
            spent, pending = await self._get_mint(mint_url).check_proof_states(proofs)
            spent_secrets = {p["secret"] for p in spent}
            # a proof reported in both sets counts as spent
            pending = [p for p in pending if p["secret"] not in spent_secrets]

            with atomic(self.storage, self.ledger, self.transactions):
                if spent:
                    self._handle_spent(spent, is_pending, result)
                if pending:
                    self._handle_pending(pending, is_pending, result)
                if is_pending:
                    reported = spent_secrets | {p["secret"] for p in pending}
                    self._handle_reverted(mint_url, reported, result)
        except Exception as e:
            logger.error(
                "Sync of %s proofs with %s failed: %s",
                "pending" if is_pending else "spendable",
                mint_url,
                e,
            )
            result.error = e
            return result

        logger.info(
            "Synced %s: %s spent, %s pending, %s reverted",
            mint_url,
            result.spent_count,
            result.pending_count,
            result.reverted_count,
        )
        return result

    def _handle_spent(
        self, spent: list[Proof], is_pending: bool, result: SyncResult
    ) -> None:
        spent_by_tid: dict[int, int] = defaultdict(int)
        for proof in spent:
            if proof.get("tid") is not None:
                spent_by_tid[proof["tid"]] += proof["amount"]

        removed = self.ledger.remove(spent, from_pending=is_pending)
        # spent secrets can no longer be pending at the mint
        self.ledger.remove_from_pending_by_mint(p["secret"] for p in spent)
        result.spent_count = len(removed)
        result.spent_amount = sum(p["amount"] for p in removed)

        for tid, spent_amount in spent_by_tid.items():
            tx = self.transactions.find(tid)
            if tx is None:
                logger.warning("Spent proofs reference unknown transaction %s", tid)
                continue

            if spent_amount < tx.amount:
                status = TransactionStatus.ERROR
                message = (
                    f"Only {spent_amount} of {tx.amount} {tx.unit} were spent, "
                    "the rest may be lost"
                )
                target = result.error_transaction_ids
            else:
                status = TransactionStatus.COMPLETED
                message = "Proofs spent at the mint"
                target = result.completed_transaction_ids

            if self.transactions.update_statuses(
                [tid], status, {"message": message, "spent_amount": spent_amount}
            ):
                target.append(tid)
                result.transaction_state_updates.append(
                    TransactionStateUpdate(id=tid, status=status, message=message)
                )

    def _handle_pending(
        self, pending: list[Proof], is_pending: bool, result: SyncResult
    ) -> None:
        new = [p for p in pending if not self.ledger.is_pending_by_mint(p["secret"])]
        if not new:
            logger.debug("All mint-pending proofs are already tracked")
            return

        if is_pending:
            parked = [
                p
                for p in new
                if self.ledger.get_by_secret(p["secret"], is_pending=True) is not None
            ]
        else:
            parked = self.ledger.move_to_pending(new)

        for proof in parked:
            self.ledger.add_to_pending_by_mint(proof)
        result.pending_count = len(parked)
        result.pending_amount = sum(p["amount"] for p in parked)

        tids = list(dict.fromkeys(p["tid"] for p in parked if p.get("tid") is not None))
        message = "Proofs are pending at the mint"
        for tid in self.transactions.update_statuses(
            tids, TransactionStatus.PENDING, {"message": message}
        ):
            result.pending_transaction_ids.append(tid)
            result.transaction_state_updates.append(
                TransactionStateUpdate(
                    id=tid, status=TransactionStatus.PENDING, message=message
                )
            )

    def _handle_reverted(
        self, mint_url: str, reported: set[str], result: SyncResult
    ) -> None:
        to_revert: list[Proof] = []
        orphans: list[str] = []
        for secret in self.ledger.pending_by_mint_secrets:
            proof = self.ledger.get_by_secret(secret, is_pending=True)
            if proof is None:
                orphans.append(secret)
            elif proof["mint"] == mint_url and secret not in reported:
                to_revert.append(proof)

        if orphans:
            logger.warning("Dropping %s pending-by-mint secrets without proofs", len(orphans))
            self.ledger.remove_from_pending_by_mint(orphans)

        if not to_revert:
            return

        moved = self.ledger.move_to_spendable(to_revert)
        result.reverted_count = len(moved)
        result.reverted_amount = sum(p["amount"] for p in moved)

        tids = list(dict.fromkeys(p["tid"] for p in moved if p.get("tid") is not None))
        message = "Mint released pending proofs, funds returned"
        for tid in self.transactions.update_statuses(
            tids, TransactionStatus.REVERTED, {"message": message}
        ):
            result.reverted_transaction_ids.append(tid)
            result.transaction_state_updates.append(
                TransactionStateUpdate(
                    id=tid, status=TransactionStatus.REVERTED, message=message
                )
            )

    # ───────────────────────── In-flight recovery ─────────────────────────────────

    async def recover_in_flight(self, mint_url: str) -> RecoveryResult | None:
        """Restore proofs for a counter range left in flight by an interrupted call.

        The blinded messages for the range are derived again and sent to
        the mint's restore endpoint. Restored proofs the mint reports as
        unspent join the spendable ledger under the original transaction,
        which is then marked COMPLETED. The in-flight marker is cleared
        whatever the outcome.

        Returns:
            None if the mint has no in-flight counter
        """
        counter = self.counters.find_in_flight(mint_url)
        if counter is None:
            return None

        assert counter.in_flight_from is not None and counter.in_flight_to is not None
        result = RecoveryResult(
            mint_url=mint_url,
            keyset_id=counter.keyset_id,
            in_flight_from=counter.in_flight_from,
            in_flight_to=counter.in_flight_to,
            transaction_id=counter.in_flight_tid,
        )
        logger.warning(
            "Recovering in-flight range [%s, %s) on %s for transaction %s",
            result.in_flight_from,
            result.in_flight_to,
            mint_url,
            result.transaction_id,
        )

        try:
            await self._restore_range(counter.unit, result)
        except Exception as e:
            logger.error("In-flight recovery on %s failed: %s", mint_url, e)
            result.error = e
        finally:
            self.counters.reset(counter)

        return result

    async def _restore_range(self, unit: str, result: RecoveryResult) -> None:
        if self.seed is None:
            raise ValidationError("A wallet seed is required to recover in-flight proofs")

        count = result.in_flight_to - result.in_flight_from
        # the mint reports the real amounts, so placeholders are fine here
        outputs, secrets, rs = derive_blinded_messages(
            self.seed, result.keyset_id, [1] * count, result.in_flight_from
        )

        mint = self._get_mint(result.mint_url)
        response = await mint.restore(outputs=outputs)
        restored_outputs = response.get("outputs", [])
        signatures = response.get("signatures", [])
        if not signatures:
            logger.info("Mint has no signatures for the in-flight range")
            self._note_unsigned(result.transaction_id)
            return

        index_by_b = {output["B_"]: i for i, output in enumerate(outputs)}
        matched = [index_by_b[o["B_"]] for o in restored_outputs if o["B_"] in index_by_b]
        if len(matched) != len(signatures):
            raise ValidationError(
                f"Mint returned {len(signatures)} signatures for "
                f"{len(matched)} matching outputs"
            )

        keyset = await self.registry.ensure_keyset(result.mint_url, result.keyset_id)
        mint_proofs = construct_proofs(
            signatures,
            [rs[i] for i in matched],
            [secrets[i] for i in matched],
            keyset.keys,
        )
        proofs = [
            Proof(**p, mint=result.mint_url, unit=unit, tid=result.transaction_id)
            for p in mint_proofs
        ]

        spent, _ = await mint.check_proof_states(proofs)
        spent_secrets = {p["secret"] for p in spent}
        result.spent_count = len(spent)
        result.spent_amount = sum(p["amount"] for p in spent)
        unspent = [p for p in proofs if p["secret"] not in spent_secrets]
        if not unspent:
            return

        with atomic(self.storage, self.ledger, self.transactions):
            # indexes in the range were burned when reserved
            added_amount, added = self.ledger.add(unspent, increase_counter=False)
            result.recovered_count = len(added)
            result.recovered_amount = added_amount
            if added and result.transaction_id is not None:
                tx = self.transactions.find(result.transaction_id)
                if tx is None:
                    logger.warning(
                        "Recovered proofs for unknown transaction %s",
                        result.transaction_id,
                    )
                    return

                data = {
                    "message": "Recovered in-flight proofs",
                    "recovered_amount": added_amount,
                }
                if any(entry.get("reverting") for entry in tx.data):
                    # the swap consumed the proofs set aside by the send
                    self.ledger.remove(
                        self.ledger.get_by_transaction_id(tx.id, is_pending=True),
                        from_pending=True,
                    )
                    target = TransactionStatus.REVERTED
                else:
                    target = TransactionStatus.COMPLETED
                if can_transition(tx.status, target, recovery=True):
                    self.transactions.update_status(tx.id, target, data, recovery=True)
                else:
                    self.transactions.append_data(tx.id, data)

    def _note_unsigned(self, transaction_id: int | None) -> None:
        """Record that the mint never signed an interrupted request.

        Transactions still owning pending proofs are settled by
        reconciliation, and topup quotes can be minted again, so both only
        get a history entry. Any other open transaction has nothing left to
        settle and moves to ERROR.
        """
        if transaction_id is None:
            return
        tx = self.transactions.find(transaction_id)
        if tx is None or tx.status not in (
            TransactionStatus.DRAFT,
            TransactionStatus.PENDING,
        ):
            return

        data = {"message": "Mint has no record of the interrupted request"}
        with atomic(self.storage, self.ledger, self.transactions):
            if tx.type == TransactionType.TOPUP or self.ledger.get_by_transaction_id(
                tx.id, is_pending=True
            ):
                self.transactions.append_data(tx.id, data)
            else:
                self.transactions.update_statuses([tx.id], TransactionStatus.ERROR, data)
