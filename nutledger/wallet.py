from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Iterator, TypeVar

from .config import Settings, validate_mint_url
from .counters import CounterAuthority
from .crypto import construct_proofs, derive_blinded_messages
from .denominations import blank_outputs_count, split_amount
from .keysets import KeysetRegistry
from .ledger import ProofLedger
from .mint import Mint
from .queue import TaskQueue
from .storage import MemoryStorage, Storage, atomic
from .sync import ReconciliationEngine
from .transactions import TransactionStore
from .types import (
    Balances,
    BlindedMessage,
    BlindedSignature,
    CounterReservation,
    CryptoError,
    CurrencyUnit,
    Keyset,
    MintConnectionError,
    MintError,
    MintProof,
    MintStatus,
    NotFoundError,
    Proof,
    RecoveryResult,
    SyncResult,
    Transaction,
    TransactionStatus,
    TransactionType,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ──────────────────────────────────────────────────────────────────────────────
# Output batches
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class _OutputBatch:
    """Blinded outputs derived from one counter reservation."""

    reservation: CounterReservation
    keyset: Keyset
    outputs: list[BlindedMessage]
    secrets: list[bytes]
    rs: list[bytes]
    # set while the mint may have signed without us seeing the answer
    in_doubt: bool = False

    async def submit(self, request: Awaitable[T]) -> T:
        self.in_doubt = True
        try:
            response = await request
        except MintConnectionError:
            raise
        except MintError:
            self.in_doubt = False
            raise
        self.in_doubt = False
        return response

    def unblind(
        self,
        signatures: list[BlindedSignature],
        *,
        mint_url: str,
        unit: CurrencyUnit,
        transaction_id: int | None,
        partial: bool = False,
    ) -> list[Proof]:
        """Turn the mint's signatures for this batch into wallet proofs.

        With ``partial`` the mint may sign only a prefix of the outputs, as
        it does for melt change.
        """
        count = len(signatures)
        if count > len(self.outputs) or (not partial and count != len(self.outputs)):
            raise CryptoError(
                f"Mint returned {count} signatures for {len(self.outputs)} outputs"
            )
        foreign = {s["id"] for s in signatures} - {self.keyset.id}
        if foreign:
            raise CryptoError(f"Mint signed with unexpected keysets {sorted(foreign)}")

        mint_proofs = construct_proofs(
            signatures, self.rs[:count], self.secrets[:count], self.keyset.keys
        )
        return [
            Proof(**p, mint=mint_url, unit=unit, tid=transaction_id)
            for p in mint_proofs
        ]


def _mint_inputs(proofs: list[Proof] | list[MintProof]) -> list[MintProof]:
    """Strip wallet bookkeeping before sending proofs to a mint."""
    return [
        MintProof(id=p["id"], amount=p["amount"], secret=p["secret"], C=p["C"])
        for p in proofs
    ]


# ──────────────────────────────────────────────────────────────────────────────
# Wallet implementation
# ──────────────────────────────────────────────────────────────────────────────


class Wallet:
    """Cashu wallet engine with deterministic secrets and mint reconciliation.

    Every mutating operation runs through the task queue, so operations on
    one mint never overlap. Ledger and transaction changes for one operation
    are committed atomically.
    """

    def __init__(
        self,
        seed: bytes | None = None,
        *,
        mint_urls: list[str] | None = None,
        storage: Storage | None = None,
        settings: Settings | None = None,
        mint_factory: Callable[[str], Mint] | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.seed = seed if seed is not None else self.settings.seed
        self.mint_urls: list[str] = list(
            mint_urls if mint_urls is not None else self.settings.mint_urls
        )
        self.storage = storage or MemoryStorage()
        self.mints: dict[str, Mint] = {}
        self.mint_statuses: dict[str, MintStatus] = {}
        self._mint_factory = mint_factory
        self._task_ids = itertools.count(1)

        self.keysets = KeysetRegistry(self._get_mint, self.storage)
        self.counters = CounterAuthority(
            self.keysets, self.storage, lock_timeout=self.settings.lock_timeout
        )
        self.ledger = ProofLedger(self.storage, self.counters)
        self.transactions = TransactionStore(self.storage)
        self.queue = TaskQueue(
            per_key=self.settings.per_mint_queues,
            task_timeout=self.settings.task_timeout,
        )
        self.reconciliation = ReconciliationEngine(
            ledger=self.ledger,
            transactions=self.transactions,
            counters=self.counters,
            registry=self.keysets,
            storage=self.storage,
            get_mint=self._get_mint,
            seed=self.seed,
        )

    @classmethod
    async def create(
        cls,
        seed: bytes | None = None,
        *,
        mint_urls: list[str] | None = None,
        storage: Storage | None = None,
        settings: Settings | None = None,
        mint_factory: Callable[[str], Mint] | None = None,
        refresh_keysets: bool = True,
    ) -> Wallet:
        """Create a wallet, load persisted state and refresh mint keysets.

        Unreachable mints are marked OFFLINE instead of failing creation.
        """
        wallet = cls(
            seed,
            mint_urls=mint_urls,
            storage=storage,
            settings=settings,
            mint_factory=mint_factory,
        )
        wallet.load()
        if refresh_keysets:
            for mint_url in list(wallet.mint_urls):
                try:
                    await wallet.add_mint(mint_url)
                except MintConnectionError as e:
                    logger.warning("Mint %s is offline: %s", mint_url, e)
        return wallet

    def load(self) -> None:
        """Rehydrate keysets, counters, proofs and transactions from storage."""
        self.keysets.load()
        self.counters.load()
        self.ledger.load()
        self.transactions.load()
        for mint_url in [*self.keysets.mint_urls, *self.ledger.mint_urls]:
            if mint_url not in self.mint_urls:
                self.mint_urls.append(mint_url)

    # ───────────────────────── Mints ─────────────────────────────────

    def _get_mint(self, mint_url: str) -> Mint:
        """Get or create mint instance for URL."""
        if mint_url not in self.mints:
            if self._mint_factory is not None:
                self.mints[mint_url] = self._mint_factory(mint_url)
            else:
                self.mints[mint_url] = Mint(
                    mint_url, timeout=self.settings.request_timeout
                )
        return self.mints[mint_url]

    @contextmanager
    def _contact(self, mint_url: str) -> Iterator[None]:
        """Track whether the mint answered."""
        try:
            yield
        except MintConnectionError:
            self._set_status(mint_url, MintStatus.OFFLINE)
            raise
        except MintError:
            self._set_status(mint_url, MintStatus.ONLINE)
            raise
        self._set_status(mint_url, MintStatus.ONLINE)

    def _set_status(self, mint_url: str, status: MintStatus) -> None:
        if self.mint_statuses.get(mint_url) != status:
            logger.info("Mint %s is %s", mint_url, status.value)
        self.mint_statuses[mint_url] = status

    async def add_mint(self, mint_url: str) -> list[Keyset]:
        """Register a mint and fetch its keysets."""
        mint_url = mint_url.rstrip("/")
        if not validate_mint_url(mint_url):
            raise ValidationError(f"Invalid mint URL: {mint_url}")
        if mint_url not in self.mint_urls:
            self.mint_urls.append(mint_url)
        with self._contact(mint_url):
            return await self.keysets.refresh(mint_url)

    async def _active_keyset(self, mint_url: str, unit: CurrencyUnit) -> Keyset:
        try:
            return self.keysets.get_active_keyset(mint_url, unit)
        except NotFoundError:
            with self._contact(mint_url):
                await self.keysets.refresh(mint_url)
            return self.keysets.get_active_keyset(mint_url, unit)

    def _require_seed(self) -> bytes:
        if self.seed is None:
            raise ValidationError("A wallet seed is required for this operation")
        return self.seed

    def _task_id(self, name: str, mint_url: str) -> str:
        return f"{name}:{mint_url}:{next(self._task_ids)}"

    # ───────────────────────── Counter reservations ─────────────────────────────────

    async def _recover_stale_in_flight(self, mint_url: str) -> None:
        # operations on a mint are serialized, so any in-flight marker is stale
        if self.counters.find_in_flight(mint_url) is None:
            return
        result = await self.reconciliation.recover_in_flight(mint_url)
        if result is not None and result.error is not None:
            logger.warning("Stale in-flight recovery on %s failed: %s", mint_url, result.error)

    @asynccontextmanager
    async def _reserve_outputs(
        self,
        mint_url: str,
        keyset: Keyset,
        amounts: list[int],
        transaction_id: int,
    ) -> AsyncIterator[_OutputBatch]:
        """Reserve counter indexes and derive outputs for one mint call.

        The in-flight marker is released on exit unless the mint call's
        outcome is unknown, in which case it stays for in-flight recovery.
        """
        seed = self._require_seed()
        await self._recover_stale_in_flight(mint_url)
        reservation = await self.counters.lock_and_reserve(
            mint_url, keyset.unit, len(amounts), transaction_id, keyset_id=keyset.id
        )
        batch: _OutputBatch | None = None
        try:
            outputs, secrets, rs = derive_blinded_messages(
                seed, keyset.id, amounts, reservation.counter_from
            )
            batch = _OutputBatch(
                reservation=reservation,
                keyset=keyset,
                outputs=outputs,
                secrets=secrets,
                rs=rs,
            )
            yield batch
        finally:
            if batch is not None and batch.in_doubt:
                logger.warning(
                    "Outcome of mint call for transaction %s is unknown, "
                    "keeping [%s, %s) in flight for recovery",
                    transaction_id,
                    reservation.counter_from,
                    reservation.counter_to,
                )
            else:
                self.counters.release(transaction_id)

    # ───────────────────────── Transactions ─────────────────────────────────

    def _open_transaction(
        self,
        transaction_id: int | None,
        type: TransactionType,
        amount: int,
        mint_url: str,
        unit: CurrencyUnit,
        **fields,
    ) -> Transaction:
        if transaction_id is None:
            return self.transactions.create(
                type,
                amount,
                mint_url,
                unit=unit,
                status=TransactionStatus.PENDING,
                **fields,
            )
        tx = self.transactions.get(transaction_id)
        if tx.status == TransactionStatus.DRAFT:
            self.transactions.update_status(tx.id, TransactionStatus.PENDING)
        return tx

    def _finish(
        self, transaction_id: int, status: TransactionStatus, message: str, **data
    ) -> None:
        self.transactions.update_statuses(
            [transaction_id], status, {"message": message, **data}
        )

    # ───────────────────────── Proof selection ─────────────────────────────────

    def _select_proofs(
        self,
        mint_url: str,
        unit: CurrencyUnit,
        amount: int,
        *,
        allow_exact: bool = True,
    ) -> tuple[list[Proof], int]:
        """Pick spendable proofs covering ``amount`` plus input fees.

        Largest proofs are taken first. With ``allow_exact`` a selection that
        matches ``amount`` exactly is returned without fees, since it can be
        handed over without a swap.

        Returns:
            Tuple of (selected_proofs, selected_total)
        """
        available = self.ledger.get_by_mint(mint_url, unit=unit)
        balance = sum(p["amount"] for p in available)
        if balance < amount:
            raise ValidationError(
                f"Insufficient balance at mint {mint_url}: need {amount} {unit}, "
                f"have {balance} {unit}"
            )

        selected: list[Proof] = []
        total = 0
        remaining = list(available)
        while remaining and total < amount:
            proof = remaining.pop(0)
            selected.append(proof)
            total += proof["amount"]

        if allow_exact and total == amount:
            return selected, total

        while total - self.keysets.calculate_input_fees(mint_url, selected) < amount:
            if not remaining:
                raise ValidationError(
                    f"Insufficient balance at mint {mint_url} to cover {amount} "
                    f"{unit} plus input fees"
                )
            proof = remaining.pop(0)
            selected.append(proof)
            total += proof["amount"]

        return selected, total

    # ───────────────────────── Minting ─────────────────────────────────

    async def request_topup(
        self, mint_url: str, amount: int, *, unit: CurrencyUnit = "sat"
    ) -> Transaction:
        """Create a mint quote and a PENDING topup transaction for it."""
        if amount <= 0:
            raise ValidationError(f"Topup amount must be positive, got {amount}")

        async def task() -> Transaction:
            mint = self._get_mint(mint_url)
            with self._contact(mint_url):
                quote = await mint.create_mint_quote(amount=amount, unit=unit)
            return self.transactions.create(
                TransactionType.TOPUP,
                amount,
                mint_url,
                unit=unit,
                status=TransactionStatus.PENDING,
                quote=quote["quote"],
                payment_request=quote.get("request"),
                expires_at=quote.get("expiry"),
            )

        return await self.queue.run(
            self._task_id("topup", mint_url), task, key=mint_url, prioritized=True
        )

    async def mint_proofs(
        self,
        mint_url: str,
        amount: int,
        quote: str,
        *,
        unit: CurrencyUnit = "sat",
        transaction_id: int | None = None,
    ) -> list[Proof]:
        """Mint proofs for a paid quote into the spendable ledger."""
        return await self.queue.run(
            self._task_id("mint", mint_url),
            lambda: self._mint_proofs(
                mint_url, amount, quote, unit=unit, transaction_id=transaction_id
            ),
            key=mint_url,
            prioritized=True,
        )

    async def _mint_proofs(
        self,
        mint_url: str,
        amount: int,
        quote: str,
        *,
        unit: CurrencyUnit,
        transaction_id: int | None,
    ) -> list[Proof]:
        if amount <= 0:
            raise ValidationError(f"Mint amount must be positive, got {amount}")

        tx = self._open_transaction(
            transaction_id, TransactionType.TOPUP, amount, mint_url, unit, quote=quote
        )
        keyset = await self._active_keyset(mint_url, unit)
        amounts = split_amount(amount, keyset.denominations)
        mint = self._get_mint(mint_url)

        with self._contact(mint_url):
            async with self._reserve_outputs(mint_url, keyset, amounts, tx.id) as batch:
                response = await batch.submit(
                    mint.mint(quote=quote, outputs=batch.outputs)
                )
                proofs = batch.unblind(
                    response["signatures"],
                    mint_url=mint_url,
                    unit=unit,
                    transaction_id=tx.id,
                )
                with atomic(self.storage, self.ledger, self.transactions):
                    added_amount, added = self.ledger.add(proofs, increase_counter=False)
                    self._finish(
                        tx.id,
                        TransactionStatus.COMPLETED,
                        "Minted proofs",
                        minted_amount=added_amount,
                    )

        logger.info("Minted %s %s from %s", added_amount, unit, mint_url)
        return added

    async def check_pending_topup(self, transaction_id: int) -> Transaction:
        """Advance a PENDING topup according to its mint quote state."""
        tx = self.transactions.get(transaction_id)
        if tx.type != TransactionType.TOPUP or not tx.quote:
            raise ValidationError(f"Transaction {transaction_id} is not a topup")

        async def task() -> Transaction:
            current = self.transactions.get(transaction_id)
            if current.status != TransactionStatus.PENDING:
                return current

            mint = self._get_mint(current.mint_url)
            with self._contact(current.mint_url):
                quote = await mint.get_mint_quote(current.quote)
            state = quote.get("state") or ("PAID" if quote.get("paid") else "UNPAID")

            if state == "PAID":
                await self._mint_proofs(
                    current.mint_url,
                    current.amount,
                    current.quote,
                    unit=current.unit,
                    transaction_id=current.id,
                )
            elif state == "ISSUED":
                self._finish(current.id, TransactionStatus.COMPLETED, "Quote already issued")
            elif current.is_expired:
                self._finish(current.id, TransactionStatus.EXPIRED, "Quote expired unpaid")
            return self.transactions.get(transaction_id)

        return await self.queue.run(
            self._task_id("topup-check", tx.mint_url), task, key=tx.mint_url
        )

    # ───────────────────────── Receive ─────────────────────────────────

    async def receive_proofs(
        self,
        mint_url: str,
        proofs: list[MintProof],
        *,
        unit: CurrencyUnit = "sat",
        transaction_id: int | None = None,
    ) -> list[Proof]:
        """Swap foreign proofs for fresh ones owned by this wallet."""
        return await self.queue.run(
            self._task_id("receive", mint_url),
            lambda: self._receive_proofs(
                mint_url, proofs, unit=unit, transaction_id=transaction_id
            ),
            key=mint_url,
            prioritized=True,
        )

    async def _receive_proofs(
        self,
        mint_url: str,
        proofs: list[MintProof],
        *,
        unit: CurrencyUnit,
        transaction_id: int | None,
    ) -> list[Proof]:
        if not proofs:
            raise ValidationError("No proofs to receive")

        with self._contact(mint_url):
            for keyset_id in dict.fromkeys(p["id"] for p in proofs):
                keyset = await self.keysets.ensure_keyset(mint_url, keyset_id)
                if keyset.unit != unit:
                    raise ValidationError(
                        f"Proofs of keyset {keyset_id} are in {keyset.unit}, not {unit}"
                    )

        total = sum(p["amount"] for p in proofs)
        fees = self.keysets.calculate_input_fees(mint_url, proofs)
        amount = total - fees
        if amount <= 0:
            raise ValidationError(
                f"Proofs worth {total} {unit} do not cover input fees of {fees}"
            )

        tx = self._open_transaction(
            transaction_id, TransactionType.RECEIVE, amount, mint_url, unit
        )
        keyset = await self._active_keyset(mint_url, unit)
        amounts = split_amount(amount, keyset.denominations)
        mint = self._get_mint(mint_url)

        with self._contact(mint_url):
            async with self._reserve_outputs(mint_url, keyset, amounts, tx.id) as batch:
                response = await batch.submit(
                    mint.swap(inputs=_mint_inputs(proofs), outputs=batch.outputs)
                )
                new_proofs = batch.unblind(
                    response["signatures"],
                    mint_url=mint_url,
                    unit=unit,
                    transaction_id=tx.id,
                )
                with atomic(self.storage, self.ledger, self.transactions):
                    added_amount, added = self.ledger.add(
                        new_proofs, increase_counter=False
                    )
                    self.transactions.set_fee(tx.id, fees)
                    self._finish(
                        tx.id,
                        TransactionStatus.COMPLETED,
                        "Received proofs",
                        received_amount=added_amount,
                    )

        logger.info("Received %s %s at %s (fee %s)", added_amount, unit, mint_url, fees)
        return added

    # ───────────────────────── Send ─────────────────────────────────

    async def send(
        self,
        mint_url: str,
        amount: int,
        *,
        unit: CurrencyUnit = "sat",
        transaction_id: int | None = None,
    ) -> list[Proof]:
        """Set aside proofs worth exactly ``amount`` for a payee.

        The returned proofs move to the pending partition and the SEND
        transaction stays PENDING until reconciliation sees them spent.
        """
        return await self.queue.run(
            self._task_id("send", mint_url),
            lambda: self._send(mint_url, amount, unit=unit, transaction_id=transaction_id),
            key=mint_url,
            prioritized=True,
        )

    async def _send(
        self,
        mint_url: str,
        amount: int,
        *,
        unit: CurrencyUnit,
        transaction_id: int | None,
    ) -> list[Proof]:
        if amount <= 0:
            raise ValidationError(f"Send amount must be positive, got {amount}")

        selected, total = self._select_proofs(mint_url, unit, amount)
        tx = self._open_transaction(
            transaction_id, TransactionType.SEND, amount, mint_url, unit
        )

        if total == amount:
            with atomic(self.storage, self.ledger, self.transactions):
                send_proofs = self.ledger.move_to_pending(selected, transaction_id=tx.id)
                self.transactions.append_data(tx.id, {"message": "Proofs set aside"})
            return send_proofs

        fees = self.keysets.calculate_input_fees(mint_url, selected)
        keep_amount = total - fees - amount
        keyset = await self._active_keyset(mint_url, unit)
        send_amounts = split_amount(amount, keyset.denominations)
        keep_amounts = split_amount(keep_amount, keyset.denominations)
        mint = self._get_mint(mint_url)

        with self._contact(mint_url):
            async with self._reserve_outputs(
                mint_url, keyset, send_amounts + keep_amounts, tx.id
            ) as batch:
                response = await batch.submit(
                    mint.swap(inputs=_mint_inputs(selected), outputs=batch.outputs)
                )
                new_proofs = batch.unblind(
                    response["signatures"],
                    mint_url=mint_url,
                    unit=unit,
                    transaction_id=tx.id,
                )
                send_proofs = new_proofs[: len(send_amounts)]
                # change is not part of the payment
                keep_proofs = [
                    Proof(**{**p, "tid": None}) for p in new_proofs[len(send_amounts) :]
                ]
                with atomic(self.storage, self.ledger, self.transactions):
                    self.ledger.remove(selected)
                    self.ledger.add(keep_proofs, increase_counter=False)
                    self.ledger.add(send_proofs, to_pending=True)
                    self.transactions.set_fee(tx.id, fees)
                    self.transactions.append_data(
                        tx.id, {"message": "Proofs set aside", "fee": fees}
                    )

        return send_proofs

    # ───────────────────────── Melt ─────────────────────────────────

    async def melt(
        self,
        mint_url: str,
        quote_id: str,
        amount: int,
        fee_reserve: int,
        *,
        unit: CurrencyUnit = "sat",
        transaction_id: int | None = None,
    ) -> Transaction:
        """Pay a melt quote with spendable proofs.

        A paid melt completes the transaction and stores any fee change. If
        the mint holds the payment as pending, cannot be reached or the task
        times out, the
        inputs are tracked as pending by mint and later settled by
        reconciliation. A rejected melt returns the inputs to spendable.
        """
        return await self.queue.run(
            self._task_id("melt", mint_url),
            lambda: self._melt(
                mint_url,
                quote_id,
                amount,
                fee_reserve,
                unit=unit,
                transaction_id=transaction_id,
            ),
            key=mint_url,
            prioritized=True,
        )

    async def pay_invoice(
        self,
        mint_url: str,
        payment_request: str,
        *,
        unit: CurrencyUnit = "sat",
    ) -> Transaction:
        """Quote a Lightning invoice at the mint and melt proofs to pay it."""

        async def task() -> Transaction:
            mint = self._get_mint(mint_url)
            with self._contact(mint_url):
                quote = await mint.create_melt_quote(payment_request, unit=unit)
            return await self._melt(
                mint_url,
                quote["quote"],
                int(quote["amount"]),
                int(quote.get("fee_reserve", 0)),
                unit=unit,
                transaction_id=None,
                payment_request=payment_request,
            )

        return await self.queue.run(
            self._task_id("pay", mint_url), task, key=mint_url, prioritized=True
        )

    async def _melt(
        self,
        mint_url: str,
        quote_id: str,
        amount: int,
        fee_reserve: int,
        *,
        unit: CurrencyUnit,
        transaction_id: int | None,
        payment_request: str | None = None,
    ) -> Transaction:
        if amount <= 0 or fee_reserve < 0:
            raise ValidationError(
                f"Invalid melt amount {amount} with fee reserve {fee_reserve}"
            )

        selected, total = self._select_proofs(
            mint_url, unit, amount + fee_reserve, allow_exact=False
        )
        tx = self._open_transaction(
            transaction_id,
            TransactionType.TRANSFER,
            amount,
            mint_url,
            unit,
            quote=quote_id,
            payment_request=payment_request,
        )
        keyset = await self._active_keyset(mint_url, unit)
        blank_amounts = [1] * blank_outputs_count(fee_reserve)
        mint = self._get_mint(mint_url)

        # inputs count as held by the mint until a response or sync settles them
        with atomic(self.storage, self.ledger, self.transactions):
            inputs = self.ledger.move_to_pending(selected, transaction_id=tx.id)
            for proof in inputs:
                self.ledger.add_to_pending_by_mint(proof)

        with self._contact(mint_url):
            async with self._reserve_outputs(
                mint_url, keyset, blank_amounts, tx.id
            ) as batch:
                try:
                    response = await batch.submit(
                        mint.melt(
                            quote=quote_id,
                            inputs=_mint_inputs(inputs),
                            outputs=batch.outputs,
                        )
                    )
                except MintConnectionError as e:
                    self.transactions.append_data(
                        tx.id, {"message": f"Mint unreachable during melt: {e}"}
                    )
                    raise
                except MintError as e:
                    with atomic(self.storage, self.ledger, self.transactions):
                        self.ledger.move_to_spendable(inputs)
                        self._finish(tx.id, TransactionStatus.ERROR, str(e))
                    raise

                state = response.get("state") or (
                    "PAID" if response.get("paid") else "UNPAID"
                )
                if state == "PAID":
                    change = batch.unblind(
                        response.get("change") or [],
                        mint_url=mint_url,
                        unit=unit,
                        transaction_id=None,
                        partial=True,
                    )
                    change_amount = sum(p["amount"] for p in change)
                    with atomic(self.storage, self.ledger, self.transactions):
                        self.ledger.remove(inputs, from_pending=True)
                        self.ledger.add(change, increase_counter=False)
                        self.transactions.set_fee(tx.id, total - amount - change_amount)
                        self._finish(
                            tx.id,
                            TransactionStatus.COMPLETED,
                            "Melt paid",
                            preimage=response.get("payment_preimage"),
                            change_amount=change_amount,
                        )
                elif state == "PENDING":
                    self.transactions.append_data(
                        tx.id, {"message": "Melt pending at the mint"}
                    )
                else:
                    with atomic(self.storage, self.ledger, self.transactions):
                        self.ledger.move_to_spendable(inputs)
                        self._finish(
                            tx.id,
                            TransactionStatus.REVERTED,
                            f"Melt not paid, state {state}",
                        )

        return self.transactions.get(tx.id)

    # ───────────────────────── Revert ─────────────────────────────────

    async def revert(self, transaction_id: int) -> Transaction:
        """Take back proofs set aside by a send the payee never claimed.

        The pending proofs are swapped for fresh ones, which invalidates the
        copies handed out. If the mint refuses the swap, usually because the
        payee already claimed the proofs, the transaction stays PENDING for
        reconciliation to settle.
        """
        tx = self.transactions.get(transaction_id)
        return await self.queue.run(
            self._task_id("revert", tx.mint_url),
            lambda: self._revert(transaction_id),
            key=tx.mint_url,
            prioritized=True,
        )

    async def _revert(self, transaction_id: int) -> Transaction:
        tx = self.transactions.get(transaction_id)
        if tx.status != TransactionStatus.PENDING:
            raise ValidationError(
                f"Only PENDING transactions can be reverted, "
                f"transaction {tx.id} is {tx.status.value}"
            )
        proofs = self.ledger.get_by_transaction_id(tx.id, is_pending=True)
        if not proofs:
            raise ValidationError(f"Transaction {tx.id} has no pending proofs to revert")
        if any(self.ledger.is_pending_by_mint(p["secret"]) for p in proofs):
            raise ValidationError(
                f"Proofs of transaction {tx.id} are held by the mint, sync instead"
            )

        total = sum(p["amount"] for p in proofs)
        fees = self.keysets.calculate_input_fees(tx.mint_url, proofs)
        amount = total - fees
        if amount <= 0:
            raise ValidationError(
                f"Proofs worth {total} {tx.unit} do not cover input fees of {fees}"
            )
        keyset = await self._active_keyset(tx.mint_url, tx.unit)
        amounts = split_amount(amount, keyset.denominations)
        mint = self._get_mint(tx.mint_url)

        # in-flight recovery reads this marker to finish the revert
        self.transactions.append_data(
            tx.id, {"message": "Reverting unclaimed proofs", "reverting": True}
        )

        with self._contact(tx.mint_url):
            async with self._reserve_outputs(
                tx.mint_url, keyset, amounts, tx.id
            ) as batch:
                try:
                    response = await batch.submit(
                        mint.swap(inputs=_mint_inputs(proofs), outputs=batch.outputs)
                    )
                except MintConnectionError:
                    raise
                except MintError as e:
                    self.transactions.append_data(
                        tx.id, {"message": f"Mint refused the revert: {e}"}
                    )
                    raise

                new_proofs = batch.unblind(
                    response["signatures"],
                    mint_url=tx.mint_url,
                    unit=tx.unit,
                    transaction_id=tx.id,
                )
                with atomic(self.storage, self.ledger, self.transactions):
                    self.ledger.remove(proofs, from_pending=True)
                    added_amount, _ = self.ledger.add(new_proofs, increase_counter=False)
                    self.transactions.set_fee(tx.id, tx.fee + fees)
                    self._finish(
                        tx.id,
                        TransactionStatus.REVERTED,
                        "Unclaimed proofs returned to spendable",
                        reverted_amount=added_amount,
                    )

        logger.info("Reverted transaction %s, %s %s returned", tx.id, added_amount, tx.unit)
        return self.transactions.get(tx.id)

    # ───────────────────────── Reconciliation ─────────────────────────────────

    async def sync_state_with_mint(self, mint_url: str, *, is_pending: bool) -> SyncResult:
        """Reconcile one ledger partition with the mint's proof states."""
        result: SyncResult = await self.queue.run(
            self._task_id("sync-pending" if is_pending else "sync", mint_url),
            lambda: self.reconciliation.sync_state_with_mint(
                mint_url, is_pending=is_pending
            ),
            key=mint_url,
        )
        self._record_outcome(mint_url, result.error)
        return result

    async def check_pending(self) -> list[SyncResult]:
        """Sync the pending partition of every mint holding pending proofs."""
        mint_urls = dict.fromkeys(p["mint"] for p in self.ledger.all_proofs(is_pending=True))
        return list(
            await asyncio.gather(
                *(self.sync_state_with_mint(url, is_pending=True) for url in mint_urls)
            )
        )

    async def check_spent(self) -> list[SyncResult]:
        """Sync the spendable partition of every mint holding proofs."""
        mint_urls = dict.fromkeys(p["mint"] for p in self.ledger.all_proofs())
        return list(
            await asyncio.gather(
                *(self.sync_state_with_mint(url, is_pending=False) for url in mint_urls)
            )
        )

    async def check_in_flight(self) -> list[RecoveryResult]:
        """Recover every counter range left in flight, typically after a crash."""
        mint_urls = dict.fromkeys(
            c.mint_url for c in self.counters.counters if c.is_in_flight
        )
        results: list[RecoveryResult] = []
        for mint_url in mint_urls:
            result = await self.queue.run(
                self._task_id("recover", mint_url),
                lambda url=mint_url: self.reconciliation.recover_in_flight(url),
                key=mint_url,
                prioritized=True,
            )
            if result is not None:
                self._record_outcome(mint_url, result.error)
                results.append(result)
        return results

    def _record_outcome(self, mint_url: str, error: Exception | None) -> None:
        if isinstance(error, MintConnectionError):
            self._set_status(mint_url, MintStatus.OFFLINE)
        elif error is None or isinstance(error, MintError):
            self._set_status(mint_url, MintStatus.ONLINE)

    # ───────────────────────── Balances ─────────────────────────────────

    def get_balances(self) -> Balances:
        return self.ledger.balances

    async def get_balance(self, mint_url: str, *, unit: CurrencyUnit = "sat") -> int:
        return self.ledger.balances.for_mint(mint_url, unit)

    # ─────────────────────────────── Cleanup ──────────────────────────────────

    async def aclose(self) -> None:
        """Stop the task queue and close mint clients."""
        await self.queue.shutdown(drop_pending=True)
        for mint in self.mints.values():
            await mint.aclose()

    # ───────────────────────── Async context manager ──────────────────────────

    async def __aenter__(self) -> Wallet:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: D401  (simple return)
        await self.aclose()
