"""Test wallet operations against the in-process mint."""

import asyncio

import pytest

from nutledger.config import Settings
from nutledger.crypto import compute_y
from nutledger.storage import JsonFileStorage
from nutledger.types import (
    MintError,
    MintStatus,
    TransactionStatus,
    TransactionType,
    ValidationError,
)
from nutledger.wallet import Wallet

from conftest import FakeMint


class TestWalletSetup:
    """Test creating wallets and registering mints."""

    async def test_create_fetches_keysets(self, wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that creation loads the mint's active keyset."""
        keyset = wallet.keysets.get_active_keyset(fake_mint.url, "sat")

        assert keyset.id == fake_mint.keyset_id
        assert wallet.mint_statuses[fake_mint.url] == MintStatus.ONLINE

    async def test_offline_mint_does_not_fail_creation(self, seed: bytes) -> None:
        """Test that an unreachable mint is marked OFFLINE."""
        fake = FakeMint()
        fake.offline = True

        async with await Wallet.create(
            seed, mint_urls=[fake.url], mint_factory=fake.mint_factory
        ) as wallet:
            assert wallet.mint_statuses[fake.url] == MintStatus.OFFLINE

    async def test_invalid_mint_url(self, wallet: Wallet) -> None:
        """Test that malformed URLs are rejected."""
        with pytest.raises(ValidationError):
            await wallet.add_mint("ftp://mint.test")


class TestMinting:
    """Test minting proofs for paid quotes."""

    async def test_mint_custom_denominations(self, seed: bytes) -> None:
        """Test minting 1000 with a keyset of 512, 256 and 232."""
        fake = FakeMint(amounts=[512, 256, 232])
        async with await Wallet.create(
            seed, mint_urls=[fake.url], mint_factory=fake.mint_factory
        ) as wallet:
            proofs = await wallet.mint_proofs(fake.url, 1000, fake.paid_quote(1000))

            assert [p["amount"] for p in proofs] == [512, 256, 232]
            assert all(fake.is_valid(p) for p in proofs)
            counter = wallet.counters.get_or_create(fake.url, fake.keyset_id)
            assert counter.counter == 3
            assert not counter.is_in_flight
            assert await wallet.get_balance(fake.url) == 1000

    async def test_mint_records_transaction(
        self, funded_wallet: Wallet, fake_mint: FakeMint
    ) -> None:
        """Test that minting completes a TOPUP transaction."""
        [tx] = funded_wallet.transactions.all()

        assert tx.type == TransactionType.TOPUP
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.amount == 100
        assert {p["tid"] for p in funded_wallet.ledger.all_proofs()} == {tx.id}

    async def test_failed_mint_burns_counter(self, wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that a rejected mint call still consumes its indexes."""
        unpaid = (await wallet.request_topup(fake_mint.url, 8)).quote

        with pytest.raises(MintError):
            await wallet.mint_proofs(fake_mint.url, 8, unpaid)

        counter = wallet.counters.get_or_create(fake_mint.url, fake_mint.keyset_id)
        assert counter.counter == 1
        assert not counter.is_in_flight
        assert await wallet.get_balance(fake_mint.url) == 0

    async def test_invalid_amount(self, wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that non-positive amounts are rejected."""
        with pytest.raises(ValidationError):
            await wallet.mint_proofs(fake_mint.url, 0, "quote")

    async def test_without_seed(self, fake_mint: FakeMint) -> None:
        """Test that deriving outputs requires a seed."""
        async with await Wallet.create(
            mint_urls=[fake_mint.url], mint_factory=fake_mint.mint_factory
        ) as wallet:
            with pytest.raises(ValidationError, match="seed"):
                await wallet.mint_proofs(fake_mint.url, 4, fake_mint.paid_quote(4))


class TestTopup:
    """Test the quote driven topup flow."""

    async def test_topup_lifecycle(self, wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that a topup completes once its quote is paid."""
        tx = await wallet.request_topup(fake_mint.url, 21)
        assert tx.status == TransactionStatus.PENDING
        assert tx.payment_request == "lnbc21n1fake"

        assert (await wallet.check_pending_topup(tx.id)).status == TransactionStatus.PENDING

        fake_mint.quotes[tx.quote]["state"] = "PAID"
        checked = await wallet.check_pending_topup(tx.id)

        assert checked.status == TransactionStatus.COMPLETED
        assert await wallet.get_balance(fake_mint.url) == 21

    async def test_expired_topup(self, wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that an unpaid quote past its expiry expires the topup."""
        tx = await wallet.request_topup(fake_mint.url, 5)
        tx.expires_at = 1

        checked = await wallet.check_pending_topup(tx.id)

        assert checked.status == TransactionStatus.EXPIRED

    async def test_not_a_topup(self, funded_wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that only topups can be checked."""
        await funded_wallet.send(fake_mint.url, 64)
        send_tx = funded_wallet.transactions.all()[-1]

        with pytest.raises(ValidationError):
            await funded_wallet.check_pending_topup(send_tx.id)


class TestReceive:
    """Test swapping foreign proofs into the wallet."""

    async def test_receive(self, wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that received proofs are swapped for fresh ones."""
        incoming = fake_mint.issue_proofs([8, 2])

        proofs = await wallet.receive_proofs(fake_mint.url, incoming)

        assert sum(p["amount"] for p in proofs) == 10
        assert {p["secret"] for p in proofs}.isdisjoint({p["secret"] for p in incoming})
        assert all(fake_mint.is_valid(p) for p in proofs)
        assert await wallet.get_balance(fake_mint.url) == 10
        [tx] = wallet.transactions.all()
        assert (tx.type, tx.status, tx.fee) == (
            TransactionType.RECEIVE,
            TransactionStatus.COMPLETED,
            0,
        )

    async def test_receive_with_fees(self, seed: bytes) -> None:
        """Test that input fees are deducted from the received amount."""
        fake = FakeMint(input_fee_ppk=500)
        async with await Wallet.create(
            seed, mint_urls=[fake.url], mint_factory=fake.mint_factory
        ) as wallet:
            await wallet.receive_proofs(fake.url, fake.issue_proofs([8, 2]))

            assert await wallet.get_balance(fake.url) == 9
            assert wallet.transactions.all()[0].fee == 1

    async def test_receive_spent_proofs(self, wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that already spent proofs are rejected by the mint."""
        incoming = fake_mint.issue_proofs([4])
        fake_mint.spend(incoming)

        with pytest.raises(MintError, match="already spent"):
            await wallet.receive_proofs(fake_mint.url, incoming)
        assert await wallet.get_balance(fake_mint.url) == 0
        assert wallet.counters.find_in_flight(fake_mint.url) is None

    async def test_receive_wrong_unit(self, wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that proofs of another unit are refused before any swap."""
        with pytest.raises(ValidationError, match="sat, not usd"):
            await wallet.receive_proofs(fake_mint.url, fake_mint.issue_proofs([4]), unit="usd")

    async def test_concurrent_receives_use_disjoint_counters(
        self, wallet: Wallet, fake_mint: FakeMint
    ) -> None:
        """Test that parallel operations never reuse blinded messages."""
        batches = [fake_mint.issue_proofs([4, 1]) for _ in range(4)]

        await asyncio.gather(
            *(wallet.receive_proofs(fake_mint.url, batch) for batch in batches)
        )

        assert await wallet.get_balance(fake_mint.url) == 20
        counter = wallet.counters.get_or_create(fake_mint.url, fake_mint.keyset_id)
        assert counter.counter == 8


class TestSend:
    """Test setting proofs aside for a payee."""

    async def test_exact_send_moves_to_pending(
        self, funded_wallet: Wallet, fake_mint: FakeMint
    ) -> None:
        """Test that an exact selection needs no swap."""
        swaps_before = fake_mint.requests.count(("POST", "/v1/swap"))

        proofs = await funded_wallet.send(fake_mint.url, 64)

        assert [p["amount"] for p in proofs] == [64]
        assert fake_mint.requests.count(("POST", "/v1/swap")) == swaps_before
        balances = funded_wallet.get_balances()
        assert balances.for_mint(fake_mint.url, "sat") == 36
        assert balances.for_mint(fake_mint.url, "sat", pending=True) == 64
        tx = funded_wallet.transactions.all()[-1]
        assert tx.type == TransactionType.SEND
        assert tx.status == TransactionStatus.PENDING
        assert all(p["tid"] == tx.id for p in proofs)

    async def test_send_with_swap(self, funded_wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that a split swaps and keeps the change spendable."""
        proofs = await funded_wallet.send(fake_mint.url, 10)

        assert sorted(p["amount"] for p in proofs) == [2, 8]
        assert all(fake_mint.is_valid(p) for p in proofs)
        balances = funded_wallet.get_balances()
        assert balances.for_mint(fake_mint.url, "sat") == 90
        assert balances.for_mint(fake_mint.url, "sat", pending=True) == 10
        tx = funded_wallet.transactions.all()[-1]
        change = [p for p in funded_wallet.ledger.all_proofs() if p["tid"] is None]
        assert sum(p["amount"] for p in change) == 54
        assert all(p["tid"] == tx.id for p in proofs)

    async def test_insufficient_balance(
        self, funded_wallet: Wallet, fake_mint: FakeMint
    ) -> None:
        """Test that sending more than the balance fails without side effects."""
        with pytest.raises(ValidationError, match="Insufficient balance"):
            await funded_wallet.send(fake_mint.url, 101)
        assert await funded_wallet.get_balance(fake_mint.url) == 100


class TestMelt:
    """Test paying melt quotes."""

    async def test_paid_melt_returns_change(
        self, funded_wallet: Wallet, fake_mint: FakeMint
    ) -> None:
        """Test that a paid melt completes and stores fee change."""
        fake_mint.lightning_fee = 1
        quote = fake_mint.melt_quote(60, 4)

        tx = await funded_wallet.melt(fake_mint.url, quote, 60, 4)

        assert tx.status == TransactionStatus.COMPLETED
        assert tx.fee == 1
        balances = funded_wallet.get_balances()
        assert balances.for_mint(fake_mint.url, "sat") == 39
        assert balances.for_mint(fake_mint.url, "sat", pending=True) == 0
        assert funded_wallet.counters.find_in_flight(fake_mint.url) is None

    async def test_pending_melt(self, funded_wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that a melt held by the mint stays pending by mint."""
        fake_mint.melt_state = "PENDING"

        tx = await funded_wallet.melt(fake_mint.url, fake_mint.melt_quote(60, 4), 60, 4)

        assert tx.status == TransactionStatus.PENDING
        pending = funded_wallet.ledger.get_by_mint(fake_mint.url, is_pending=True)
        assert [p["amount"] for p in pending] == [64]
        assert funded_wallet.ledger.is_pending_by_mint(pending[0]["secret"])

    async def test_unpaid_melt_reverts(self, funded_wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that an unpaid melt returns the inputs."""
        fake_mint.melt_state = "UNPAID"

        tx = await funded_wallet.melt(fake_mint.url, fake_mint.melt_quote(60, 4), 60, 4)

        assert tx.status == TransactionStatus.REVERTED
        assert await funded_wallet.get_balance(fake_mint.url) == 100

    async def test_rejected_melt(self, funded_wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that a mint error returns the inputs and fails the transaction."""
        with pytest.raises(MintError):
            await funded_wallet.melt(fake_mint.url, "unknown-quote", 60, 4)

        tx = funded_wallet.transactions.all()[-1]
        assert tx.status == TransactionStatus.ERROR
        assert await funded_wallet.get_balance(fake_mint.url) == 100
        assert funded_wallet.get_balances().for_mint(fake_mint.url, "sat", pending=True) == 0

    async def test_pay_invoice(self, funded_wallet: Wallet, fake_mint: FakeMint) -> None:
        """Test that an invoice is quoted at the mint and then melted."""
        invoice = fake_mint.invoice(60)

        tx = await funded_wallet.pay_invoice(fake_mint.url, invoice)

        assert tx.status == TransactionStatus.COMPLETED
        assert tx.type == TransactionType.TRANSFER
        assert tx.payment_request == invoice
        assert tx.quote in fake_mint.melt_quotes
        assert tx.fee == 0
        assert await funded_wallet.get_balance(fake_mint.url) == 40

    async def test_pay_unknown_invoice(
        self, funded_wallet: Wallet, fake_mint: FakeMint
    ) -> None:
        """Test that a refused quote leaves the wallet untouched."""
        with pytest.raises(MintError, match="invalid invoice"):
            await funded_wallet.pay_invoice(fake_mint.url, "lnbc1unknown")

        assert await funded_wallet.get_balance(fake_mint.url) == 100
        assert len(funded_wallet.transactions.all()) == 1

    async def test_timed_out_melt_is_settled_by_sync(
        self, seed: bytes, fake_mint: FakeMint
    ) -> None:
        """Test that inputs of a melt cut off by the task timeout come back."""
        async with await Wallet.create(
            seed,
            mint_urls=[fake_mint.url],
            settings=Settings(task_timeout=0.5, lock_timeout=0.2),
            mint_factory=fake_mint.mint_factory,
        ) as wallet:
            await wallet.mint_proofs(fake_mint.url, 100, fake_mint.paid_quote(100))
            fake_mint.stall_for["/v1/melt/bolt11"] = 5.0

            with pytest.raises(TimeoutError):
                await wallet.melt(fake_mint.url, fake_mint.melt_quote(60, 4), 60, 4)

            tx = wallet.transactions.all()[-1]
            assert tx.status == TransactionStatus.PENDING
            assert len(wallet.ledger.pending_by_mint_secrets) == 1

            fake_mint.stall_for.clear()
            await wallet.check_in_flight()
            [result] = await wallet.check_pending()

            assert result.reverted_transaction_ids == [tx.id]
            assert tx.status == TransactionStatus.REVERTED
            assert await wallet.get_balance(fake_mint.url) == 100
            assert wallet.get_balances().for_mint(fake_mint.url, "sat", pending=True) == 0
            assert wallet.ledger.pending_by_mint_secrets == []


class TestRevert:
    """Test taking back unclaimed sends."""

    async def test_revert_unclaimed_send(
        self, funded_wallet: Wallet, fake_mint: FakeMint
    ) -> None:
        """Test that the sent proofs are invalidated and the funds return."""
        sent = await funded_wallet.send(fake_mint.url, 64)
        tx = funded_wallet.transactions.all()[-1]

        reverted = await funded_wallet.revert(tx.id)

        assert reverted.status == TransactionStatus.REVERTED
        assert compute_y(sent[0]["secret"]) in fake_mint.spent
        assert await funded_wallet.get_balance(fake_mint.url) == 100
        assert funded_wallet.get_balances().for_mint(fake_mint.url, "sat", pending=True) == 0
        assert all(fake_mint.is_valid(p) for p in funded_wallet.ledger.all_proofs())
        assert funded_wallet.counters.find_in_flight(fake_mint.url) is None

    async def test_revert_with_fees(self, seed: bytes) -> None:
        """Test that input fees are deducted from the returned amount."""
        fake_mint = FakeMint(input_fee_ppk=500)
        async with await Wallet.create(
            seed, mint_urls=[fake_mint.url], mint_factory=fake_mint.mint_factory
        ) as wallet:
            await wallet.mint_proofs(fake_mint.url, 8, fake_mint.paid_quote(8))
            await wallet.send(fake_mint.url, 8)
            tx = wallet.transactions.all()[-1]

            reverted = await wallet.revert(tx.id)

            assert reverted.fee == 1
            assert await wallet.get_balance(fake_mint.url) == 7

    async def test_revert_claimed_send(
        self, funded_wallet: Wallet, fake_mint: FakeMint
    ) -> None:
        """Test that a send the payee already redeemed is left to sync."""
        sent = await funded_wallet.send(fake_mint.url, 64)
        tx = funded_wallet.transactions.all()[-1]
        fake_mint.spend(sent)

        with pytest.raises(MintError, match="already spent"):
            await funded_wallet.revert(tx.id)
        assert tx.status == TransactionStatus.PENDING

        await funded_wallet.check_pending()
        assert tx.status == TransactionStatus.COMPLETED
        assert await funded_wallet.get_balance(fake_mint.url) == 36

    async def test_revert_requires_pending(self, funded_wallet: Wallet) -> None:
        """Test that finished transactions cannot be reverted."""
        topup = funded_wallet.transactions.all()[0]

        with pytest.raises(ValidationError, match="Only PENDING"):
            await funded_wallet.revert(topup.id)

    async def test_revert_pending_melt_refused(
        self, funded_wallet: Wallet, fake_mint: FakeMint
    ) -> None:
        """Test that proofs held by the mint cannot be swapped back."""
        fake_mint.melt_state = "PENDING"
        tx = await funded_wallet.melt(fake_mint.url, fake_mint.melt_quote(60, 4), 60, 4)

        with pytest.raises(ValidationError, match="held by the mint"):
            await funded_wallet.revert(tx.id)


class TestPersistence:
    """Test reopening a wallet from disk."""

    async def test_reopen(self, tmp_path, seed: bytes, fake_mint: FakeMint) -> None:
        """Test that proofs, counters and transactions survive a restart."""
        path = tmp_path / "wallet.json"
        async with await Wallet.create(
            seed,
            mint_urls=[fake_mint.url],
            storage=JsonFileStorage(path),
            mint_factory=fake_mint.mint_factory,
        ) as wallet:
            await wallet.mint_proofs(fake_mint.url, 100, fake_mint.paid_quote(100))

        async with await Wallet.create(
            seed,
            storage=JsonFileStorage(path),
            settings=Settings(),
            mint_factory=fake_mint.mint_factory,
            refresh_keysets=False,
        ) as reopened:
            assert reopened.mint_urls == [fake_mint.url]
            assert await reopened.get_balance(fake_mint.url) == 100
            counter = reopened.counters.get_or_create(fake_mint.url, fake_mint.keyset_id)
            assert counter.counter == 3

            # continuing from the persisted counter must not reuse outputs
            await reopened.mint_proofs(fake_mint.url, 5, fake_mint.paid_quote(5))
            assert await reopened.get_balance(fake_mint.url) == 105
