"""Shared fixtures: an in-process Cashu mint served through httpx.MockTransport."""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import json
import secrets
from typing import Any

import httpx
import pytest
from coincurve import PrivateKey, PublicKey

from nutledger.config import Settings
from nutledger.crypto import compute_y, derive_keyset_id, encode_secret, hash_to_curve
from nutledger.mint import Mint
from nutledger.types import MintProof
from nutledger.wallet import Wallet


class FakeMintError(Exception):
    """Request rejected by the fake mint."""


class FakeMint:
    """Minimal single-keyset mint that signs with real secp256k1 keys.

    Knobs let tests take it offline, stall requests, lose responses after
    the mint already processed a request, or hold melts as pending.
    """

    def __init__(
        self,
        url: str = "https://mint.test",
        *,
        amounts: list[int] | None = None,
        input_fee_ppk: int = 0,
        unit: str = "sat",
    ) -> None:
        self.url = url
        self.unit = unit
        self.input_fee_ppk = input_fee_ppk
        self.private_keys = {
            amount: PrivateKey(hashlib.sha256(f"{url}/{amount}".encode()).digest())
            for amount in (amounts or [2**i for i in range(12)])
        }
        self.keys = {
            str(amount): key.public_key.format(compressed=True).hex()
            for amount, key in self.private_keys.items()
        }
        self.keyset_id = derive_keyset_id(self.keys)

        self.quotes: dict[str, dict[str, Any]] = {}
        self.melt_quotes: dict[str, dict[str, Any]] = {}
        self.signed: dict[str, dict[str, Any]] = {}  # B_ -> signature
        self.spent: set[str] = set()  # Ys
        self.pending: set[str] = set()  # Ys
        self.offline = False
        # paths whose requests are processed but whose responses never arrive
        self.lose_response_for: set[str] = set()
        # paths whose requests hang for the given seconds before processing
        self.stall_for: dict[str, float] = {}
        self.invoices: dict[str, int] = {}  # bolt11 -> amount
        self.fee_reserve = 2
        self.melt_state = "PAID"
        self.lightning_fee = 0
        self.requests: list[tuple[str, str]] = []
        self._ids = itertools.count(1)

    # ───────────────────────── Wiring ─────────────────────────────────

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def mint_factory(self, url: str) -> Mint:
        return Mint(url, client=self.client())

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        if self.offline:
            raise httpx.ConnectError("mint offline", request=request)
        if path in self.stall_for:
            await asyncio.sleep(self.stall_for[path])

        body = json.loads(request.content) if request.content else {}
        try:
            response = self._route(request.method, path, body)
        except FakeMintError as e:
            return httpx.Response(400, json={"detail": str(e), "code": 11000})

        if path in self.lose_response_for:
            raise httpx.ReadTimeout("response lost", request=request)
        return httpx.Response(200, json=response)

    def _route(self, method: str, path: str, body: dict[str, Any]) -> dict[str, Any]:
        if method == "GET" and path == "/v1/keysets":
            return {
                "keysets": [
                    {
                        "id": self.keyset_id,
                        "unit": self.unit,
                        "active": True,
                        "input_fee_ppk": self.input_fee_ppk,
                    }
                ]
            }
        if method == "GET" and path.startswith("/v1/keys"):
            return {
                "keysets": [{"id": self.keyset_id, "unit": self.unit, "keys": self.keys}]
            }
        if method == "POST" and path == "/v1/mint/quote/bolt11":
            return self._create_quote(int(body["amount"]))
        if method == "GET" and path.startswith("/v1/mint/quote/bolt11/"):
            quote_id = path.rsplit("/", 1)[1]
            if quote_id not in self.quotes:
                raise FakeMintError("quote not found")
            return self.quotes[quote_id]
        if method == "POST" and path == "/v1/mint/bolt11":
            return self._mint(body)
        if method == "POST" and path == "/v1/swap":
            return self._swap(body)
        if method == "POST" and path == "/v1/melt/quote/bolt11":
            return self._create_melt_quote(body["request"])
        if method == "POST" and path == "/v1/melt/bolt11":
            return self._melt(body)
        if method == "POST" and path == "/v1/checkstate":
            return {
                "states": [
                    {"Y": y, "state": self._state(y), "witness": None}
                    for y in body["Ys"]
                ]
            }
        if method == "POST" and path == "/v1/restore":
            known = [o for o in body["outputs"] if o["B_"] in self.signed]
            return {
                "outputs": [
                    {**o, "amount": self.signed[o["B_"]]["amount"]} for o in known
                ],
                "signatures": [self.signed[o["B_"]] for o in known],
            }
        raise FakeMintError(f"no route for {method} {path}")

    # ───────────────────────── Mint logic ─────────────────────────────────

    def _state(self, y: str) -> str:
        if y in self.spent:
            return "SPENT"
        if y in self.pending:
            return "PENDING"
        return "UNSPENT"

    def _create_quote(self, amount: int, state: str = "UNPAID") -> dict[str, Any]:
        quote_id = f"quote-{next(self._ids)}"
        self.quotes[quote_id] = {
            "quote": quote_id,
            "request": f"lnbc{amount}n1fake",
            "amount": amount,
            "unit": self.unit,
            "state": state,
            "expiry": 4102444800,
        }
        return self.quotes[quote_id]

    def paid_quote(self, amount: int) -> str:
        return self._create_quote(amount, state="PAID")["quote"]

    def melt_quote(self, amount: int, fee_reserve: int) -> str:
        quote_id = f"melt-{next(self._ids)}"
        self.melt_quotes[quote_id] = {"amount": amount, "fee_reserve": fee_reserve}
        return quote_id

    def invoice(self, amount: int) -> str:
        """A Lightning invoice this mint can quote."""
        request = f"lnbc{amount}n1fake{next(self._ids)}"
        self.invoices[request] = amount
        return request

    def _create_melt_quote(self, request: str) -> dict[str, Any]:
        amount = self.invoices.get(request)
        if amount is None:
            raise FakeMintError("invalid invoice")
        return {
            "quote": self.melt_quote(amount, self.fee_reserve),
            "amount": amount,
            "fee_reserve": self.fee_reserve,
            "unit": self.unit,
            "request": request,
            "state": "UNPAID",
            "expiry": 4102444800,
        }

    def _sign_one(self, output: dict[str, Any], amount: int) -> dict[str, Any]:
        if output["id"] != self.keyset_id:
            raise FakeMintError("unknown keyset")
        if output["B_"] in self.signed:
            raise FakeMintError("outputs have already been signed before")
        key = self.private_keys.get(amount)
        if key is None:
            raise FakeMintError(f"no key for amount {amount}")
        C_ = PublicKey(bytes.fromhex(output["B_"])).multiply(key.secret)
        signature = {
            "id": self.keyset_id,
            "amount": amount,
            "C_": C_.format(compressed=True).hex(),
        }
        self.signed[output["B_"]] = signature
        return signature

    def _sign(self, outputs: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [self._sign_one(o, int(o["amount"])) for o in outputs]

    def _verify_inputs(self, inputs: list[dict[str, Any]]) -> tuple[int, list[str]]:
        ys = [compute_y(p["secret"]) for p in inputs]
        if len(set(ys)) != len(ys):
            raise FakeMintError("duplicate inputs")
        for proof, y in zip(inputs, ys):
            if y in self.spent:
                raise FakeMintError("Token already spent")
            if y in self.pending:
                raise FakeMintError("Token is pending")
            key = self.private_keys[int(proof["amount"])]
            expected = hash_to_curve(proof["secret"].encode()).multiply(key.secret)
            if expected.format(compressed=True).hex() != proof["C"]:
                raise FakeMintError("invalid proof")
        return sum(int(p["amount"]) for p in inputs), ys

    def input_fee(self, count: int) -> int:
        return (count * self.input_fee_ppk + 999) // 1000

    def _mint(self, body: dict[str, Any]) -> dict[str, Any]:
        quote = self.quotes.get(body["quote"])
        if quote is None or quote["state"] != "PAID":
            raise FakeMintError("quote not paid")
        if sum(int(o["amount"]) for o in body["outputs"]) != quote["amount"]:
            raise FakeMintError("amount mismatch")
        signatures = self._sign(body["outputs"])
        quote["state"] = "ISSUED"
        return {"signatures": signatures}

    def _swap(self, body: dict[str, Any]) -> dict[str, Any]:
        total, ys = self._verify_inputs(body["inputs"])
        fee = self.input_fee(len(ys))
        if sum(int(o["amount"]) for o in body["outputs"]) != total - fee:
            raise FakeMintError("inputs and outputs are not balanced")
        signatures = self._sign(body["outputs"])
        self.spent.update(ys)
        return {"signatures": signatures}

    def _melt(self, body: dict[str, Any]) -> dict[str, Any]:
        quote = self.melt_quotes.get(body["quote"])
        if quote is None:
            raise FakeMintError("melt quote not found")
        total, ys = self._verify_inputs(body["inputs"])
        fee = self.input_fee(len(ys))
        if total - fee < quote["amount"] + quote["fee_reserve"]:
            raise FakeMintError("not enough inputs")

        if self.melt_state == "PENDING":
            self.pending.update(ys)
            return {"quote": body["quote"], "state": "PENDING", "paid": False}
        if self.melt_state == "UNPAID":
            return {"quote": body["quote"], "state": "UNPAID", "paid": False}

        self.spent.update(ys)
        change_amount = total - fee - quote["amount"] - self.lightning_fee
        change = []
        outputs = body.get("outputs") or []
        for bit, output in zip(_powers_of_two(change_amount), outputs):
            change.append(self._sign_one(output, bit))
        return {
            "quote": body["quote"],
            "state": "PAID",
            "paid": True,
            "payment_preimage": "00" * 32,
            "change": change,
        }

    # ───────────────────────── Test helpers ─────────────────────────────────

    def settle_pending(self, *, paid: bool) -> None:
        """Finish or fail every pending melt."""
        if paid:
            self.spent.update(self.pending)
        self.pending.clear()

    def issue_proofs(self, amounts: list[int]) -> list[MintProof]:
        """Proofs created by someone else, ready to be received."""
        proofs = []
        for amount in amounts:
            secret = encode_secret(secrets.token_bytes(32))
            C = hash_to_curve(secret.encode()).multiply(self.private_keys[amount].secret)
            proofs.append(
                MintProof(
                    id=self.keyset_id,
                    amount=amount,
                    secret=secret,
                    C=C.format(compressed=True).hex(),
                )
            )
        return proofs

    def spend(self, proofs: list[dict[str, Any]]) -> None:
        self.spent.update(compute_y(p["secret"]) for p in proofs)

    def mark_pending(self, proofs: list[dict[str, Any]]) -> None:
        self.pending.update(compute_y(p["secret"]) for p in proofs)

    def is_valid(self, proof: dict[str, Any]) -> bool:
        key = self.private_keys[int(proof["amount"])]
        expected = hash_to_curve(proof["secret"].encode()).multiply(key.secret)
        return expected.format(compressed=True).hex() == proof["C"]


def _powers_of_two(amount: int) -> list[int]:
    return [1 << i for i in range(amount.bit_length()) if amount >> i & 1]


@pytest.fixture
def seed() -> bytes:
    return bytes(range(32))


@pytest.fixture
def fake_mint() -> FakeMint:
    return FakeMint()


@pytest.fixture
def settings() -> Settings:
    return Settings(task_timeout=5.0, lock_timeout=0.2)


@pytest.fixture
async def wallet(fake_mint: FakeMint, seed: bytes, settings: Settings):
    w = await Wallet.create(
        seed,
        mint_urls=[fake_mint.url],
        settings=settings,
        mint_factory=fake_mint.mint_factory,
    )
    yield w
    await w.aclose()


@pytest.fixture
async def funded_wallet(wallet: Wallet, fake_mint: FakeMint) -> Wallet:
    """Wallet holding 100 sat minted from the fake mint."""
    await wallet.mint_proofs(fake_mint.url, 100, fake_mint.paid_quote(100))
    return wallet
