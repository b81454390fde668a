"""Type definitions for the nutledger package following NUT-00 specifications."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, TypedDict


# Standard currency units as per NUT-00 specification
CurrencyUnit = Literal[
    "btc",  # Bitcoin
    "sat",  # Satoshi (1e-8 BTC)
    "msat",  # Millisatoshi (1e-11 BTC)
    "usd",  # US Dollar
    "eur",  # Euro
    "gbp",  # British Pound
    "jpy",  # Japanese Yen
    "cny",  # Chinese Yuan
    "cad",  # Canadian Dollar
    "chf",  # Swiss Franc
    "aud",  # Australian Dollar
    "inr",  # Indian Rupee
    # Special units
    "auth",  # Authentication tokens
    # Stablecoins
    "usdt",  # Tether
    "usdc",  # USD Coin
    "dai",  # DAI Stablecoin
]


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────


class WalletError(Exception):
    """Base class for wallet errors."""


class CryptoError(WalletError):
    """Malformed point, signature or missing mint key. Never retried."""


class ValidationError(WalletError):
    """Invalid request: unit mismatch, missing keys, insufficient funds."""


class NotFoundError(ValidationError):
    """Requested mint, keyset or transaction is unknown."""


class MintError(WalletError):
    """Base exception for mint errors."""


class MintConnectionError(MintError):
    """The mint could not be reached or did not answer in time."""


class InvalidKeysetError(MintError):
    """Raised when keyset structure is invalid per NUT-01."""


class StorageError(WalletError):
    """Persistence failure."""


# ──────────────────────────────────────────────────────────────────────────────
# Proofs and blind signatures
# ──────────────────────────────────────────────────────────────────────────────


class MintProof(TypedDict):
    """Proof as exchanged with a mint (NUT-00)."""

    id: str  # keyset ID
    amount: int
    secret: str  # base64 encoded secret bytes
    C: str  # hex encoded unblinded signature


class Proof(MintProof):
    """Proof as held by the wallet.

    Extends the mint proof with the issuing mint, its unit and a weak
    back-reference to the transaction that owns it.
    """

    mint: str
    unit: CurrencyUnit
    tid: int | None


class StoredProof(Proof):
    """Proof record as kept by the persistence layer."""

    is_pending: bool
    is_spent: bool


class BlindedMessage(TypedDict):
    """Blinded message for mint operations."""

    amount: int
    B_: str  # hex encoded blinded message
    id: str  # keyset ID


class BlindedSignature(TypedDict):
    """Blinded signature response from mint."""

    amount: int
    C_: str  # hex encoded blinded signature
    id: str  # keyset ID


# ──────────────────────────────────────────────────────────────────────────────
# Keysets and counters
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class Keyset:
    """Complete keyset information."""

    id: str
    mint_url: str
    unit: CurrencyUnit
    active: bool
    input_fee_ppk: int = 0
    keys: dict[str, str] = field(default_factory=dict)  # amount -> pubkey
    denominations: list[int] = field(default_factory=list)  # available denominations

    def __post_init__(self):
        """Extract denominations from keys if not provided."""
        if not self.denominations and self.keys:
            self.denominations = sorted([int(amount) for amount in self.keys.keys()])

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mint_url": self.mint_url,
            "unit": self.unit,
            "active": self.active,
            "input_fee_ppk": self.input_fee_ppk,
            "keys": dict(self.keys),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Keyset:
        return cls(
            id=data["id"],
            mint_url=data["mint_url"],
            unit=data["unit"],
            active=bool(data.get("active", True)),
            input_fee_ppk=int(data.get("input_fee_ppk", 0)),
            keys=dict(data.get("keys", {})),
        )


@dataclass
class MintProofsCounter:
    """Deterministic derivation counter for one mint keyset.

    ``counter`` only ever increases. The in-flight fields are set while a
    mint call using derivation indexes ``[in_flight_from, in_flight_to)`` is
    outstanding.
    """

    mint_url: str
    keyset_id: str
    unit: CurrencyUnit
    counter: int = 0
    in_flight_from: int | None = None
    in_flight_to: int | None = None
    in_flight_tid: int | None = None

    @property
    def is_in_flight(self) -> bool:
        return self.in_flight_from is not None and self.in_flight_to is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mint_url": self.mint_url,
            "keyset_id": self.keyset_id,
            "unit": self.unit,
            "counter": self.counter,
            "in_flight_from": self.in_flight_from,
            "in_flight_to": self.in_flight_to,
            "in_flight_tid": self.in_flight_tid,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MintProofsCounter:
        return cls(**data)


@dataclass(frozen=True)
class CounterReservation:
    """A reserved, burned range of derivation indexes."""

    mint_url: str
    keyset_id: str
    counter_from: int
    counter_to: int
    transaction_id: int

    @property
    def count(self) -> int:
        return self.counter_to - self.counter_from


class MintStatus(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


# ──────────────────────────────────────────────────────────────────────────────
# Transactions
# ──────────────────────────────────────────────────────────────────────────────


class TransactionType(str, Enum):
    SEND = "SEND"
    RECEIVE = "RECEIVE"
    TOPUP = "TOPUP"
    TRANSFER = "TRANSFER"


class TransactionStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    REVERTED = "REVERTED"
    EXPIRED = "EXPIRED"


@dataclass
class Transaction:
    """Wallet transaction with an append-only history of status snapshots."""

    id: int
    type: TransactionType
    amount: int
    unit: CurrencyUnit
    mint_url: str
    status: TransactionStatus = TransactionStatus.DRAFT
    fee: int = 0
    memo: str | None = None
    quote: str | None = None
    payment_request: str | None = None
    expires_at: int | None = None  # unix timestamp
    created_at: float = field(default_factory=time.time)
    data: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and time.time() > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "amount": self.amount,
            "unit": self.unit,
            "mint_url": self.mint_url,
            "status": self.status.value,
            "fee": self.fee,
            "memo": self.memo,
            "quote": self.quote,
            "payment_request": self.payment_request,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
            "data": list(self.data),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        fields = dict(data)
        fields["type"] = TransactionType(fields["type"])
        fields["status"] = TransactionStatus(fields["status"])
        fields["data"] = list(fields.get("data", []))
        return cls(**fields)


# ──────────────────────────────────────────────────────────────────────────────
# Results
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class Balances:
    """Spendable and pending balances, recomputed from the ledger on each read."""

    mint_balances: dict[str, dict[str, int]] = field(default_factory=dict)
    mint_pending_balances: dict[str, dict[str, int]] = field(default_factory=dict)
    unit_balances: dict[str, int] = field(default_factory=dict)
    unit_pending_balances: dict[str, int] = field(default_factory=dict)

    def for_mint(self, mint_url: str, unit: str, *, pending: bool = False) -> int:
        balances = self.mint_pending_balances if pending else self.mint_balances
        return balances.get(mint_url, {}).get(unit, 0)


@dataclass
class TransactionStateUpdate:
    id: int
    status: TransactionStatus
    message: str | None = None


@dataclass
class SyncResult:
    """Outcome of reconciling one ledger partition of one mint."""

    mint_url: str
    is_pending: bool
    spent_count: int = 0
    spent_amount: int = 0
    pending_count: int = 0
    pending_amount: int = 0
    reverted_count: int = 0
    reverted_amount: int = 0
    transaction_state_updates: list[TransactionStateUpdate] = field(
        default_factory=list
    )
    completed_transaction_ids: list[int] = field(default_factory=list)
    error_transaction_ids: list[int] = field(default_factory=list)
    pending_transaction_ids: list[int] = field(default_factory=list)
    reverted_transaction_ids: list[int] = field(default_factory=list)
    error: Exception | None = None


@dataclass
class RecoveryResult:
    """Outcome of restoring proofs for an in-flight counter range."""

    mint_url: str
    keyset_id: str
    in_flight_from: int
    in_flight_to: int
    transaction_id: int | None
    recovered_count: int = 0
    recovered_amount: int = 0
    spent_count: int = 0
    spent_amount: int = 0
    error: Exception | None = None
