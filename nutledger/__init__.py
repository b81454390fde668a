"""Nuts Ledger - Cashu wallet proof engine.

Deterministic-secret Cashu wallet core with a two-partition proof ledger,
crash-safe counter reservations and mint state reconciliation.
"""

__version__ = "0.1.0"

from .wallet import Wallet
from .storage import JsonFileStorage, MemoryStorage, Storage
from .types import (
    CryptoError,
    MintConnectionError,
    MintError,
    NotFoundError,
    Proof,
    StorageError,
    TransactionStatus,
    ValidationError,
    WalletError,
)

__all__ = [
    # Main wallet class
    "Wallet",
    # Storage
    "Storage",
    "MemoryStorage",
    "JsonFileStorage",
    # Types
    "Proof",
    "TransactionStatus",
    # Errors
    "WalletError",
    "CryptoError",
    "ValidationError",
    "NotFoundError",
    "MintError",
    "MintConnectionError",
    "StorageError",
]
