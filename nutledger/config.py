"""Wallet configuration from the environment and ``.env`` files."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from .types import ValidationError

# Environment variables
MINTS_ENV = "CASHU_MINTS"
SEED_ENV = "NUTLEDGER_SEED"
DATA_ENV = "NUTLEDGER_DATA"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ValidationError(f"{name} must be a number, got {value!r}") from None


def validate_mint_url(url: str) -> bool:
    """Validate that a mint URL has the correct format."""
    if not url:
        return False

    if not (url.startswith("http://") or url.startswith("https://")):
        return False

    # Should not end with slash for consistency
    if url.endswith("/"):
        return False

    return True


def get_mints_from_env() -> list[str]:
    """Get mint URLs from ``CASHU_MINTS``.

    Expected format: comma-separated URLs
    Example: CASHU_MINTS="https://mint1.com,https://mint2.com"

    Returns:
        List of mint URLs without duplicates, empty list if not set
    """
    env_mints = os.getenv(MINTS_ENV)
    if not env_mints:
        return []
    mints = [mint.strip().rstrip("/") for mint in env_mints.split(",")]
    # Filter out empty strings and remove duplicates while preserving order
    return list(dict.fromkeys(mint for mint in mints if mint))


def get_seed_from_env() -> bytes | None:
    """Get the wallet seed from ``NUTLEDGER_SEED`` (hex encoded)."""
    env_seed = os.getenv(SEED_ENV)
    if not env_seed:
        return None
    try:
        seed = bytes.fromhex(env_seed.strip())
    except ValueError:
        raise ValidationError(f"{SEED_ENV} must be hex encoded") from None
    if len(seed) < 16:
        raise ValidationError(f"{SEED_ENV} must be at least 16 bytes")
    return seed


@dataclass
class Settings:
    """Runtime settings for a wallet."""

    mint_urls: list[str] = field(default_factory=list)
    seed: bytes | None = None
    data_path: Path = Path("nutledger.json")
    request_timeout: float = 30.0
    task_timeout: float = 120.0
    lock_timeout: float = 50.0
    per_mint_queues: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> Settings:
        """Build settings from the environment, reading ``.env`` first."""
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))

        mint_urls = get_mints_from_env()
        invalid = [url for url in mint_urls if not validate_mint_url(url)]
        if invalid:
            raise ValidationError(f"Invalid mint URLs in {MINTS_ENV}: {invalid}")

        return cls(
            mint_urls=mint_urls,
            seed=get_seed_from_env(),
            data_path=Path(os.getenv(DATA_ENV) or "nutledger.json"),
            request_timeout=_env_float("NUTLEDGER_REQUEST_TIMEOUT", 30.0),
            task_timeout=_env_float("NUTLEDGER_TASK_TIMEOUT", 120.0),
            lock_timeout=_env_float("NUTLEDGER_LOCK_TIMEOUT", 50.0),
            per_mint_queues=_env_bool("NUTLEDGER_PER_MINT_QUEUES"),
            log_level=os.getenv("NUTLEDGER_LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging. ``MINT_DEBUG`` forces DEBUG for mint requests."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if _env_bool("MINT_DEBUG"):
        logging.getLogger("nutledger.mint").setLevel(logging.DEBUG)
