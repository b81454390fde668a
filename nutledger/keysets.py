"""Per-mint keyset cache and selection."""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from .crypto import derive_keyset_id
from .mint import Mint
from .storage import Storage
from .types import (
    InvalidKeysetError,
    Keyset,
    MintProof,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class KeysetRegistry:
    """Caches keysets per mint and picks the one to issue new outputs from."""

    def __init__(self, get_mint: Callable[[str], Mint], storage: Storage) -> None:
        self._get_mint = get_mint
        self.storage = storage
        self._keysets: dict[str, dict[str, Keyset]] = {}

    def load(self) -> None:
        self._keysets.clear()
        for keyset in self.storage.get_keysets():
            self._keysets.setdefault(keyset.mint_url, {})[keyset.id] = keyset

    def add_keyset(self, keyset: Keyset) -> None:
        self._keysets.setdefault(keyset.mint_url, {})[keyset.id] = keyset

    @property
    def mint_urls(self) -> list[str]:
        return list(self._keysets)

    def get_keysets(self, mint_url: str) -> list[Keyset]:
        return list(self._keysets.get(mint_url, {}).values())

    # ───────────────────────── Refresh ─────────────────────────────────

    async def refresh(self, mint_url: str) -> list[Keyset]:
        """Merge the mint's current keyset list into the cache.

        Keys are fetched only for keysets not seen before. The active flag
        and fee of known keysets are updated from the fresh list; keysets the
        mint no longer lists are kept so older proofs stay usable.
        """
        mint = self._get_mint(mint_url)
        infos = await mint.get_keysets()
        known = self._keysets.setdefault(mint_url, {})

        for info in infos:
            keyset_id = info["id"]
            existing = known.get(keyset_id)
            if existing is not None:
                existing.active = bool(info.get("active", True))
                existing.input_fee_ppk = int(info.get("input_fee_ppk", 0))
                continue

            keys = await self._fetch_keys(mint, keyset_id)
            known[keyset_id] = Keyset(
                id=keyset_id,
                mint_url=mint_url,
                unit=info["unit"],
                active=bool(info.get("active", True)),
                input_fee_ppk=int(info.get("input_fee_ppk", 0)),
                keys=keys,
            )
            logger.info("Added keyset %s (%s) for %s", keyset_id, info["unit"], mint_url)

        self.storage.save_keysets(mint_url, list(known.values()))
        return list(known.values())

    async def _fetch_keys(self, mint: Mint, keyset_id: str) -> dict[str, str]:
        keysets = await mint.get_keys(keyset_id)
        matching = [ks for ks in keysets if ks["id"] == keyset_id]
        if not matching:
            raise InvalidKeysetError(f"Mint did not return keys for keyset {keyset_id}")

        keys = matching[0]["keys"]
        # Version 00 ids commit to the keys, so a mismatch means tampered keys
        if keyset_id.startswith("00") and len(keyset_id) == 16:
            derived = derive_keyset_id(keys)
            if derived != keyset_id:
                raise InvalidKeysetError(
                    f"Keyset {keyset_id} keys hash to {derived}"
                )
        return keys

    async def ensure_keyset(self, mint_url: str, keyset_id: str) -> Keyset:
        """Return a keyset, refreshing from the mint if it is not cached."""
        keyset = self._keysets.get(mint_url, {}).get(keyset_id)
        if keyset is None:
            await self.refresh(mint_url)
        return self.get_keyset(mint_url, keyset_id)

    # ───────────────────────── Selection ─────────────────────────────────

    def get_active_keyset(self, mint_url: str, unit: str) -> Keyset:
        """Active keyset for ``unit`` with the lowest input fee.

        Ties go to the keyset seen first.
        """
        candidates = [
            ks
            for ks in self._keysets.get(mint_url, {}).values()
            if ks.active and ks.unit == unit
        ]
        if not candidates:
            raise NotFoundError(f"No active {unit} keyset for mint {mint_url}")
        return min(candidates, key=lambda ks: ks.input_fee_ppk)

    def get_keyset(self, mint_url: str, keyset_id: str) -> Keyset:
        try:
            return self._keysets[mint_url][keyset_id]
        except KeyError:
            raise NotFoundError(
                f"Unknown keyset {keyset_id} for mint {mint_url}"
            ) from None

    def get_keys_for_amounts(
        self, mint_url: str, keyset_id: str, amounts: Iterable[int]
    ) -> dict[str, str]:
        """Subset of a keyset's keys covering ``amounts``."""
        keyset = self.get_keyset(mint_url, keyset_id)
        wanted = {str(amount) for amount in amounts}
        missing = wanted - set(keyset.keys)
        if missing:
            raise ValidationError(
                f"Keyset {keyset_id} has no keys for amounts {sorted(missing, key=int)}"
            )
        return {amount: keyset.keys[amount] for amount in wanted}

    # ───────────────────────── Fees ─────────────────────────────────

    def calculate_input_fees(self, mint_url: str, proofs: Iterable[MintProof]) -> int:
        """Calculate input fees for spending proofs (NUT-02).

        Fees are ``input_fee_ppk`` parts per thousand per input, summed and
        rounded up.
        """
        sum_fees = 0
        for proof in proofs:
            keyset = self._keysets.get(mint_url, {}).get(proof["id"])
            if keyset is None:
                logger.warning(
                    "Unknown keyset %s for fee calculation, assuming no fee",
                    proof["id"],
                )
                continue
            sum_fees += keyset.input_fee_ppk

        return (sum_fees + 999) // 1000
