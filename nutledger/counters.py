"""Deterministic derivation counters and their in-flight reservations."""

from __future__ import annotations

import asyncio
import logging

from .keysets import KeysetRegistry
from .storage import Storage
from .types import CounterReservation, CurrencyUnit, MintProofsCounter, ValidationError

logger = logging.getLogger(__name__)


class CounterAuthority:
    """Hands out disjoint ranges of derivation indexes per mint keyset.

    A reserved range is burned immediately: the counter never goes back,
    even if the mint call that used the range fails. While a call is
    outstanding the range is recorded as in flight so it can be restored
    from the mint after a crash.
    """

    def __init__(
        self,
        registry: KeysetRegistry,
        storage: Storage,
        *,
        lock_timeout: float = 50.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.registry = registry
        self.storage = storage
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self._counters: dict[tuple[str, str], MintProofsCounter] = {}
        self._lock = asyncio.Lock()

    def load(self) -> None:
        self._counters = {
            (c.mint_url, c.keyset_id): c for c in self.storage.get_counters()
        }

    @property
    def counters(self) -> list[MintProofsCounter]:
        return list(self._counters.values())

    def get_or_create(
        self, mint_url: str, keyset_id: str, unit: CurrencyUnit = "sat"
    ) -> MintProofsCounter:
        counter = self._counters.get((mint_url, keyset_id))
        if counter is None:
            counter = MintProofsCounter(mint_url=mint_url, keyset_id=keyset_id, unit=unit)
            self._counters[(mint_url, keyset_id)] = counter
            self.storage.save_counter(counter)
        return counter

    def increase(
        self,
        mint_url: str,
        keyset_id: str,
        count: int,
        *,
        unit: CurrencyUnit = "sat",
    ) -> MintProofsCounter:
        if count < 0:
            raise ValidationError("Counters only move forward")
        counter = self.get_or_create(mint_url, keyset_id, unit)
        counter.counter += count
        self.storage.save_counter(counter)
        return counter

    def find_in_flight(self, mint_url: str) -> MintProofsCounter | None:
        for counter in self._counters.values():
            if counter.mint_url == mint_url and counter.is_in_flight:
                return counter
        return None

    # ───────────────────────── Reservation ─────────────────────────────────

    async def lock_and_reserve(
        self,
        mint_url: str,
        unit: CurrencyUnit,
        count: int,
        transaction_id: int,
        *,
        keyset_id: str | None = None,
    ) -> CounterReservation:
        """Reserve ``count`` indexes on the mint's active keyset for ``unit``.

        If another transaction holds the counter in flight, poll until it is
        released. After ``lock_timeout`` seconds the stale reservation is
        discarded and this one proceeds.
        """
        if count <= 0:
            raise ValidationError(f"Cannot reserve {count} counter indexes")
        if keyset_id is None:
            keyset_id = self.registry.get_active_keyset(mint_url, unit).id

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lock_timeout
        while True:
            async with self._lock:
                counter = self.get_or_create(mint_url, keyset_id, unit)
                holder = counter.in_flight_tid
                stale = loop.time() >= deadline
                if holder is None or holder == transaction_id or stale:
                    if holder is not None and holder != transaction_id:
                        logger.error(
                            "Counter %s/%s held in flight by transaction %s for "
                            "more than %ss, resetting [%s, %s)",
                            mint_url,
                            keyset_id,
                            holder,
                            self.lock_timeout,
                            counter.in_flight_from,
                            counter.in_flight_to,
                        )
                    return self._reserve(counter, count, transaction_id)

            logger.warning(
                "Counter %s/%s is in flight for transaction %s, waiting",
                mint_url,
                keyset_id,
                holder,
            )
            await asyncio.sleep(self.poll_interval)

    def _reserve(
        self, counter: MintProofsCounter, count: int, transaction_id: int
    ) -> CounterReservation:
        counter_from = counter.counter
        counter_to = counter_from + count
        counter.counter = counter_to
        counter.in_flight_from = counter_from
        counter.in_flight_to = counter_to
        counter.in_flight_tid = transaction_id
        self.storage.save_counter(counter)
        logger.debug(
            "Reserved [%s, %s) on %s/%s for transaction %s",
            counter_from,
            counter_to,
            counter.mint_url,
            counter.keyset_id,
            transaction_id,
        )
        return CounterReservation(
            mint_url=counter.mint_url,
            keyset_id=counter.keyset_id,
            counter_from=counter_from,
            counter_to=counter_to,
            transaction_id=transaction_id,
        )

    def release(self, transaction_id: int) -> None:
        """Clear every in-flight marker held by ``transaction_id``."""
        for counter in self._counters.values():
            if counter.in_flight_tid == transaction_id:
                self.reset(counter)

    def reset(self, counter: MintProofsCounter) -> None:
        """Clear the in-flight marker. The counter value is kept."""
        counter.in_flight_from = None
        counter.in_flight_to = None
        counter.in_flight_tid = None
        self.storage.save_counter(counter)
