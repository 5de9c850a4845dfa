"""
ledger.py — Authoritative per-shelter occupancy with capacity enforcement.

═══════════════════════════════════════════════════════════════════════════
INVARIANT
═══════════════════════════════════════════════════════════════════════════

    0 ≤ occupancy[s] ≤ capacity[s]    for every registered shelter s

``reserve`` refuses any request that would break the upper bound and
``release`` clamps at zero. All mutation happens under one re-entrant lock,
so concurrent request handlers cannot overbook a shelter.

═══════════════════════════════════════════════════════════════════════════
TRANSACTIONS
═══════════════════════════════════════════════════════════════════════════

``transaction()`` holds the lock for a whole block and journals every
reservation/release made inside it. If the block raises, the journal is
replayed backwards so no decrement from the failed block survives:

    with ledger.transaction():
        ledger.reserve(shelter_id, family_size)
        store.save_allocation(...)      # raises PersistenceError
    # → reservation rolled back, error propagates

Transactions nest; an inner failure caught by the caller only undoes the
inner block.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Tuple

from findcover.app.allocation.models import (
    Shelter,
    ShelterStatus,
    classify_occupancy,
    occupancy_percentage,
)
from findcover.app.core.errors import CapacityExceededError, NotFoundError

logger = logging.getLogger(__name__)


class OccupancyLedger:
    """Capacity and live occupancy for a set of shelters."""

    def __init__(self, shelters: Iterable[Shelter] = ()):
        self._lock = threading.RLock()
        self._capacity: Dict[int, int] = {}
        self._occupancy: Dict[int, int] = {}
        # One journal per open transaction: (shelter_id, delta applied)
        self._journals: List[List[Tuple[int, int]]] = []
        for shelter in shelters:
            self.register(shelter)

    # ── Registration ──

    def register(self, shelter: Shelter) -> None:
        self.register_capacity(shelter.id, shelter.capacity, shelter.occupancy)

    def register_capacity(self, shelter_id: int, capacity: int, occupancy: int = 0) -> None:
        if capacity < 0:
            raise ValueError(f"capacity must be >= 0, got {capacity}")
        with self._lock:
            self._capacity[shelter_id] = capacity
            self._occupancy[shelter_id] = max(0, min(occupancy, capacity))

    def __contains__(self, shelter_id: int) -> bool:
        return shelter_id in self._capacity

    def _require(self, shelter_id: int) -> None:
        if shelter_id not in self._capacity:
            raise NotFoundError("Shelter", id=shelter_id)

    # ── Reads ──

    def capacity(self, shelter_id: int) -> int:
        self._require(shelter_id)
        return self._capacity[shelter_id]

    def occupancy(self, shelter_id: int) -> int:
        self._require(shelter_id)
        return self._occupancy[shelter_id]

    def remaining(self, shelter_id: int) -> int:
        with self._lock:
            self._require(shelter_id)
            return self._capacity[shelter_id] - self._occupancy[shelter_id]

    def status(self, shelter_id: int) -> ShelterStatus:
        with self._lock:
            self._require(shelter_id)
            return classify_occupancy(
                self._capacity[shelter_id], self._occupancy[shelter_id],
            )

    def occupancy_percentage(self, shelter_id: int) -> float:
        with self._lock:
            self._require(shelter_id)
            return occupancy_percentage(
                self._capacity[shelter_id], self._occupancy[shelter_id],
            )

    def snapshot(self) -> Dict[int, Dict[str, int]]:
        with self._lock:
            return {
                sid: {"capacity": cap, "occupancy": self._occupancy[sid]}
                for sid, cap in self._capacity.items()
            }

    def violations(self) -> List[int]:
        """Shelter ids whose occupancy is outside [0, capacity]."""
        with self._lock:
            return [
                sid for sid, cap in self._capacity.items()
                if not (0 <= self._occupancy[sid] <= cap)
            ]

    # ── Mutation ──

    def reserve(self, shelter_id: int, count: int = 1) -> int:
        """
        Take ``count`` places in a shelter.

        Returns
        -------
        int
            The new occupancy.

        Raises
        ------
        CapacityExceededError
            Fewer than ``count`` places are free; nothing is changed.
        """
        if count <= 0:
            raise ValueError(f"reservation count must be positive, got {count}")
        with self._lock:
            self._require(shelter_id)
            available = self._capacity[shelter_id] - self._occupancy[shelter_id]
            if count > available:
                raise CapacityExceededError(shelter_id, count, available)
            self._occupancy[shelter_id] += count
            self._journal(shelter_id, count)
            return self._occupancy[shelter_id]

    def release(self, shelter_id: int, count: int = 1) -> int:
        """Free ``count`` places; occupancy never drops below zero."""
        if count <= 0:
            raise ValueError(f"release count must be positive, got {count}")
        with self._lock:
            self._require(shelter_id)
            current = self._occupancy[shelter_id]
            freed = min(count, current)
            if freed < count:
                logger.warning(
                    "Release of %d on shelter %d clamped to %d",
                    count, shelter_id, freed,
                    extra={"shelter_id": shelter_id},
                )
            self._occupancy[shelter_id] = current - freed
            if freed:
                self._journal(shelter_id, -freed)
            return self._occupancy[shelter_id]

    def _journal(self, shelter_id: int, delta: int) -> None:
        if self._journals:
            self._journals[-1].append((shelter_id, delta))

    @contextmanager
    def transaction(self) -> Iterator["OccupancyLedger"]:
        with self._lock:
            journal: List[Tuple[int, int]] = []
            self._journals.append(journal)
            try:
                yield self
            except BaseException:
                self._journals.pop()
                for shelter_id, delta in reversed(journal):
                    self._occupancy[shelter_id] -= delta
                if journal:
                    logger.warning(
                        "Ledger transaction rolled back %d change(s)", len(journal),
                    )
                raise
            else:
                self._journals.pop()
                if self._journals:
                    # Committed inner changes stay undoable by the outer block.
                    self._journals[-1].extend(journal)


def build_ledger(shelters: Iterable[Shelter], *, active_only: bool = True) -> OccupancyLedger:
    """Fresh ledger seeded from shelter records."""
    return OccupancyLedger(s for s in shelters if s.is_active or not active_only)
