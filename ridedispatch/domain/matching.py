"""
Nearest-Available-Driver Matching
=================================

1. **Candidate selection** -- every driver that is ``available`` and has a
   known location.  Optionally narrowed to the H3 cells within
   ``rings`` of the pickup cell (``candidate_cells``) so the store query
   can use an index instead of scanning every driver.
2. **Ranking** -- Haversine distance from the pickup, ascending.  Python's
   sort is stable, so equal distances keep the store's iteration order.
3. **Proposal** -- the head of the ranking.  This is only a *proposal*: the
   driver's availability may change before commit, which is why the
   dispatch service re-validates it inside a transaction.

Complexity
----------
Let D = available drivers returned by the store.

* Ranking:  O(D log D)
* Proposal: O(1) after ranking
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

import h3

from .distance import haversine_km
from .entities import Driver, Location
from .enums import DriverStatus


@dataclass(frozen=True)
class Candidate:
    driver: Driver
    distance_km: float


def location_h3_cell(location: Location, resolution: int = 7) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(location.lat, location.lng, resolution)


def candidate_cells(
    pickup: Location, resolution: int, rings: Optional[int]
) -> Optional[set[str]]:
    """
    Cells a candidate driver may stand in, or ``None`` for "anywhere".

    Complexity: O(rings²) cells.
    """
    if rings is None:
        return None
    origin = location_h3_cell(pickup, resolution)
    return set(h3.grid_disk(origin, rings))


def rank_candidates(pickup: Location, drivers: Iterable[Driver]) -> list[Candidate]:
    """Return matchable drivers sorted by distance to *pickup*."""
    ranked = [
        Candidate(driver=d, distance_km=haversine_km(pickup, d.location))
        for d in drivers
        if d.status == DriverStatus.AVAILABLE and d.location is not None
    ]
    ranked.sort(key=lambda c: c.distance_km)
    return ranked

