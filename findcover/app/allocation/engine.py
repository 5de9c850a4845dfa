"""
engine.py — Deterministic greedy assignment of people to shelters.

═══════════════════════════════════════════════════════════════════════════
VULNERABILITY SCORE
═══════════════════════════════════════════════════════════════════════════

    Age            Score
    ─────────      ─────
    ≥ 70            10
    ≤ 12             8
    ≥ 60             6
    ≤ 18             4
    otherwise        2

A family scores the arithmetic mean of its members.

═══════════════════════════════════════════════════════════════════════════
ALGORITHM
═══════════════════════════════════════════════════════════════════════════

    max_distance = travel_time_budget × walking_speed      (default 0.6 km)

Phase 1 — families, highest family score first (stable):
    candidates = shelters with remaining ≥ family size
    cost(s)    = mean distance from the members to s
    drop candidates with cost > max_distance, or any member > max_distance
    reserve the whole family on the cheapest candidate in one ledger call,
    or leave the family entirely unassigned

Phase 2 — individuals outside any family:
    pairs = (person, shelter) with remaining > 0 and distance ≤ max_distance
    sort by (−score, distance) when age priority is on, else by distance;
    ties keep enumeration order (people order, then shelter order)
    walk once: assign if the person is free and the shelter has room

No backtracking, no global optimisation: the same input always yields the
same output. The whole pass runs inside one ledger transaction so racing
requests cannot interleave reservations with it.

Distances are haversine (R = 6371 km) unless a precomputed table of
walking distances is supplied; pairs missing from the table fall back to
haversine.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from findcover.app.allocation.ledger import OccupancyLedger, build_ledger
from findcover.app.allocation.models import (
    AllocationStatistics,
    Assignment,
    Family,
    Person,
    PrioritySettings,
    Shelter,
)
from findcover.app.spatial.radius_utils import haversine

logger = logging.getLogger(__name__)

# (person_id, shelter_id) → walking distance in km
DistanceTable = Mapping[Tuple[int, int], float]


# ═══════════════════════════════════════════════════════════════════════════
# Scoring
# ═══════════════════════════════════════════════════════════════════════════

def vulnerability_score(age: int) -> int:
    if age >= 70:
        return 10
    if age <= 12:
        return 8
    if age >= 60:
        return 6
    if age <= 18:
        return 4
    return 2


def family_score(members: Sequence[Person]) -> float:
    if not members:
        return 0.0
    return sum(vulnerability_score(m.age) for m in members) / len(members)


def pair_distance(
    person: Person,
    shelter: Shelter,
    distances: Optional[DistanceTable] = None,
) -> float:
    if distances is not None:
        known = distances.get((person.id, shelter.id))
        if known is not None:
            return known
    return haversine(person.location, shelter.location)


# ═══════════════════════════════════════════════════════════════════════════
# Phases
# ═══════════════════════════════════════════════════════════════════════════

def _allocate_families(
    families: Sequence[Family],
    people_by_id: Dict[int, Person],
    shelters: Sequence[Shelter],
    ledger: OccupancyLedger,
    max_km: float,
    distances: Optional[DistanceTable],
    assignments: Dict[int, Assignment],
) -> None:
    def members_of(family: Family) -> List[Person]:
        return [
            people_by_id[pid] for pid in family.member_ids
            if pid in people_by_id and pid not in assignments
        ]

    ordered = sorted(families, key=lambda f: -family_score(members_of(f)))

    for family in ordered:
        members = members_of(family)
        if not members:
            continue

        best: Optional[Shelter] = None
        best_mean = 0.0
        best_dists: List[float] = []
        for shelter in shelters:
            if ledger.remaining(shelter.id) < len(members):
                continue
            dists = [pair_distance(m, shelter, distances) for m in members]
            mean = sum(dists) / len(dists)
            # Every member within budget, not just the mean.
            if mean > max_km or max(dists) > max_km:
                continue
            if best is None or mean < best_mean:
                best, best_mean, best_dists = shelter, mean, dists

        if best is None:
            logger.info(
                "Family %d (%d members) left unassigned: no shelter fits",
                family.id, len(members),
            )
            continue

        ledger.reserve(best.id, len(members))
        for member, dist in zip(members, best_dists):
            assignments[member.id] = Assignment(
                person_id=member.id,
                shelter_id=best.id,
                distance_km=dist,
                family_id=family.id,
            )
        logger.debug(
            "Family %d → shelter %d (mean %.3f km)", family.id, best.id, best_mean,
            extra={"shelter_id": best.id, "distance_km": best_mean},
        )


def _allocate_individuals(
    people: Sequence[Person],
    shelters: Sequence[Shelter],
    ledger: OccupancyLedger,
    priority: PrioritySettings,
    max_km: float,
    distances: Optional[DistanceTable],
    assignments: Dict[int, Assignment],
    family_member_ids: Set[int],
) -> None:
    candidates: List[Tuple[int, float, Person, Shelter]] = []
    for person in people:
        # A family that found no shelter stays unassigned as a whole.
        if person.id in assignments or person.id in family_member_ids:
            continue
        score = vulnerability_score(person.age) if priority.enable_age_priority else 0
        for shelter in shelters:
            if ledger.remaining(shelter.id) <= 0:
                continue
            dist = pair_distance(person, shelter, distances)
            if dist <= max_km:
                candidates.append((score, dist, person, shelter))

    if priority.enable_age_priority:
        candidates.sort(key=lambda c: (-c[0], c[1]))
    else:
        candidates.sort(key=lambda c: c[1])

    for _score, dist, person, shelter in candidates:
        if person.id in assignments:
            continue
        if ledger.remaining(shelter.id) <= 0:
            continue
        ledger.reserve(shelter.id, 1)
        assignments[person.id] = Assignment(
            person_id=person.id, shelter_id=shelter.id, distance_km=dist,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════════════════

def allocate(
    people: Sequence[Person],
    shelters: Sequence[Shelter],
    ledger: OccupancyLedger,
    priority: PrioritySettings = PrioritySettings(),
    families: Optional[Sequence[Family]] = None,
    distances: Optional[DistanceTable] = None,
) -> Dict[int, Assignment]:
    """
    Assign people to shelters, reserving places in ``ledger`` as it goes.

    Parameters
    ----------
    people : sequence of Person
        Everyone needing cover; order breaks ties.
    shelters : sequence of Shelter
        Candidates. Inactive shelters and shelters unknown to the ledger
        are ignored.
    ledger : OccupancyLedger
        Source of remaining capacity; mutated in place.
    priority : PrioritySettings
        Age priority switch and distance budget.
    families : sequence of Family, optional
        Groups placed together before any individual.
    distances : mapping, optional
        Precomputed (person_id, shelter_id) → km walking distances.

    Returns
    -------
    dict
        person id → Assignment. People absent from the dict are unassigned.
    """
    people_by_id = {p.id: p for p in people}
    open_shelters = [s for s in shelters if s.is_active and s.id in ledger]
    max_km = priority.max_distance_km
    assignments: Dict[int, Assignment] = {}

    with ledger.transaction():
        if families:
            _allocate_families(
                families, people_by_id, open_shelters, ledger,
                max_km, distances, assignments,
            )
        _allocate_individuals(
            people, open_shelters, ledger, priority,
            max_km, distances, assignments,
            {pid for f in families or () for pid in f.member_ids},
        )

    logger.info(
        "Allocated %d/%d people across %d shelters (max %.2f km)",
        len(assignments), len(people_by_id), len(open_shelters), max_km,
        extra={"assigned_count": len(assignments)},
    )
    return assignments


def compute_statistics(
    people: Sequence[Person],
    shelters: Iterable[Shelter],
    assignments: Mapping[int, Assignment],
) -> AllocationStatistics:
    total = len(people)
    assigned = len(assignments)
    distances = [a.distance_km for a in assignments.values()]

    stats = AllocationStatistics(
        total_people=total,
        assigned_count=assigned,
        unassigned_count=total - assigned,
        assignment_percentage=(assigned / total * 100.0) if total else 0.0,
        total_capacity=sum(s.capacity for s in shelters),
    )
    if distances:
        stats.average_distance_km = sum(distances) / len(distances)
        stats.min_distance_km = min(distances)
        stats.max_distance_km = max(distances)
    return stats


def run_allocation(
    people: Sequence[Person],
    shelters: Sequence[Shelter],
    priority: PrioritySettings = PrioritySettings(),
    families: Optional[Sequence[Family]] = None,
    distances: Optional[DistanceTable] = None,
) -> Tuple[Dict[int, Assignment], AllocationStatistics]:
    """Allocate against a fresh ledger seeded from ``shelters``."""
    start = time.perf_counter()
    ledger = build_ledger(shelters)
    assignments = allocate(people, shelters, ledger, priority, families, distances)
    stats = compute_statistics(people, shelters, assignments)
    stats.execution_time_ms = (time.perf_counter() - start) * 1000
    return assignments, stats
