"""
test_allocation_engine.py — Tests for the greedy shelter allocation engine.

Covers:
    • Vulnerability score table and family score
    • Individual phase: age priority, distance ordering, distance budget
    • Family phase: all-or-nothing placement, minimum mean distance, ordering
    • Capacity invariant across a run (ledger never overbooked)
    • Precomputed walking-distance table overriding haversine
    • Statistics (including the zero-assignment case) and run_allocation

Run with:
    pytest tests/test_allocation_engine.py -v
"""

from __future__ import annotations

import math

import pytest

from findcover.app.allocation.engine import (
    allocate,
    compute_statistics,
    family_score,
    run_allocation,
    vulnerability_score,
)
from findcover.app.allocation.ledger import OccupancyLedger
from findcover.app.allocation.models import Family, Person, PrioritySettings, Shelter
from findcover.app.spatial.radius_utils import EARTH_RADIUS_KM, Coordinate


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

BASE_LAT = 32.08
BASE_LON = 34.78
KM_PER_DEG_LAT = EARTH_RADIUS_KM * math.pi / 180.0

NO_AGE_PRIORITY = PrioritySettings(enable_age_priority=False)


def _north(km: float) -> Coordinate:
    """A point ``km`` due north of the base point (exact along a meridian)."""
    return Coordinate(BASE_LAT + km / KM_PER_DEG_LAT, BASE_LON)


def _make_person(person_id: int, age: int = 30, km: float = 0.1) -> Person:
    return Person(id=person_id, age=age, location=_north(km))


def _make_shelter(shelter_id: int = 1, capacity: int = 5, km: float = 0.0, **kw) -> Shelter:
    defaults = dict(
        id=shelter_id,
        name=f"Shelter {shelter_id}",
        location=_north(km),
        capacity=capacity,
    )
    defaults.update(kw)
    return Shelter(**defaults)


def _run(people, shelters, priority=PrioritySettings(), families=None, distances=None):
    ledger = OccupancyLedger(shelters)
    result = allocate(people, shelters, ledger, priority, families, distances)
    return result, ledger


# ═══════════════════════════════════════════════════════════════════════════
# Scoring
# ═══════════════════════════════════════════════════════════════════════════

class TestVulnerabilityScore:

    @pytest.mark.parametrize("age,expected", [
        (75, 10), (70, 10),
        (10, 8), (12, 8), (0, 8),
        (65, 6), (60, 6),
        (16, 4), (13, 4), (18, 4),
        (30, 2), (19, 2), (59, 2),
    ])
    def test_table(self, age, expected):
        assert vulnerability_score(age) == expected

    def test_family_score_is_mean(self):
        members = [_make_person(1, age=75), _make_person(2, age=30)]
        assert family_score(members) == pytest.approx(6.0)

    def test_empty_family_scores_zero(self):
        assert family_score([]) == 0.0


# ═══════════════════════════════════════════════════════════════════════════
# Individual phase
# ═══════════════════════════════════════════════════════════════════════════

class TestIndividuals:

    def test_ten_people_two_shelters_all_assigned(self):
        people = [_make_person(i, age=20 + 7 * i, km=0.05 * i) for i in range(1, 11)]
        shelters = [_make_shelter(1, 5, km=0.0), _make_shelter(2, 5, km=0.3)]

        result, ledger = _run(people, shelters)

        assert len(result) == 10
        assert ledger.occupancy(1) == 5
        assert ledger.occupancy(2) == 5
        assert all(a.distance_km <= 0.6 for a in result.values())

    def test_vulnerable_person_wins_last_slot(self):
        adult = _make_person(1, age=30, km=0.1)
        elder = _make_person(2, age=80, km=0.5)
        result, _ = _run([adult, elder], [_make_shelter(capacity=1)])

        assert 2 in result
        assert 1 not in result

    def test_child_beats_adult_even_when_farther(self):
        adult = _make_person(1, age=40, km=0.05)
        child = _make_person(2, age=8, km=0.55)
        result, _ = _run([adult, child], [_make_shelter(capacity=1)])
        assert list(result) == [2]

    def test_without_age_priority_nearest_wins(self):
        adult = _make_person(1, age=30, km=0.1)
        elder = _make_person(2, age=80, km=0.5)
        result, _ = _run([adult, elder], [_make_shelter(capacity=1)], NO_AGE_PRIORITY)

        assert list(result) == [1]

    def test_person_goes_to_nearest_shelter(self):
        person = _make_person(1, km=0.4)
        shelters = [_make_shelter(1, km=0.0), _make_shelter(2, km=0.5)]
        result, _ = _run([person], shelters)

        assert result[1].shelter_id == 2
        assert result[1].distance_km == pytest.approx(0.1, abs=1e-6)

    def test_distance_budget_respected(self):
        near = _make_person(1, km=0.59)
        far = _make_person(2, km=0.7)
        result, _ = _run([near, far], [_make_shelter(capacity=10)])

        assert 1 in result
        assert 2 not in result

    def test_custom_travel_budget_widens_radius(self):
        far = _make_person(1, km=1.5)
        priority = PrioritySettings(max_travel_time_minutes=3.0)
        assert priority.max_distance_km == pytest.approx(1.8)

        result, _ = _run([far], [_make_shelter()], priority)
        assert 1 in result

    def test_exact_tie_keeps_shelter_order(self):
        person = _make_person(1, km=0.2)
        shelters = [_make_shelter(7, km=0.0), _make_shelter(3, km=0.0)]
        result, _ = _run([person], shelters)
        assert result[1].shelter_id == 7

    def test_capacity_never_exceeded(self):
        people = [_make_person(i, age=5 * i, km=0.01 * i) for i in range(1, 21)]
        shelters = [_make_shelter(1, 3), _make_shelter(2, 4, km=0.2)]

        result, ledger = _run(people, shelters)

        assert len(result) == 7
        assert ledger.violations() == []
        assert ledger.remaining(1) == 0
        assert ledger.remaining(2) == 0

    def test_existing_occupancy_counts(self):
        shelters = [_make_shelter(capacity=3, occupancy=2)]
        people = [_make_person(1), _make_person(2)]
        result, _ = _run(people, shelters, NO_AGE_PRIORITY)
        assert list(result) == [1]

    def test_inactive_shelter_ignored(self):
        shelters = [_make_shelter(1, is_active=False), _make_shelter(2, km=0.5)]
        ledger = OccupancyLedger(shelters)
        result = allocate([_make_person(1, km=0.0)], shelters, ledger)
        assert result[1].shelter_id == 2

    def test_shelter_unknown_to_ledger_ignored(self):
        shelters = [_make_shelter(1), _make_shelter(2)]
        ledger = OccupancyLedger([shelters[1]])
        result = allocate([_make_person(1)], shelters, ledger)
        assert result[1].shelter_id == 2

    def test_distance_table_overrides_haversine(self):
        person = _make_person(1, km=0.0)
        shelters = [_make_shelter(1, km=0.0), _make_shelter(2, km=0.3)]
        # Shelter 1 is across a highway: a long walk despite being adjacent.
        table = {(1, 1): 0.9}

        result, _ = _run([person], shelters, distances=table)

        assert result[1].shelter_id == 2
        assert result[1].distance_km == pytest.approx(0.3, abs=1e-6)

    def test_same_input_same_output(self):
        people = [_make_person(i, age=(i * 17) % 90, km=0.03 * i) for i in range(1, 15)]
        shelters = [_make_shelter(1, 4), _make_shelter(2, 4, km=0.3)]
        first, _ = _run(people, shelters)
        second, _ = _run(people, shelters)
        assert first == second


# ═══════════════════════════════════════════════════════════════════════════
# Family phase
# ═══════════════════════════════════════════════════════════════════════════

class TestFamilies:

    def test_family_placed_together(self):
        people = [_make_person(1, km=0.1), _make_person(2, km=0.2), _make_person(3, km=0.3)]
        shelters = [_make_shelter(1, capacity=3, km=0.0)]
        result, ledger = _run(people, shelters, families=[Family(10, [1, 2, 3])])

        assert {a.shelter_id for a in result.values()} == {1}
        assert all(a.family_id == 10 for a in result.values())
        assert ledger.occupancy(1) == 3

    def test_family_too_big_stays_unassigned(self):
        people = [_make_person(i) for i in (1, 2, 3)]
        loner = _make_person(4)
        result, ledger = _run(
            people + [loner], [_make_shelter(capacity=2)],
            families=[Family(10, [1, 2, 3])],
        )

        assert set(result) == {4}
        assert ledger.occupancy(1) == 1

    def test_family_not_split_across_shelters(self):
        people = [_make_person(i, km=0.0) for i in (1, 2, 3)]
        shelters = [_make_shelter(1, capacity=2), _make_shelter(2, capacity=2)]
        result, ledger = _run(people, shelters, families=[Family(10, [1, 2, 3])])

        assert result == {}
        assert ledger.occupancy(1) == 0
        assert ledger.occupancy(2) == 0

    def test_member_beyond_budget_blocks_family(self):
        """
        Every member must be within the budget, not just the mean. This is
        deliberately stricter than a mean-only filter: nobody is sent
        further than the budget to keep a family together.
        """
        # Mean distance is ~0.22 km but one member is 0.65 km away.
        people = [_make_person(1, km=0.0), _make_person(2, km=0.0), _make_person(3, km=0.65)]
        result, _ = _run(people, [_make_shelter(capacity=5)], families=[Family(10, [1, 2, 3])])
        assert result == {}

    def test_minimum_mean_distance_wins(self):
        people = [_make_person(1, km=0.4), _make_person(2, km=0.5)]
        shelters = [_make_shelter(1, km=0.0), _make_shelter(2, km=0.45)]
        result, _ = _run(people, shelters, families=[Family(10, [1, 2])])

        assert result[1].shelter_id == 2
        assert result[2].shelter_id == 2

    def test_most_vulnerable_family_first(self):
        adults = [_make_person(1, age=35), _make_person(2, age=40)]
        children = [_make_person(3, age=6), _make_person(4, age=9)]
        families = [Family(10, [1, 2]), Family(20, [3, 4])]

        result, _ = _run(adults + children, [_make_shelter(capacity=2)], families=families)

        assert set(result) == {3, 4}

    def test_families_placed_before_individuals(self):
        family = [_make_person(1, age=30, km=0.3), _make_person(2, age=30, km=0.3)]
        elder = _make_person(3, age=85, km=0.0)
        result, _ = _run(
            family + [elder], [_make_shelter(capacity=2)],
            families=[Family(10, [1, 2])],
        )
        assert set(result) == {1, 2}

    def test_family_members_missing_from_people_skipped(self):
        people = [_make_person(1), _make_person(2)]
        result, ledger = _run(people, [_make_shelter(capacity=2)], families=[Family(10, [1, 2, 99])])
        assert set(result) == {1, 2}
        assert ledger.occupancy(1) == 2


# ═══════════════════════════════════════════════════════════════════════════
# Statistics
# ═══════════════════════════════════════════════════════════════════════════

class TestStatistics:

    def test_zero_assignments_report_zero_min(self):
        people = [_make_person(1, km=5.0)]
        stats = compute_statistics(people, [_make_shelter(capacity=4)], {})

        assert stats.assigned_count == 0
        assert stats.unassigned_count == 1
        assert stats.min_distance_km == 0.0
        assert stats.max_distance_km == 0.0
        assert stats.assignment_percentage == 0.0
        assert stats.total_capacity == 4

    def test_empty_population(self):
        stats = compute_statistics([], [], {})
        assert stats.total_people == 0
        assert stats.assignment_percentage == 0.0

    def test_run_allocation_summary(self):
        people = [_make_person(1, km=0.1), _make_person(2, km=0.3), _make_person(3, km=2.0)]
        shelters = [_make_shelter(1, capacity=4, km=0.0), _make_shelter(2, capacity=6, km=5.0)]

        assignments, stats = run_allocation(people, shelters)

        assert set(assignments) == {1, 2}
        assert stats.assigned_count == 2
        assert stats.unassigned_count == 1
        assert stats.assignment_percentage == pytest.approx(200 / 3)
        assert stats.total_capacity == 10
        assert stats.min_distance_km == pytest.approx(0.1, abs=1e-6)
        assert stats.max_distance_km == pytest.approx(0.3, abs=1e-6)
        assert stats.average_distance_km == pytest.approx(0.2, abs=1e-6)
        assert stats.execution_time_ms >= 0.0

    def test_run_allocation_leaves_shelter_records_untouched(self):
        shelter = _make_shelter(capacity=3, occupancy=1)
        run_allocation([_make_person(1), _make_person(2)], [shelter])
        assert shelter.occupancy == 1

    def test_statistics_to_dict_rounding(self):
        _, stats = run_allocation([_make_person(1, km=0.123456)], [_make_shelter()])
        out = stats.to_dict()
        assert out["min_distance_km"] == pytest.approx(0.1235)
        assert out["assignment_percentage"] == 100.0
