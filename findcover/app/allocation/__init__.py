"""
allocation — Matching people to shelters under capacity and distance limits.

Sub-modules:
    models  — Person, Family, Shelter, PrioritySettings, Assignment, statistics
    ledger  — Occupancy ledger: the single source of truth for shelter places
    engine  — Two-phase greedy allocator (families, then individuals)
"""
