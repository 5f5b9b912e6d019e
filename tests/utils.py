"""Fixtures and helpers for grouping tests."""
from __future__ import annotations

import csv
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from membership_source import MEMBERSHIP_COLUMNS, MembershipFact


def membership_row(
    resource: str,
    territory: str,
    *,
    name: str | None = None,
    start: str = "2024-01-01",
    end: str = "",
    territory_type: str = "P",
    resource_active: bool = True,
    territory_active: bool = True,
    eligible: bool = True,
) -> Dict[str, str]:
    """Build a Dict row for a membership export."""

    row = {col: "" for col in MEMBERSHIP_COLUMNS}
    row.update(
        {
            "ServiceResourceId": resource,
            "ServiceTerritoryId": territory,
            "ServiceTerritoryName": name if name is not None else f"{territory} Area",
            "EffectiveStartDate": start,
            "EffectiveEndDate": end,
            "TerritoryType": territory_type,
            "ResourceIsActive": "TRUE" if resource_active else "FALSE",
            "TerritoryIsActive": "TRUE" if territory_active else "FALSE",
            "OptimizationEligible": "TRUE" if eligible else "FALSE",
        }
    )
    return row


def write_memberships(path: Path, rows: Iterable[Dict[str, str]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=MEMBERSHIP_COLUMNS)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def fact(resource: str, territory: str, name: str | None = None) -> MembershipFact:
    return MembershipFact(
        resource_id=resource,
        territory_id=territory,
        territory_name=name if name is not None else f"{territory} Area",
        effective_start=datetime(2024, 1, 1),
        effective_end=None,
        territory_type="P",
        is_eligible=True,
    )


def facts_from_pairs(pairs: Sequence[Tuple[str, str]]) -> List[MembershipFact]:
    return [fact(r, t) for r, t in pairs]


class ListSource:
    """In-memory fact source that honours the territory filter and counts calls."""

    def __init__(self, facts: Iterable[MembershipFact]):
        self.facts = list(facts)
        self.calls: List[Tuple[object, object, Optional[Tuple[str, ...]]]] = []

    def fetch_memberships(self, start, end, territory_filter=None) -> List[MembershipFact]:
        self.calls.append((start, end, tuple(territory_filter) if territory_filter is not None else None))
        if territory_filter is None:
            return list(self.facts)
        wanted = set(territory_filter)
        return [f for f in self.facts if f.territory_id in wanted]


class FailingSource:
    def __init__(self, exc: Exception):
        self.exc = exc

    def fetch_memberships(self, start, end, territory_filter=None):
        raise self.exc
