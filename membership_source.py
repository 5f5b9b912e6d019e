#!/usr/bin/env python3
"""Membership fact source for territory grouping.

Reads a service territory membership export (one row per resource/territory
membership) and answers horizon queries with a flat list of
``MembershipFact`` records. The export can be a local CSV or a remote CSV
that is downloaded once and cached, the same way the task sheets are.

Only memberships for active resources and active, optimization-eligible
territories whose effective range overlaps the horizon are returned.
"""

from __future__ import annotations
import csv, io, ssl, urllib.request
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

import certifi

MEMBERSHIP_COLUMNS: Sequence[str] = (
    "ServiceResourceId",
    "ServiceTerritoryId",
    "ServiceTerritoryName",
    "EffectiveStartDate",
    "EffectiveEndDate",
    "TerritoryType",
    "ResourceIsActive",
    "TerritoryIsActive",
    "OptimizationEligible",
)

TRUE_MARKERS = ("1", "TRUE", "true", "True", "Yes", "YES", "yes")


class DataError(ValueError):
    """Raised when a membership row is missing ids or carries bad timestamps."""


@dataclass(frozen=True)
class MembershipFact:
    resource_id: str
    territory_id: str
    territory_name: str
    effective_start: datetime
    effective_end: Optional[datetime]
    territory_type: str
    is_eligible: bool


# ---------------------------- I/O ------------------------------------

def download_if_needed(url: str, dest: Path, force: bool = False) -> Path:
    if dest.exists() and not force:
        return dest
    ctx = ssl.create_default_context(cafile=certifi.where())
    req = urllib.request.Request(url, headers={"User-Agent": "Mozilla/5.0 (TerritoryGrouper/1.0)"})
    with urllib.request.urlopen(req, context=ctx) as resp:
        data = resp.read()
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(data)
    return dest

def read_membership_rows(path: Path) -> List[Dict[str, str]]:
    raw = path.read_bytes()
    text = raw.decode("utf-8-sig", errors="replace")
    return list(csv.DictReader(io.StringIO(text)))

def trim(s: Optional[str]) -> str:
    return (s or "").strip()

# ------------------------ Field parsing -------------------------------

def parse_flag(value: Optional[str], default: bool = True) -> bool:
    v = trim(value)
    if not v:
        return default
    return v in TRUE_MARKERS

def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO date or datetime; empty means open ended (``None``).

    Date-only values become midnight. A trailing ``Z`` is accepted and the
    result is always naive UTC so that horizons and memberships compare;
    aware values are converted, naive values are taken as UTC.
    """
    v = trim(value)
    if not v:
        return None
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    try:
        if len(v) == 10:
            d = date.fromisoformat(v)
            return datetime(d.year, d.month, d.day)
        ts = datetime.fromisoformat(v)
    except ValueError as exc:
        raise DataError(f"Bad timestamp {value!r}") from exc
    return to_naive_utc(ts)

def to_naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)

def as_horizon_bound(value) -> datetime:
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    ts = parse_timestamp(str(value))
    if ts is None:
        raise ValueError("Horizon bounds cannot be empty")
    return ts

# ------------------------ Query ---------------------------------------

@dataclass(frozen=True)
class MembershipQuery:
    """Horizon query over membership rows.

    ``horizon_end`` is inclusive; a membership is relevant when its effective
    range overlaps ``[horizon_start, horizon_end]``. ``territory_ids``
    restricts the result to the named territories only, and
    ``territory_types`` (e.g. ``("P", "S")``) to the named membership types.
    """

    horizon_start: datetime
    horizon_end: datetime
    territory_ids: Optional[FrozenSet[str]] = None
    territory_types: Optional[FrozenSet[str]] = None

    @classmethod
    def build(cls, start, end, territory_ids: Optional[Iterable[str]] = None,
              territory_types: Optional[Iterable[str]] = None) -> "MembershipQuery":
        h_start = as_horizon_bound(start)
        h_end = as_horizon_bound(end)
        if h_end < h_start:
            raise ValueError(f"Horizon end {h_end} is before start {h_start}")
        ids = frozenset(trim(t) for t in territory_ids if trim(t)) if territory_ids is not None else None
        types = frozenset(trim(t) for t in territory_types if trim(t)) if territory_types is not None else None
        return cls(h_start, h_end, ids, types)

    def overlaps(self, start: datetime, end: Optional[datetime]) -> bool:
        if start > self.horizon_end:
            return False
        return end is None or end >= self.horizon_start

    def matches(self, fact: MembershipFact) -> bool:
        if self.territory_ids is not None and fact.territory_id not in self.territory_ids:
            return False
        if self.territory_types is not None and fact.territory_type not in self.territory_types:
            return False
        if not fact.is_eligible:
            return False
        return self.overlaps(fact.effective_start, fact.effective_end)

# ------------------------ Row -> fact ---------------------------------

def fact_from_row(row: Dict[str, str], line_no: int) -> Optional[MembershipFact]:
    """Turn one export row into a fact; ``None`` for inactive memberships."""
    resource_id = trim(row.get("ServiceResourceId"))
    territory_id = trim(row.get("ServiceTerritoryId"))
    if not resource_id:
        raise DataError(f"Row {line_no}: missing ServiceResourceId")
    if not territory_id:
        raise DataError(f"Row {line_no}: missing ServiceTerritoryId")
    if not parse_flag(row.get("ResourceIsActive")) or not parse_flag(row.get("TerritoryIsActive")):
        return None
    try:
        start = parse_timestamp(row.get("EffectiveStartDate"))
        end = parse_timestamp(row.get("EffectiveEndDate"))
    except DataError as exc:
        raise DataError(f"Row {line_no}: {exc}") from exc
    if start is None:
        raise DataError(f"Row {line_no}: missing EffectiveStartDate")
    return MembershipFact(
        resource_id=resource_id,
        territory_id=territory_id,
        territory_name=trim(row.get("ServiceTerritoryName")) or territory_id,
        effective_start=start,
        effective_end=end,
        territory_type=trim(row.get("TerritoryType")),
        is_eligible=parse_flag(row.get("OptimizationEligible")),
    )

def select_memberships(rows: Iterable[Dict[str, str]], query: MembershipQuery) -> List[MembershipFact]:
    facts: List[MembershipFact] = []
    # header is line 1
    for line_no, row in enumerate(rows, start=2):
        fact = fact_from_row(row, line_no)
        if fact is None or not query.matches(fact):
            continue
        facts.append(fact)
    return facts


class CsvMembershipSource:
    """Fact source backed by a membership export CSV.

    The file is read on every call; nothing is cached between horizons.
    """

    def __init__(self, path: Path, territory_types: Optional[Iterable[str]] = None):
        self.path = Path(path)
        self.territory_types = list(territory_types) if territory_types is not None else None

    def fetch_memberships(self, start, end, territory_filter: Optional[Iterable[str]] = None) -> List[MembershipFact]:
        query = MembershipQuery.build(start, end, territory_filter, self.territory_types)
        return select_memberships(read_membership_rows(self.path), query)


def open_source(path: Path, url: Optional[str] = None, force: bool = False,
                territory_types: Optional[Iterable[str]] = None) -> CsvMembershipSource:
    if url:
        download_if_needed(url, path, force=force)
    return CsvMembershipSource(path, territory_types=territory_types)
