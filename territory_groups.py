#!/usr/bin/env python3
"""
Territory grouping for optimization jobs.

Reads membership facts for an optimization horizon and partitions the
territories into disjoint groups so that every resource's territories, and
every territory's resources, end up in one group. Each group is later handed
to a scheduling job as a single optimization run.

PIPELINE:
- Fetch membership facts (active resources, active eligible territories,
  effective range overlapping the horizon).
- Build the two inverse indices territory -> resources, resource -> territories.
- Extract groups.
- Validate the size ceiling. An oversized group aborts the run; nothing is
  written except the decision log.

STRATEGIES:
- "reference" (default): walk territories in first-appearance order, expand
  each unprocessed one by ONE hop (all territories sharing a resource with
  it), then merge the expansion into the group of the first already
  processed territory it contains, or open a new group.
  * No fixed point inside a pass: staggered chains can stay split.
  * When an expansion touches two groups only the first absorbs it;
    territories already owned by the other group stay there, so groups
    remain disjoint. The overlap shows up in the decision log and in the
    split-resource diagnostics.
- "transitive": full connected components via union-find.

OUTPUTS:
- territory_groups.json  {"1": {"T1": "North", ...}, ...}
- groups.csv             one row per group
- stats.txt              run recap
- decision_log.csv       create / merge / overlap / validation steps
"""

from __future__ import annotations
import argparse, copy, csv, json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import networkx as nx

from membership_source import DataError, MembershipFact, open_source, trim

# =============== CONFIG ====================
DEFAULT_CONFIG = {
    # Hard ceiling on territories per group
    "MAX_GROUP_SIZE": 100,
    # "reference" keeps the one-hop/first-match behaviour, "transitive" uses union-find
    "GROUPING_STRATEGY": "reference",
    # Membership types to keep (e.g. ["P", "S"]); None keeps every type
    "TERRITORY_TYPES": None,
    # Optional remote export; downloaded to --memberships when set
    "MEMBERSHIP_URL": None,
    "FORCE_REFRESH": False,
}

STRATEGIES = ("reference", "transitive")


def deep_update(dst: dict, src: dict) -> dict:
    for key, value in src.items():
        if isinstance(value, dict) and isinstance(dst.get(key), dict):
            deep_update(dst[key], value)
        else:
            dst[key] = copy.deepcopy(value)
    return dst


def build_config(overrides: dict | None = None) -> dict:
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if overrides:
        deep_update(cfg, overrides)
    if cfg["GROUPING_STRATEGY"] not in STRATEGIES:
        raise ValueError(f"Unknown grouping strategy {cfg['GROUPING_STRATEGY']!r}; expected one of {STRATEGIES}")
    if int(cfg["MAX_GROUP_SIZE"]) < 1:
        raise ValueError("MAX_GROUP_SIZE must be at least 1")
    cfg["MAX_GROUP_SIZE"] = int(cfg["MAX_GROUP_SIZE"])
    return cfg

# =====================================================================

class SizeViolation(RuntimeError):
    """One or more groups exceed the configured ceiling."""

    def __init__(self, max_group_size: int, offenders: Dict[int, List[str]]):
        self.max_group_size = max_group_size
        self.offenders = offenders
        details = "; ".join(
            f"group {key} has {len(ids)} territories ({', '.join(ids)})"
            for key, ids in offenders.items()
        )
        super().__init__(f"Group size ceiling {max_group_size} exceeded: {details}")

# ------------------------ Decision log --------------------------------

DECISION_FIELDS = ["Step", "Phase", "GroupKey", "TerritoryId", "Status", "Note"]

class DecisionLogger:
    def __init__(self):
        self.rows: List[Dict[str, object]] = []
        self.step = 0
    def log(self, phase: str, group_key: Optional[int], territory_id: str, status: str, note: str = ""):
        self.step += 1
        self.rows.append({
            "Step": self.step, "Phase": phase,
            "GroupKey": "" if group_key is None else group_key,
            "TerritoryId": territory_id, "Status": status, "Note": note,
        })
    def write_csv(self, out: Path):
        out.parent.mkdir(parents=True, exist_ok=True)
        with out.open("w", newline="", encoding="utf-8") as f:
            w = csv.DictWriter(f, fieldnames=DECISION_FIELDS)
            w.writeheader()
            for r in self.rows: w.writerow({k: r.get(k, "") for k in DECISION_FIELDS})

# ------------------------ Membership index ----------------------------

@dataclass
class MembershipIndex:
    # dicts used as ordered sets; iteration follows first appearance in the facts
    territory_to_resources: Dict[str, Dict[str, None]] = field(default_factory=dict)
    resource_to_territories: Dict[str, Dict[str, None]] = field(default_factory=dict)
    territory_names: Dict[str, str] = field(default_factory=dict)

    def add(self, resource_id: str, territory_id: str, name: str = "") -> None:
        self.territory_to_resources.setdefault(territory_id, {})[resource_id] = None
        self.resource_to_territories.setdefault(resource_id, {})[territory_id] = None
        if name or territory_id not in self.territory_names:
            self.territory_names[territory_id] = name or territory_id

    def territories(self) -> List[str]:
        return list(self.territory_to_resources)

    def name_of(self, territory_id: str) -> str:
        return self.territory_names.get(territory_id, territory_id)


def _as_text(value) -> str:
    return trim(value if value is None or isinstance(value, str) else str(value))


def build_index(facts: Iterable[MembershipFact]) -> MembershipIndex:
    """Build both inverse indices plus the territory display names."""
    index = MembershipIndex()
    for n, fact in enumerate(facts, start=1):
        territory_id = _as_text(getattr(fact, "territory_id", None))
        resource_id = _as_text(getattr(fact, "resource_id", None))
        if not territory_id:
            raise DataError(f"Fact {n}: missing territory id")
        if not resource_id:
            raise DataError(f"Fact {n}: missing resource id")
        index.add(resource_id, territory_id, _as_text(getattr(fact, "territory_name", "")))
    return index

# ------------------------ Extraction ----------------------------------

Groups = Dict[int, Dict[str, str]]


class GroupingSession:
    """Accumulators for one reference extraction pass.

    ``processed`` only grows; ``owner`` maps every processed territory to the
    key of the group holding it.
    """

    def __init__(self, index: MembershipIndex, logger: Optional[DecisionLogger] = None):
        self.index = index
        self.logger = logger or DecisionLogger()
        self.groups: Groups = {}
        self.processed: Set[str] = set()
        self.owner: Dict[str, int] = {}
        self.next_key = 1

    def closure(self, territory_id: str) -> List[str]:
        """Territories sharing at least one resource with ``territory_id`` (one hop)."""
        out: Dict[str, None] = {}
        for r in self.index.territory_to_resources.get(territory_id, {}):
            for t in self.index.resource_to_territories.get(r, {}):
                out[t] = None
        return list(out)

    def _first_owning_group(self, closure: List[str]) -> Optional[int]:
        for u in closure:
            if u in self.processed:
                return self.owner[u]
        return None

    def _new_group(self, closure: List[str], seed: str) -> int:
        key = self.next_key; self.next_key += 1
        self.groups[key] = {}
        for t in closure:
            self.groups[key][t] = self.index.name_of(t)
            self.owner[t] = key
        self.logger.log("create", key, seed, "Group created", f"{len(closure)} territories")
        return key

    def _merge(self, key: int, closure: List[str], seed: str) -> None:
        group = self.groups[key]
        added = 0
        for t in closure:
            holder = self.owner.get(t)
            if holder is None:
                group[t] = self.index.name_of(t); self.owner[t] = key; added += 1
            elif holder != key:
                self.logger.log("overlap", key, t, "Left in other group",
                                f"expansion of {seed} also touches group {holder}")
        self.logger.log("merge", key, seed, "Merged into existing group", f"+{added} territories")

    def run(self) -> Groups:
        for t in self.index.territories():
            if t in self.processed:
                continue
            if not self.index.territory_to_resources.get(t):
                continue
            closure = self.closure(t)
            if not closure:
                continue
            target = self._first_owning_group(closure)
            if target is None:
                self._new_group(closure, t)
            else:
                self._merge(target, closure, t)
            self.processed.update(closure)
        return self.groups


def extract_groups_reference(index: MembershipIndex, logger: Optional[DecisionLogger] = None) -> Groups:
    return GroupingSession(index, logger).run()


def extract_groups_transitive(index: MembershipIndex, logger: Optional[DecisionLogger] = None) -> Groups:
    """Connected components of the membership graph, keyed by first appearance."""
    logger = logger or DecisionLogger()
    uf = nx.utils.UnionFind()
    territories = [t for t in index.territories() if index.territory_to_resources.get(t)]
    for t in territories:
        uf[t]  # registers singletons
    for r, ts in index.resource_to_territories.items():
        if ts:
            uf.union(*ts)

    groups: Groups = {}
    key_of_root: Dict[str, int] = {}
    for t in territories:
        root = uf[t]
        key = key_of_root.get(root)
        if key is None:
            key = len(key_of_root) + 1
            key_of_root[root] = key
            groups[key] = {}
            logger.log("create", key, t, "Component created", "union-find")
        groups[key][t] = index.name_of(t)
    return groups


EXTRACTORS = {
    "reference": extract_groups_reference,
    "transitive": extract_groups_transitive,
}

# ------------------------ Validation & diagnostics --------------------

def validate_groups(groups: Groups, max_group_size: int, logger: Optional[DecisionLogger] = None) -> None:
    offenders: Dict[int, List[str]] = {}
    for key, members in groups.items():
        if len(members) > max_group_size:
            offenders[key] = list(members)
            if logger:
                logger.log("validate", key, "", "Oversized", f"{len(members)} > {max_group_size}")
    if offenders:
        raise SizeViolation(max_group_size, offenders)
    if logger:
        logger.log("validate", None, "", "OK", f"{len(groups)} groups <= {max_group_size}")


def split_resources(groups: Groups, index: MembershipIndex) -> Dict[str, List[int]]:
    """Resources whose territories land in more than one group."""
    owner = {t: key for key, members in groups.items() for t in members}
    split: Dict[str, List[int]] = {}
    for r, ts in index.resource_to_territories.items():
        keys = sorted({owner[t] for t in ts if t in owner})
        if len(keys) > 1:
            split[r] = keys
    return split


def group_resources(groups: Groups, index: MembershipIndex) -> Dict[int, List[str]]:
    out: Dict[int, List[str]] = {}
    for key, members in groups.items():
        seen: Dict[str, None] = {}
        for t in members:
            for r in index.territory_to_resources.get(t, {}):
                seen[r] = None
        out[key] = list(seen)
    return out

# ------------------------ Grouper -------------------------------------

@dataclass
class GroupingResult:
    groups: Groups
    index: MembershipIndex
    fact_count: int
    logger: DecisionLogger


class TerritoryGrouper:
    """Runs fetch -> index -> extract -> validate for one horizon.

    Configuration is fixed at construction; every call to ``create_groups``
    starts from fresh indices and accumulators.
    """

    def __init__(self, source, horizon_start, horizon_end,
                 territory_filter: Optional[Iterable[str]] = None,
                 max_group_size: int = DEFAULT_CONFIG["MAX_GROUP_SIZE"],
                 strategy: str = DEFAULT_CONFIG["GROUPING_STRATEGY"]):
        if strategy not in EXTRACTORS:
            raise ValueError(f"Unknown grouping strategy {strategy!r}")
        if max_group_size < 1:
            raise ValueError("max_group_size must be at least 1")
        self.source = source
        self.horizon_start = horizon_start
        self.horizon_end = horizon_end
        self.territory_filter = tuple(territory_filter) if territory_filter is not None else None
        self.max_group_size = max_group_size
        self.strategy = strategy

    def run(self, logger: Optional[DecisionLogger] = None) -> GroupingResult:
        logger = logger or DecisionLogger()
        facts = self.source.fetch_memberships(self.horizon_start, self.horizon_end, self.territory_filter)
        index = build_index(facts)
        logger.log("index", None, "", "Indexed",
                   f"{len(facts)} facts, {len(index.territory_to_resources)} territories, "
                   f"{len(index.resource_to_territories)} resources")
        groups = EXTRACTORS[self.strategy](index, logger)
        validate_groups(groups, self.max_group_size, logger)
        return GroupingResult(groups=groups, index=index, fact_count=len(facts), logger=logger)

    def create_groups(self) -> Groups:
        return self.run().groups

# ------------------------ Outputs -------------------------------------

GROUP_FIELDS = ["GroupKey", "Territory Count", "TerritoryIds", "TerritoryNames", "Resources"]

def write_groups_json(groups: Groups, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {str(k): v for k, v in groups.items()}
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")

def write_groups_csv(groups: Groups, index: MembershipIndex, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    resources = group_resources(groups, index)
    with path.open("w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=GROUP_FIELDS)
        w.writeheader()
        for key, members in groups.items():
            w.writerow({
                "GroupKey": key, "Territory Count": len(members),
                "TerritoryIds": ", ".join(members), "TerritoryNames": " | ".join(members.values()),
                "Resources": ", ".join(resources.get(key, [])),
            })

def stats_lines(result: GroupingResult, grouper: TerritoryGrouper) -> List[str]:
    groups = result.groups
    sizes = [len(m) for m in groups.values()]
    split = split_resources(groups, result.index)
    lines = [
        f"Horizon: {grouper.horizon_start} -> {grouper.horizon_end}",
        f"Territory filter: {', '.join(grouper.territory_filter) if grouper.territory_filter else '(none)'}",
        f"Strategy: {grouper.strategy}",
        f"Max group size: {grouper.max_group_size}",
        f"Facts: {result.fact_count}",
        f"Territories: {len(result.index.territory_to_resources)}",
        f"Resources: {len(result.index.resource_to_territories)}",
        f"Groups: {len(groups)}",
        f"Largest group: {max(sizes) if sizes else 0}",
        f"Resources spanning several groups: {len(split)}",
    ]
    for r, keys in split.items():
        lines.append(f"  {r}: groups {', '.join(str(k) for k in keys)}")
    return lines

# -------------------- CLI --------------------
def parse_args(argv: Optional[List[str]] = None):
    ap = argparse.ArgumentParser(description="Group territories that share resources")
    ap.add_argument("--memberships", default="memberships.csv", type=Path, help="Membership export CSV")
    ap.add_argument("--start", required=True, help="Horizon start (ISO date or datetime, inclusive)")
    ap.add_argument("--end", required=True, help="Horizon end (ISO date or datetime, inclusive)")
    ap.add_argument("--territory", action="append", dest="territories",
                    help="Restrict to this territory id (repeatable)")
    ap.add_argument("--max-group-size", type=int, help="Override MAX_GROUP_SIZE")
    ap.add_argument("--strategy", choices=STRATEGIES, help="Override GROUPING_STRATEGY")
    ap.add_argument("--config", type=Path, help="Optional JSON file with CONFIG overrides")
    ap.add_argument("--out", default="territory_groups.json", type=Path)
    ap.add_argument("--csv", default="groups.csv", type=Path)
    ap.add_argument("--stats", default="stats.txt", type=Path)
    ap.add_argument("--decision-log", default="decision_log.csv", type=Path)
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    overrides: dict = {}
    if args.config:
        overrides = json.loads(args.config.read_text(encoding="utf-8"))
    if args.max_group_size is not None:
        overrides["MAX_GROUP_SIZE"] = args.max_group_size
    if args.strategy:
        overrides["GROUPING_STRATEGY"] = args.strategy
    cfg = build_config(overrides)

    source = open_source(args.memberships, url=cfg["MEMBERSHIP_URL"], force=cfg["FORCE_REFRESH"],
                         territory_types=cfg["TERRITORY_TYPES"])
    grouper = TerritoryGrouper(source, args.start, args.end, territory_filter=args.territories,
                               max_group_size=cfg["MAX_GROUP_SIZE"], strategy=cfg["GROUPING_STRATEGY"])
    logger = DecisionLogger()
    try:
        result = grouper.run(logger)
    finally:
        logger.write_csv(args.decision_log); print(f"Wrote: {args.decision_log.resolve()}")

    write_groups_json(result.groups, args.out); print(f"Wrote: {args.out.resolve()}")
    write_groups_csv(result.groups, result.index, args.csv); print(f"Wrote: {args.csv.resolve()}")
    args.stats.parent.mkdir(parents=True, exist_ok=True)
    args.stats.write_text("\n".join(stats_lines(result, grouper)) + "\n", encoding="utf-8")
    print(f"Wrote: {args.stats.resolve()}")


if __name__ == "__main__":
    main()
