from __future__ import annotations

import json
import random
import subprocess
import sys
from pathlib import Path

import pytest

import territory_groups as grouping
from membership_source import DataError
from tests.utils import FailingSource, ListSource, fact, facts_from_pairs, membership_row, write_memberships

ROOT = Path(__file__).resolve().parents[1]

# A(R1) - B(R1,R2) - C(R2,R3) - D(R3), listed so that A then D are visited first
STAGGERED_CHAIN = [("R1", "A"), ("R3", "D"), ("R1", "B"), ("R2", "B"), ("R2", "C"), ("R3", "C")]

# T shares R3 with B (group 1) and R4 with D (group 2)
TWO_GROUP_TOUCH = [
    ("R1", "A"), ("R1", "B"),
    ("R2", "C"), ("R2", "D"),
    ("R3", "T"), ("R3", "B"),
    ("R4", "T"), ("R4", "D"),
]


def _grouper(pairs, **kwargs) -> grouping.TerritoryGrouper:
    return grouping.TerritoryGrouper(ListSource(facts_from_pairs(pairs)), "2024-01-01", "2024-01-31", **kwargs)


def _members(groups) -> dict:
    return {key: list(members) for key, members in groups.items()}


def _assert_disjoint(groups) -> None:
    seen = {}
    for key, members in groups.items():
        for t in members:
            assert t not in seen, f"{t} in groups {seen[t]} and {key}"
            seen[t] = key


def test_index_is_symmetric_and_keeps_first_appearance_order() -> None:
    facts = facts_from_pairs([("R1", "A"), ("R1", "B"), ("R2", "B"), ("R1", "A")])
    index = grouping.build_index(facts)

    assert index.territories() == ["A", "B"]
    assert list(index.territory_to_resources["B"]) == ["R1", "R2"]
    assert list(index.resource_to_territories["R1"]) == ["A", "B"]
    for t, resources in index.territory_to_resources.items():
        for r in resources:
            assert t in index.resource_to_territories[r]
    for r, territories in index.resource_to_territories.items():
        for t in territories:
            assert r in index.territory_to_resources[t]


def test_index_display_names_fall_back_to_id() -> None:
    index = grouping.build_index([fact("R1", "A", ""), fact("R2", "A", "Alpha"), fact("R3", "B", "")])
    assert index.name_of("A") == "Alpha"
    assert index.name_of("B") == "B"


def test_index_coerces_numeric_ids_to_text() -> None:
    index = grouping.build_index([fact(7, 1201, "North"), fact(" 7 ", "T2")])
    assert index.territories() == ["1201", "T2"]
    assert list(index.resource_to_territories["7"]) == ["1201", "T2"]
    assert index.name_of("1201") == "North"


@pytest.mark.parametrize("bad", [fact("R1", ""), fact("", "T1")])
def test_index_rejects_facts_without_ids(bad) -> None:
    with pytest.raises(DataError):
        grouping.build_index([fact("R0", "T0"), bad])


def test_two_disconnected_clusters_make_two_groups() -> None:
    groups = _grouper([("R1", "T1"), ("R1", "T2"), ("R2", "T3"), ("R2", "T4")], max_group_size=2).create_groups()
    assert groups == {
        1: {"T1": "T1 Area", "T2": "T2 Area"},
        2: {"T3": "T3 Area", "T4": "T4 Area"},
    }


def test_chain_through_second_resource_is_merged() -> None:
    groups = _grouper([("R1", "A"), ("R1", "B"), ("R2", "B"), ("R2", "C")], max_group_size=3).create_groups()
    assert _members(groups) == {1: ["A", "B", "C"]}


def test_oversized_group_raises_size_violation_naming_members() -> None:
    grouper = _grouper([("R1", "A"), ("R1", "B"), ("R2", "B"), ("R2", "C")], max_group_size=2)
    with pytest.raises(grouping.SizeViolation) as info:
        grouper.create_groups()

    err = info.value
    assert err.max_group_size == 2
    assert err.offenders == {1: ["A", "B", "C"]}
    msg = str(err)
    assert "2" in msg
    for t in ("A", "B", "C"):
        assert t in msg


def test_default_ceiling_is_one_hundred() -> None:
    pairs = [("R1", f"T{i}") for i in range(101)]
    with pytest.raises(grouping.SizeViolation) as info:
        _grouper(pairs).create_groups()
    assert info.value.max_group_size == 100
    assert len(info.value.offenders[1]) == 101

    assert len(_grouper(pairs[:100]).create_groups()[1]) == 100


def test_empty_facts_give_empty_grouping() -> None:
    assert _grouper([]).create_groups() == {}


def test_staggered_chain_stays_split_with_reference_strategy() -> None:
    grouper = _grouper(STAGGERED_CHAIN)
    result = grouper.run()

    # B and C share R2 but are never consolidated
    assert _members(result.groups) == {1: ["A", "B"], 2: ["D", "C"]}
    assert grouping.split_resources(result.groups, result.index) == {"R2": [1, 2]}


def test_staggered_chain_is_one_group_with_transitive_strategy() -> None:
    result = _grouper(STAGGERED_CHAIN, strategy="transitive").run()
    assert _members(result.groups) == {1: ["A", "D", "B", "C"]}
    assert grouping.split_resources(result.groups, result.index) == {}


def test_expansion_touching_two_groups_only_grows_the_first() -> None:
    logger = grouping.DecisionLogger()
    result = _grouper(TWO_GROUP_TOUCH).run(logger)

    assert _members(result.groups) == {1: ["A", "B", "T"], 2: ["C", "D"]}
    _assert_disjoint(result.groups)
    assert grouping.split_resources(result.groups, result.index) == {"R4": [1, 2]}
    overlaps = [r for r in logger.rows if r["Phase"] == "overlap"]
    assert [(r["GroupKey"], r["TerritoryId"]) for r in overlaps] == [(1, "D")]


def test_transitive_strategy_consolidates_both_groups() -> None:
    groups = _grouper(TWO_GROUP_TOUCH, strategy="transitive").create_groups()
    assert _members(groups) == {1: ["A", "B", "C", "D", "T"]}


def test_create_groups_is_idempotent() -> None:
    grouper = _grouper(TWO_GROUP_TOUCH + STAGGERED_CHAIN)
    first = grouper.create_groups()
    second = grouper.create_groups()
    assert first == second
    assert len(grouper.source.calls) == 2


def test_territory_filter_reaches_source_and_shrinks_grouping() -> None:
    pairs = [("R1", "T1"), ("R1", "T2"), ("R2", "T2"), ("R2", "T3")]
    full = _grouper(pairs).create_groups()
    assert _members(full) == {1: ["T1", "T2", "T3"]}

    grouper = _grouper(pairs, territory_filter=["T1"])
    limited = grouper.create_groups()
    assert _members(limited) == {1: ["T1"]}
    assert grouper.source.calls[-1][2] == ("T1",)


@pytest.mark.parametrize("strategy", grouping.STRATEGIES)
def test_groups_are_disjoint_and_cover_every_territory(strategy: str) -> None:
    rng = random.Random(7)
    pairs = [(f"R{rng.randrange(25)}", f"T{rng.randrange(40)}") for _ in range(60)]
    result = _grouper(pairs, strategy=strategy).run()

    _assert_disjoint(result.groups)
    grouped = {t for members in result.groups.values() for t in members}
    assert grouped == set(result.index.territories())
    if strategy == "transitive":
        assert grouping.split_resources(result.groups, result.index) == {}


def test_upstream_errors_propagate_unchanged() -> None:
    boom = OSError("membership service unavailable")
    grouper = grouping.TerritoryGrouper(FailingSource(boom), "2024-01-01", "2024-01-31")
    with pytest.raises(OSError) as info:
        grouper.create_groups()
    assert info.value is boom


def test_validate_groups_accepts_groups_at_the_ceiling() -> None:
    logger = grouping.DecisionLogger()
    grouping.validate_groups({1: {"A": "A", "B": "B"}}, 2, logger)
    assert logger.rows[-1]["Status"] == "OK"


def test_decision_log_records_creation_and_merge(tmp_path: Path) -> None:
    logger = grouping.DecisionLogger()
    _grouper([("R1", "A"), ("R1", "B"), ("R2", "B"), ("R2", "C")]).run(logger)
    phases = [r["Phase"] for r in logger.rows]
    assert phases == ["index", "create", "merge", "validate"]

    out = tmp_path / "log" / "decision_log.csv"
    logger.write_csv(out)
    assert out.read_text(encoding="utf-8").splitlines()[0] == ",".join(grouping.DECISION_FIELDS)


def test_build_config_defaults_and_validation() -> None:
    cfg = grouping.build_config()
    assert cfg["MAX_GROUP_SIZE"] == 100
    assert cfg["GROUPING_STRATEGY"] == "reference"

    assert grouping.build_config({"MAX_GROUP_SIZE": "5"})["MAX_GROUP_SIZE"] == 5
    with pytest.raises(ValueError):
        grouping.build_config({"GROUPING_STRATEGY": "bfs"})
    with pytest.raises(ValueError):
        grouping.build_config({"MAX_GROUP_SIZE": 0})
    # defaults are not mutated by overrides
    assert grouping.DEFAULT_CONFIG["MAX_GROUP_SIZE"] == 100


def test_build_config_does_not_share_override_values() -> None:
    types = ["P"]
    cfg = grouping.build_config({"TERRITORY_TYPES": types})
    cfg["TERRITORY_TYPES"].append("S")
    assert types == ["P"]
    assert grouping.build_config({"TERRITORY_TYPES": types})["TERRITORY_TYPES"] == ["P"]


def test_grouper_rejects_bad_settings() -> None:
    with pytest.raises(ValueError):
        _grouper([], strategy="bfs")
    with pytest.raises(ValueError):
        _grouper([], max_group_size=0)


def _run_cli(tmp_path: Path, *extra: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [
            sys.executable,
            str(ROOT / "territory_groups.py"),
            "--memberships", str(tmp_path / "memberships.csv"),
            "--start", "2024-03-01",
            "--end", "2024-03-31",
            "--out", str(tmp_path / "territory_groups.json"),
            "--csv", str(tmp_path / "groups.csv"),
            "--stats", str(tmp_path / "stats.txt"),
            "--decision-log", str(tmp_path / "decision_log.csv"),
            *extra,
        ],
        cwd=ROOT,
        capture_output=True,
        text=True,
    )


def test_cli_writes_groups_for_horizon(tmp_path: Path) -> None:
    write_memberships(
        tmp_path / "memberships.csv",
        [
            membership_row("R1", "T1", name="North"),
            membership_row("R1", "T2", name="South"),
            membership_row("R2", "T3", name="East"),
            # ended before the horizon: would otherwise link T3 to T1
            membership_row("R2", "T1", name="North", end="2024-02-15"),
            membership_row("R3", "T4", name="West", eligible=False),
        ],
    )
    proc = _run_cli(tmp_path)
    assert proc.returncode == 0, proc.stderr

    groups = json.loads((tmp_path / "territory_groups.json").read_text(encoding="utf-8"))
    assert groups == {"1": {"T1": "North", "T2": "South"}, "2": {"T3": "East"}}
    stats = (tmp_path / "stats.txt").read_text(encoding="utf-8")
    assert "Groups: 2" in stats
    assert "Strategy: reference" in stats
    assert "GroupKey" in (tmp_path / "groups.csv").read_text(encoding="utf-8")


def test_cli_aborts_on_oversized_group(tmp_path: Path) -> None:
    write_memberships(
        tmp_path / "memberships.csv",
        [membership_row("R1", "A"), membership_row("R1", "B"), membership_row("R2", "B"), membership_row("R2", "C")],
    )
    proc = _run_cli(tmp_path, "--max-group-size", "2")

    assert proc.returncode != 0
    assert "SizeViolation" in proc.stderr
    assert not (tmp_path / "territory_groups.json").exists()
    assert (tmp_path / "decision_log.csv").exists()
