#!/usr/bin/env python3
"""Hand a finished territory grouping to a scheduling job.

Inputs:
  - territory_groups.json  (written by territory_groups.py)

Each group becomes one assignment ``{"policy": <policy id>, "territories": [...]}``
and the list is applied to the named job through an updater:

  - JsonJobStore   : jobs.json file, job name -> assignment list
  - HttpJobUpdater : POST {base_url}/jobs/<job>/groups

An empty grouping is a no-op (nothing is sent, exit status reports it).
Updater failures are not caught here.
"""

from __future__ import annotations

import argparse
import json
import ssl
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Callable, Dict, List, Optional

import certifi

Assignment = Dict[str, object]
Updater = Callable[[str, List[Assignment]], None]


def build_assignments(policy_id: str, groups: Dict[int, Dict[str, str]]) -> List[Assignment]:
    return [
        {"policy": policy_id, "territories": list(members)}
        for _, members in sorted(groups.items(), key=lambda kv: kv[0])
    ]


def apply_groups(job_name: str, policy_id: str, groups: Dict[int, Dict[str, str]], updater: Updater) -> bool:
    """Apply ``groups`` to ``job_name``; ``False`` when there was nothing to apply."""
    if not groups:
        return False
    updater(job_name, build_assignments(policy_id, groups))
    return True


class JsonJobStore:
    """Scheduling jobs kept in a JSON file.

    Unknown job names raise ``KeyError`` unless the store was opened with
    ``create=True``.
    """

    def __init__(self, path: Path, create: bool = False):
        self.path = Path(path)
        self.create = create

    def load(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        return json.loads(self.path.read_text(encoding="utf-8"))

    def __call__(self, job_name: str, assignments: List[Assignment]) -> None:
        jobs = self.load()
        if job_name not in jobs and not self.create:
            raise KeyError(f"Unknown scheduling job '{job_name}' in {self.path}")
        job = jobs.setdefault(job_name, {})
        job["territory_groups"] = assignments
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(jobs, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


class HttpJobUpdater:
    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def endpoint(self, job_name: str) -> str:
        return f"{self.base_url}/jobs/{urllib.parse.quote(job_name, safe='')}/groups"

    def __call__(self, job_name: str, assignments: List[Assignment]) -> None:
        body = json.dumps({"assignments": assignments}).encode("utf-8")
        headers = {"Content-Type": "application/json", "User-Agent": "Mozilla/5.0 (TerritoryGrouper/1.0)"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = urllib.request.Request(self.endpoint(job_name), data=body, headers=headers, method="POST")
        ctx = ssl.create_default_context(cafile=certifi.where())
        with urllib.request.urlopen(req, context=ctx, timeout=self.timeout) as resp:
            resp.read()


def load_groups(path: Path) -> Dict[int, Dict[str, str]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path} must hold an object keyed by group number")
    return {int(k): dict(v) for k, v in data.items()}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Apply territory groups to a scheduling job",
                                 formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    ap.add_argument("--groups", default="territory_groups.json", type=Path, help="Grouping written by territory_groups.py")
    ap.add_argument("--job", required=True, help="Scheduling job name")
    ap.add_argument("--policy", required=True, help="Scheduling policy id paired with every group")
    ap.add_argument("--jobs-file", default="jobs.json", type=Path, help="JSON job store to update")
    ap.add_argument("--create-job", action="store_true", help="Create the job in the store if missing")
    ap.add_argument("--url", help="Post to this job service instead of the JSON store")
    ap.add_argument("--token", help="Bearer token for --url")
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if not args.groups.exists():
        raise SystemExit(f"Missing file: {args.groups}")
    groups = load_groups(args.groups)
    if args.url:
        updater: Updater = HttpJobUpdater(args.url, token=args.token)
        target = updater.endpoint(args.job)
    else:
        updater = JsonJobStore(args.jobs_file, create=args.create_job)
        target = str(args.jobs_file.resolve())
    if not apply_groups(args.job, args.policy, groups, updater):
        print("No groups to apply; job left unchanged")
        return 1
    print(f"Applied {len(groups)} groups to job '{args.job}' ({target})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
