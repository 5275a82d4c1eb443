from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from indexer_deploy.core.build.models import BuildPlan


def _plans_dir(state_dir: Path) -> Path:
    d = state_dir / "plans"
    d.mkdir(parents=True, exist_ok=True)
    return d


def save_plan(state_dir: Path, plan: BuildPlan) -> str:
    plan_id = plan.compute_plan_id()
    out = _plans_dir(state_dir) / f"{plan_id}.json"

    created_ts = datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")

    payload: Dict[str, Any] = {"created_ts": created_ts, **plan.to_dict()}
    out.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return plan_id


def append_events(state_dir: Path, events: List[Dict[str, Any]]) -> None:
    """
    Append JSONL events to <state_dir>/events.log
    Robust: if existing file doesn't end with newline, add one first.
    """
    if not events:
        return

    log = state_dir / "events.log"
    log.parent.mkdir(parents=True, exist_ok=True)

    with log.open("ab+") as f:
        # Ensure newline boundary before appending
        f.seek(0, 2)  # end
        size = f.tell()
        if size > 0:
            f.seek(-1, 2)
            last = f.read(1)
            if last != b"\n":
                f.write(b"\n")

        for e in events:
            f.write((json.dumps(e) + "\n").encode("utf-8"))


def read_events(state_dir: Path) -> List[Dict[str, Any]]:
    log = state_dir / "events.log"
    if not log.exists():
        return []
    out: List[Dict[str, Any]] = []
    for line in log.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line:
            out.append(json.loads(line))
    return out
