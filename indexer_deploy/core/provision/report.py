from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from indexer_deploy.core.provision.models import FamilyResult, ProvisionReport


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _provision_dir(state_dir: Path) -> Path:
    d = state_dir / "provision"
    d.mkdir(parents=True, exist_ok=True)
    return d


def _write_json(path: Path, payload: Dict[str, Any]) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp.replace(path)


def save_family_status(state_dir: Path, result: FamilyResult) -> Path:
    """<state_dir>/provision/<family>.json; `incomplete` is true until every step succeeded."""
    out = _provision_dir(state_dir) / f"{result.family}.json"
    payload = {
        **result.to_dict(),
        "incomplete": not result.complete,
        "updated_ts": utc_now_iso(),
    }
    _write_json(out, payload)
    return out


def load_family_status(state_dir: Path, family: str) -> Optional[Dict[str, Any]]:
    p = state_dir / "provision" / f"{family}.json"
    if not p.exists():
        return None
    return json.loads(p.read_text(encoding="utf-8"))


def save_report(state_dir: Path, report: ProvisionReport) -> Path:
    out = _provision_dir(state_dir) / "report.json"
    _write_json(out, report.to_dict())
    return out


def load_report(state_dir: Path) -> Optional[Dict[str, Any]]:
    p = state_dir / "provision" / "report.json"
    if not p.exists():
        return None
    return json.loads(p.read_text(encoding="utf-8"))
