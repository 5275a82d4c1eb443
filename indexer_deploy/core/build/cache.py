from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from indexer_deploy.core.locking import exclusive_lock


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StageCache:
    """
    Records which stage cache keys have completed, and what they produced.

    Stored at:
      <state_dir>/cache/stages.json
    """

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self.cache_file = state_dir / "cache" / "stages.json"
        self.lock_file = state_dir / "cache" / "stages.lock"

    # ----------------------------------------
    # Load / Save
    # ----------------------------------------
    def load(self) -> Dict[str, Any]:
        if not self.cache_file.exists():
            return {"kind": "stage_cache", "entries": {}}

        with open(self.cache_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data.get("entries"), dict):
            data["entries"] = {}
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        self.cache_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.cache_file.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        tmp.replace(self.cache_file)

    # ----------------------------------------
    # Lookup / Record
    # ----------------------------------------
    def get(self, cache_key: str) -> Optional[Dict[str, Any]]:
        return self.load()["entries"].get(cache_key)

    def record(self, *, stage: str, cache_key: str, outputs: Dict[str, Any]) -> None:
        with exclusive_lock(self.lock_file):
            data = self.load()
            data["entries"][cache_key] = {
                "stage": stage,
                "outputs": outputs,
                "ts": _utc_now_iso(),
            }
            self._save(data)

    def invalidate(self, cache_key: str) -> None:
        with exclusive_lock(self.lock_file):
            data = self.load()
            if data["entries"].pop(cache_key, None) is not None:
                self._save(data)
