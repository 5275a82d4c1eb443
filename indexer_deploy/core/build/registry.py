from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from indexer_deploy.core.locking import exclusive_lock


class BuildRegistry:
    """
    Tracks published builds per linkage mode.

    Stored at:
      <state_dir>/builds/<linkage>.json
    """

    def __init__(self, state_dir: Path, linkage: str):
        self.state_dir = state_dir
        self.linkage = linkage
        self.builds_dir = state_dir / "builds"
        self.meta_file = self.builds_dir / f"{linkage}.json"

    # ----------------------------------------
    # Load / Save
    # ----------------------------------------
    def load(self) -> Dict[str, Any]:
        if not self.meta_file.exists():
            return {
                "linkage": self.linkage,
                "builds": [],
                "current_build_id": None,
                "plan_id": None,
            }

        with open(self.meta_file, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save(self, data: Dict[str, Any]) -> None:
        self.builds_dir.mkdir(parents=True, exist_ok=True)
        with open(self.meta_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def latest(self) -> Optional[Dict[str, Any]]:
        meta = self.load()
        current = meta.get("current_build_id")
        for b in reversed(meta.get("builds", [])):
            if b.get("build_id") == current:
                return b
        return None

    # ----------------------------------------
    # Register Build
    # ----------------------------------------
    def register_build(
        self,
        *,
        plan_id: str,
        artifact_path: str,
        artifact_sha256: str,
        deploy_ref: str,
        lock_sha256: str,
        backend: str,
    ) -> str:
        with exclusive_lock(self.builds_dir / f"{self.linkage}.lock"):
            meta = self.load()

            build_id = str(uuid.uuid4())

            build_entry = {
                "build_id": build_id,
                "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                "plan_id": plan_id,
                "linkage": self.linkage,
                "artifact_path": artifact_path,
                "artifact_sha256": artifact_sha256,
                "deploy_ref": deploy_ref,
                "lock_sha256": lock_sha256,
                "backend": backend,
            }

            meta.setdefault("builds", [])
            meta["builds"].append(build_entry)
            meta["current_build_id"] = build_id
            meta["plan_id"] = plan_id

            self._save(meta)
        return build_id
