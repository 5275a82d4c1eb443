from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional


EventType = Literal[
    "BuildRequested",
    "ManifestValidated",
    "PlanCreated",
    "StageStarted",
    "StageCached",
    "StageCompleted",
    "StageFailed",
    "ArtifactPublished",
    "BuildCompleted",
    "BuildAborted",
]


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class BuildEvent:
    event_type: EventType
    ts: str
    linkage: str
    plan_id: Optional[str] = None
    stage: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def mk(
        event_type: EventType,
        linkage: str,
        plan_id: Optional[str] = None,
        stage: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> "BuildEvent":
        return BuildEvent(
            event_type=event_type,
            ts=now_utc_iso(),
            linkage=linkage,
            plan_id=plan_id,
            stage=stage,
            payload=payload or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
