from __future__ import annotations

from collections import Counter
from threading import Lock
from typing import Dict

from prometheus_client import Counter as PromCounter

# Named counters (in-process snapshot)
_NAMED = Counter()
_LOCK = Lock()

BUILD_STAGES_TOTAL = PromCounter(
    "deploy_build_stages_total",
    "Build pipeline stage outcomes",
    ["stage", "outcome"],
)

PROVISION_FAMILIES_TOTAL = PromCounter(
    "deploy_provision_families_total",
    "Socket provisioning outcomes per service family",
    ["family", "outcome"],
)


def reset_metrics() -> None:
    """
    Test helper: clears named counters to avoid cross-test leakage.
    Prometheus collectors are process-global and are left alone.
    """
    with _LOCK:
        _NAMED.clear()


def inc_named(name: str, value: int = 1) -> None:
    if not name:
        return
    with _LOCK:
        _NAMED[name] += int(value)


def record_stage(stage: str, outcome: str) -> None:
    BUILD_STAGES_TOTAL.labels(stage=stage, outcome=outcome).inc()
    inc_named(f"build_stage_{stage}_{outcome}")


def record_family(family: str, outcome: str) -> None:
    PROVISION_FAMILIES_TOTAL.labels(family=family, outcome=outcome).inc()
    inc_named(f"provision_{outcome}")


def snapshot_named() -> Dict[str, int]:
    with _LOCK:
        return dict(_NAMED)
