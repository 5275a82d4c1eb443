from __future__ import annotations

import os

from fastapi import APIRouter, Depends
from starlette.responses import JSONResponse

from indexer_deploy.api.deps import get_config
from indexer_deploy.core.config import DeployConfig
from indexer_deploy.core.observability.metrics import inc_named, snapshot_named

router = APIRouter()


@router.get("/health")
def health_check():
    return {"status": "healthy"}


@router.get("/health/live")
async def live():
    inc_named("health_live")
    return {"status": "ok"}


@router.get("/health/ready")
def ready(cfg: DeployConfig = Depends(get_config)):
    """Ready when the state directory can be written."""
    inc_named("health_ready")

    problems: list[str] = []
    state = cfg.state_path
    try:
        state.mkdir(parents=True, exist_ok=True)
        probe = state / ".ready_check.tmp"
        probe.write_text("ok", encoding="utf-8")
        os.remove(probe)
    except OSError as e:
        problems.append(f"state_dir_not_writable:{state} err={type(e).__name__}")

    if problems:
        return JSONResponse(status_code=503, content={"status": "not_ready", "problems": problems})
    return {"status": "ready", "env": cfg.env}


@router.get("/api/v1/metrics/snapshot")
def metrics_snapshot():
    return snapshot_named()
