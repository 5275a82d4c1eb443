from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse

from indexer_deploy.api.deps import get_config, resolve_target
from indexer_deploy.core.build.dockerfile import render_dockerfile
from indexer_deploy.core.build.linkage import linkage_from_kind
from indexer_deploy.core.build.persist import read_events
from indexer_deploy.core.build.pipeline import plan_target
from indexer_deploy.core.build.registry import BuildRegistry
from indexer_deploy.core.config import DeployConfig
from indexer_deploy.core.errors import ManifestInconsistency

router = APIRouter(prefix="/api/v1/builds", tags=["builds"])


def _plan_or_422(cfg: DeployConfig, linkage: Optional[str]):
    target = resolve_target(cfg, linkage)
    try:
        plan, _lock = plan_target(target, cfg.build.toolchain)
    except ManifestInconsistency as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    return plan


@router.get("/plan")
def build_plan(linkage: Optional[str] = Query(default=None), cfg: DeployConfig = Depends(get_config)):
    return _plan_or_422(cfg, linkage).to_dict()


@router.get("/dockerfile", response_class=PlainTextResponse)
def build_dockerfile(linkage: Optional[str] = Query(default=None), cfg: DeployConfig = Depends(get_config)):
    plan = _plan_or_422(cfg, linkage)
    return PlainTextResponse(render_dockerfile(plan, cfg.build.toolchain))


@router.get("/events")
def build_events(limit: int = Query(default=100, ge=1, le=1000), cfg: DeployConfig = Depends(get_config)):
    events = read_events(cfg.state_path)
    return {"events": events[-limit:], "total": len(events)}


@router.get("/{linkage}/latest")
def latest_build(linkage: str, cfg: DeployConfig = Depends(get_config)):
    try:
        kind = linkage_from_kind(linkage).kind
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    latest = BuildRegistry(cfg.state_path, kind).latest()
    if latest is None:
        raise HTTPException(status_code=404, detail=f"No published build for linkage {kind}")
    return latest
