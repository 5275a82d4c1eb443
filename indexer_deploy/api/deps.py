from __future__ import annotations

from typing import Optional

from fastapi import HTTPException

from indexer_deploy.core.build.linkage import linkage_from_kind
from indexer_deploy.core.build.pipeline import build_target_from_settings
from indexer_deploy.core.build.models import BuildTarget
from indexer_deploy.core.config import DeployConfig, load_config


def get_config() -> DeployConfig:
    # Re-read per request so edits to the config file show up without a restart.
    return load_config()


def resolve_target(cfg: DeployConfig, linkage: Optional[str]) -> BuildTarget:
    if linkage:
        try:
            linkage_from_kind(linkage)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return build_target_from_settings(cfg.build, linkage=linkage)
