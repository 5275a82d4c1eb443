from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from indexer_deploy.api.deps import get_config
from indexer_deploy.core.config import DeployConfig
from indexer_deploy.core.provision.host import ZfsHost
from indexer_deploy.core.provision.provisioner import SocketProvisioner
from indexer_deploy.core.provision.report import load_family_status, load_report

router = APIRouter(prefix="/api/v1", tags=["provision"])


@router.get("/families")
def list_families(cfg: DeployConfig = Depends(get_config)):
    prov = cfg.provision
    return {
        "pool": prov.pool,
        "families": [
            {
                **fam.model_dump(),
                "socket_path": fam.socket_path,
                "dataset": fam.dataset_name(prov.pool),
                "grant_everyone": prov.grants_everyone(fam),
            }
            for fam in prov.families
        ],
    }


@router.get("/provision/plan/{family}")
def provision_plan(family: str, cfg: DeployConfig = Depends(get_config)):
    fam = cfg.provision.family(family)
    if fam is None:
        raise HTTPException(status_code=404, detail=f"Unknown family: {family}")
    # plan_family never touches the host
    provisioner = SocketProvisioner(ZfsHost(), cfg.provision, cfg.state_path)
    return provisioner.plan_family(fam)


@router.get("/provision/report")
def provision_report(cfg: DeployConfig = Depends(get_config)):
    report = load_report(cfg.state_path)
    if report is None:
        raise HTTPException(status_code=404, detail="No provisioning report yet")
    return report


@router.get("/provision/status/{family}")
def provision_status(family: str, cfg: DeployConfig = Depends(get_config)):
    status = load_family_status(cfg.state_path, family)
    if status is None:
        raise HTTPException(status_code=404, detail=f"No provisioning status for family: {family}")
    return status
