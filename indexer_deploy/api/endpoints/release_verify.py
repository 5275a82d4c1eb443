from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from indexer_deploy.core.build.verify import verify_artifact_integrity

router = APIRouter(prefix="/api/v1", tags=["release"])


class ArtifactVerifyRequest(BaseModel):
    artifact_path: str = Field(..., description="Local filesystem path to the published binary")
    sha_path: Optional[str] = Field(default=None, description="Defaults to <artifact_path>.sha256")


class ArtifactVerifyResponse(BaseModel):
    kind: str
    artifact_path: str
    valid: bool
    reason: Optional[str] = None
    expected_sha: Optional[str] = None
    actual_sha: Optional[str] = None
    executable: Optional[bool] = None
    size: Optional[int] = None


@router.post("/release/verify", response_model=ArtifactVerifyResponse)
def verify_release_artifact(payload: ArtifactVerifyRequest):
    p = Path(payload.artifact_path)
    if p.exists() and not p.is_file():
        raise HTTPException(status_code=400, detail=f"Not a file: {p}")

    sha = Path(payload.sha_path) if payload.sha_path else p.with_name(p.name + ".sha256")
    result = verify_artifact_integrity(p, sha)
    if result.get("reason") == "artifact_missing":
        raise HTTPException(status_code=404, detail=f"Artifact not found: {p}")

    return {"kind": "release_artifact_verify", "artifact_path": str(p), **result}
