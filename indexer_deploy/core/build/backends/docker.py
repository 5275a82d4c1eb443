from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from indexer_deploy.core.build.dockerfile import render_dockerfile
from indexer_deploy.core.commands import CommandRunner
from indexer_deploy.core.build.models import BuildStage

from .base import BuildBackend, StageContext

log = logging.getLogger("deploy.build.docker")


class DockerBackend(BuildBackend):
    """Multi-stage `docker build`, one `--target` per pipeline stage.

    Docker's own layer cache sits underneath the stage cache: package
    installs precede the source COPY in the rendered Dockerfile.
    """

    name = "docker"

    def __init__(self, runner: Optional[CommandRunner] = None, **_options: Any):
        self.runner = runner or CommandRunner()

    def _dockerfile_path(self, ctx: StageContext) -> Path:
        return ctx.state_dir / "docker" / f"Dockerfile.{ctx.linkage}"

    def stage_tag(self, stage: BuildStage, ctx: StageContext) -> str:
        if stage.name == "runner":
            return f"{ctx.image_name}:{stage.cache_key[:12]}"
        return f"{ctx.image_name}-{stage.name}:{stage.cache_key[:12]}"

    def alias_tag(self, ctx: StageContext) -> str:
        """Moving `<image>:<linkage>` tag; always points at the last published runner."""
        return f"{ctx.image_name}:{ctx.linkage}"

    def prepare(self, ctx: StageContext) -> None:
        p = self._dockerfile_path(ctx)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(render_dockerfile(ctx.plan, ctx.toolchain), encoding="utf-8")

    def _image_exists(self, ref: str) -> bool:
        return self.runner.run(["docker", "image", "inspect", ref]).ok

    def _build_target(self, stage: BuildStage, ctx: StageContext) -> str:
        tag = self.stage_tag(stage, ctx)
        argv = [
            "docker", "build",
            "--file", str(self._dockerfile_path(ctx)),
            "--target", stage.name,
            "--tag", tag,
        ]
        if stage.name == "runner":
            argv += ["--tag", self.alias_tag(ctx)]
        argv.append(str(ctx.plan.target.source_root))
        self.runner.check(argv)
        return tag

    def _extract_artifact(self, tag: str, ctx: StageContext) -> Path:
        dest = ctx.artifact_staging
        dest.parent.mkdir(parents=True, exist_ok=True)
        src = f"{ctx.toolchain.workdir}/{ctx.plan.target.artifact_relpath}"

        cid = self.runner.check(["docker", "create", tag]).stdout.strip()
        try:
            self.runner.check(["docker", "cp", f"{cid}:{src}", str(dest)])
        finally:
            # Best-effort cleanup; the extracted file is what matters.
            self.runner.run(["docker", "rm", "-f", cid])
        return dest

    def run_stage(self, stage: BuildStage, ctx: StageContext) -> Dict[str, Any]:
        log.info("docker build --target %s (linkage=%s)", stage.name, ctx.linkage)
        tag = self._build_target(stage, ctx)
        out: Dict[str, Any] = {"ref": tag}
        if stage.name == "builder":
            out["artifact"] = str(self._extract_artifact(tag, ctx))
        return out

    def outputs_present(self, stage: BuildStage, outputs: Dict[str, Any], ctx: StageContext) -> bool:
        ref = outputs.get("ref")
        if not ref or not self._image_exists(str(ref)):
            return False
        if stage.name == "builder":
            artifact = outputs.get("artifact")
            return bool(artifact) and os.path.isfile(str(artifact))
        return True

    def reuse_stage(self, stage: BuildStage, outputs: Dict[str, Any], ctx: StageContext) -> None:
        if stage.name == "runner":
            self.runner.check(["docker", "tag", str(outputs["ref"]), self.alias_tag(ctx)])
