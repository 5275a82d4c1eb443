from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from indexer_deploy.core.build.models import BuildStage
from indexer_deploy.core.commands import CommandRunner
from indexer_deploy.core.errors import CommandFailed

from .base import BuildBackend, StageContext

log = logging.getLogger("deploy.build.local")


def _is_package_command(cmd: List[str]) -> bool:
    return bool(cmd) and cmd[0] == "apt-get"


class LocalBackend(BuildBackend):
    """Builds on the current host with cargo.

    Package installation is only attempted with install_packages=True
    (requires root); otherwise the executable tools must already be on PATH.
    """

    name = "local"

    def __init__(self, runner: Optional[CommandRunner] = None, *, install_packages: bool = False):
        self.runner = runner or CommandRunner()
        self.install_packages = install_packages

    def _required_executables(self, ctx: StageContext) -> List[str]:
        tc = ctx.toolchain
        return [tc.version_control, tc.compiler_toolchain, tc.cmake_like, tc.linker]

    def _run_commands(self, stage: BuildStage, cwd: Optional[Path] = None) -> None:
        for cmd in stage.commands:
            if _is_package_command(cmd) and not self.install_packages:
                log.debug("skipping package command on host: %s", " ".join(cmd))
                continue
            self.runner.check(cmd, cwd=cwd)

    def _assemble_rootfs(self, ctx: StageContext) -> Path:
        artifact = ctx.artifact_staging
        deploy_rel = ctx.plan.target.deploy_path.lstrip("/")

        final = ctx.publish_dir / "rootfs"
        tmp = ctx.publish_dir / ".rootfs.tmp"
        if tmp.exists():
            shutil.rmtree(tmp)
        dest = tmp / deploy_rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(artifact, dest)

        pkgs = tmp / "etc" / "indexer-deploy" / "runtime-packages"
        pkgs.parent.mkdir(parents=True, exist_ok=True)
        pkgs.write_text("\n".join(ctx.plan.stage("runner").packages) + "\n", encoding="utf-8")

        if final.exists():
            shutil.rmtree(final)
        tmp.rename(final)
        return final

    def run_stage(self, stage: BuildStage, ctx: StageContext) -> Dict[str, Any]:
        if stage.name == "base":
            self._run_commands(stage)
            return {"ref": "host"}

        if stage.name == "toolchain":
            self._run_commands(stage)
            missing = [exe for exe in self._required_executables(ctx) if shutil.which(exe) is None]
            if missing:
                raise CommandFailed(["which", *missing], 1, stderr=f"missing build tools: {', '.join(missing)}")
            return {"ref": "host"}

        if stage.name == "builder":
            source_root = ctx.plan.target.source_root
            self._run_commands(stage, cwd=source_root)
            built = source_root / ctx.plan.target.artifact_relpath
            dest = ctx.artifact_staging
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(built, dest)
            return {"ref": "host", "artifact": str(dest)}

        # runner
        self._run_commands(stage)
        rootfs = self._assemble_rootfs(ctx)
        return {"ref": str(rootfs)}

    def outputs_present(self, stage: BuildStage, outputs: Dict[str, Any], ctx: StageContext) -> bool:
        if stage.name in ("base", "toolchain"):
            return True
        if stage.name == "builder":
            artifact = outputs.get("artifact")
            return bool(artifact) and os.path.isfile(str(artifact))
        ref = outputs.get("ref")
        return bool(ref) and (Path(str(ref)) / ctx.plan.target.deploy_path.lstrip("/")).is_file()
