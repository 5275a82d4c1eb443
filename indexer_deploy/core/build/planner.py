from __future__ import annotations

from typing import Any, Dict, List, Optional

from indexer_deploy.core.build.lockfile import LockfileSummary
from indexer_deploy.core.build.models import BuildPlan, BuildStage, BuildTarget, PlanError, StageInput, canonical_hash
from indexer_deploy.core.config import ToolchainSettings

PLAN_VERSION = "v1"


def apt_install(packages: List[str]) -> List[List[str]]:
    if not packages:
        return []
    return [["apt-get", "update", "-qy"], ["apt-get", "install", "-qy", *packages]]


def toolchain_packages(toolchain: ToolchainSettings, target: BuildTarget) -> List[str]:
    pkgs: List[str] = []
    for p in [*toolchain.extra_tools().values(), *target.linkage.extra_packages()]:
        if p and p not in pkgs:
            pkgs.append(p)
    return pkgs


def make_build_plan(
    *,
    target: BuildTarget,
    toolchain: ToolchainSettings,
    lock: LockfileSummary,
    source_hash: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> BuildPlan:
    """Lay out base -> toolchain -> builder -> runner with chained cache keys.

    Each key covers only what its stage consumes, so a source-only change
    leaves the base and toolchain keys untouched.
    """
    mismatch = toolchain.release_mismatch()
    if mismatch:
        raise PlanError(mismatch)

    md = dict(metadata or {})
    md.setdefault("lock_packages", lock.package_count)
    md.setdefault("source_hash", source_hash)

    base_pkgs = [toolchain.storage_dev_package]
    base_key = canonical_hash({"stage": "base", "image": toolchain.base_image, "packages": base_pkgs})

    tool_pkgs = toolchain_packages(toolchain, target)
    registration = target.linkage.target_registration()
    toolchain_key = canonical_hash(
        {"stage": "toolchain", "parent": base_key, "packages": tool_pkgs, "registration": registration}
    )

    cargo_cmd = [toolchain.compiler_toolchain, *target.linkage.cargo_args()]
    builder_key = canonical_hash(
        {
            "stage": "builder",
            "parent": toolchain_key,
            "lock_sha256": lock.lock_sha256,
            "manifest_sha256": lock.manifest_sha256,
            "source_hash": source_hash,
            "command": cargo_cmd,
            "binary": target.output_binary_name,
        }
    )

    runtime_pkgs = [toolchain.storage_runtime_package]
    runner_key = canonical_hash(
        {
            "stage": "runner",
            "parent": builder_key,
            "image": toolchain.runtime_image,
            "packages": runtime_pkgs,
            "deploy_path": target.deploy_path,
        }
    )

    stages = [
        BuildStage(
            name="base",
            base_ref=toolchain.base_image,
            packages=base_pkgs,
            commands=apt_install(base_pkgs),
            cache_key=base_key,
        ),
        BuildStage(
            name="toolchain",
            base_ref="base",
            packages=tool_pkgs,
            commands=[*apt_install(tool_pkgs), *registration],
            depends_on=["base"],
            cache_key=toolchain_key,
        ),
        BuildStage(
            name="builder",
            base_ref="toolchain",
            copied_inputs=[StageInput(path=p) for p in target.declared_inputs()],
            commands=[cargo_cmd],
            produced_outputs=[target.artifact_relpath],
            depends_on=["toolchain"],
            cache_key=builder_key,
        ),
        BuildStage(
            name="runner",
            base_ref=toolchain.runtime_image,
            packages=runtime_pkgs,
            copied_inputs=[StageInput(path=target.artifact_relpath, from_stage="builder", dest=target.deploy_path)],
            commands=apt_install(runtime_pkgs),
            produced_outputs=[target.deploy_path],
            depends_on=["builder"],
            cache_key=runner_key,
        ),
    ]

    plan = BuildPlan(
        plan_version=PLAN_VERSION,
        target=target,
        lock_sha256=lock.lock_sha256,
        stages=stages,
        metadata=md,
    )
    plan.validate()
    return plan
