from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from indexer_deploy.core.build.backends import BuildBackend, StageContext
from indexer_deploy.core.build.cache import StageCache
from indexer_deploy.core.build.events import BuildEvent
from indexer_deploy.core.build.linkage import linkage_from_kind
from indexer_deploy.core.build.lockfile import LockfileSummary, validate_manifests
from indexer_deploy.core.build.models import (
    ArtifactPath,
    BaseEnvironment,
    BuildEnvironment,
    BuildPlan,
    BuildStage,
    BuildTarget,
    DeployImage,
)
from indexer_deploy.core.build.persist import append_events, save_plan
from indexer_deploy.core.build.planner import make_build_plan
from indexer_deploy.core.build.registry import BuildRegistry
from indexer_deploy.core.build.verify import is_nonempty_executable, sha256_file, source_tree_hash, write_sha_file
from indexer_deploy.core.config import BuildSettings, ToolchainSettings
from indexer_deploy.core.errors import (
    BuildError,
    CommandFailed,
    CompilationFailure,
    EnvironmentSetupFailure,
    ManifestInconsistency,
)
from indexer_deploy.core.observability.metrics import record_stage

log = logging.getLogger("deploy.build")

_FAILURE_FOR_STAGE = {
    "base": EnvironmentSetupFailure,
    "toolchain": EnvironmentSetupFailure,
    "builder": CompilationFailure,
    "runner": EnvironmentSetupFailure,
}


def build_target_from_settings(
    settings: BuildSettings,
    *,
    linkage: Optional[str] = None,
    source_root: Optional[Path] = None,
) -> BuildTarget:
    return BuildTarget(
        source_root=Path(source_root or settings.source_root).resolve(),
        linkage=linkage_from_kind(linkage) if linkage else settings.linkage,
        output_binary_name=settings.output_binary_name,
        dependency_manifest=settings.dependency_manifest,
        crate_manifest=settings.crate_manifest,
        source_inputs=list(settings.source_inputs),
    )


def plan_target(target: BuildTarget, toolchain: ToolchainSettings) -> Tuple[BuildPlan, LockfileSummary]:
    """Validate the manifests and lay out the stages without running anything."""
    lock = validate_manifests(
        target.source_root,
        lock_name=target.dependency_manifest,
        manifest_name=target.crate_manifest,
    )
    source_hash = source_tree_hash(target.source_root, target.source_inputs)
    return make_build_plan(target=target, toolchain=toolchain, lock=lock, source_hash=source_hash), lock


@dataclass
class BuildResult:
    build_id: str
    plan_id: str
    linkage: str
    artifact_path: str
    artifact_sha256: str
    sha_path: str
    deploy_ref: str
    stages_run: List[str] = field(default_factory=list)
    stages_cached: List[str] = field(default_factory=list)
    events: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "build_id": self.build_id,
            "plan_id": self.plan_id,
            "linkage": self.linkage,
            "artifact_path": self.artifact_path,
            "artifact_sha256": self.artifact_sha256,
            "sha_path": self.sha_path,
            "deploy_ref": self.deploy_ref,
            "stages_run": list(self.stages_run),
            "stages_cached": list(self.stages_cached),
        }


class BuildPipeline:
    """Layered build: base -> toolchain -> builder -> runner.

    - begin(): validates the pinned manifest and lays out the plan
    - prepare_base_environment() / prepare_build_environment() / compile() / finalize()
      run one layer each, reusing cached layers whose key is unchanged
    - run(): all of the above, then publishes the artifact

    Any failure aborts the run; nothing is published unless every stage
    succeeded, and failed stages are never recorded in the stage cache.
    """

    def __init__(
        self,
        *,
        backend: BuildBackend,
        toolchain: ToolchainSettings,
        state_dir: Path,
        output_dir: Path,
        image_name: str = "electrs",
        use_cache: bool = True,
    ):
        self.backend = backend
        self.toolchain = toolchain
        self.state_dir = Path(state_dir)
        self.output_dir = Path(output_dir)
        self.image_name = image_name
        self.use_cache = use_cache
        self.cache = StageCache(self.state_dir)

        self._target: Optional[BuildTarget] = None
        self._lock: Optional[LockfileSummary] = None
        self._plan: Optional[BuildPlan] = None
        self._events: List[BuildEvent] = []
        self._ran: List[str] = []
        self._cached: List[str] = []

    # ----------------------------------------
    # Planning
    # ----------------------------------------
    @property
    def plan(self) -> BuildPlan:
        if self._plan is None:
            raise RuntimeError("no build in progress; call begin() first")
        return self._plan

    def _linkage(self) -> str:
        return self._target.linkage.kind if self._target else "unknown"

    def _emit(self, event_type, *, stage: Optional[str] = None, payload: Optional[Dict[str, Any]] = None) -> None:
        plan_id = self._plan.compute_plan_id() if self._plan else None
        self._events.append(BuildEvent.mk(event_type, self._linkage(), plan_id=plan_id, stage=stage, payload=payload))

    def _replan(self) -> None:
        assert self._target is not None
        self._plan, self._lock = plan_target(self._target, self.toolchain)
        save_plan(self.state_dir, self._plan)

    def _context(self) -> StageContext:
        return StageContext(
            plan=self.plan,
            toolchain=self.toolchain,
            state_dir=self.state_dir,
            output_dir=self.output_dir,
            image_name=self.image_name,
        )

    def begin(self, target: BuildTarget) -> BuildPlan:
        self._target = target
        self._plan = None
        self._events = []
        self._ran = []
        self._cached = []

        self._emit("BuildRequested", payload={"source_root": str(target.source_root), "backend": self.backend.name})
        self._replan()
        assert self._lock is not None
        self._emit("ManifestValidated", payload={"packages": self._lock.package_count, "lock_sha256": self._lock.lock_sha256})
        self._emit("PlanCreated", payload={"stages": [s.name for s in self.plan.stages]})
        log.info(
            "Build plan %s (linkage=%s, backend=%s)",
            self.plan.compute_plan_id()[:12],
            target.linkage.kind,
            self.backend.name,
        )

        self._prepare_backend()
        return self.plan

    def _prepare_backend(self) -> None:
        # Backends render per-plan inputs (the Dockerfile); redo after every replan.
        try:
            self.backend.prepare(self._context())
        except (CommandFailed, OSError) as e:
            raise EnvironmentSetupFailure(f"backend {self.backend.name} setup failed: {e}", stage="prepare") from e

    # ----------------------------------------
    # Stage execution
    # ----------------------------------------
    def _execute(
        self,
        stage: BuildStage,
        *,
        check: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        ctx = self._context()

        entry = self.cache.get(stage.cache_key) if self.use_cache else None
        if entry is not None and self.backend.outputs_present(stage, entry.get("outputs") or {}, ctx):
            outputs = entry["outputs"]
            if check is None or self._passes(check, outputs):
                try:
                    self.backend.reuse_stage(stage, outputs, ctx)
                except (CommandFailed, OSError) as e:
                    self._stage_failed(stage, str(e))
                    raise _FAILURE_FOR_STAGE[stage.name](
                        f"stage {stage.name} failed: {e}", stage=stage.name, detail={"cache_key": stage.cache_key}
                    ) from e
                log.info("Stage %s: cached (%s)", stage.name, stage.cache_key[:12])
                self._emit("StageCached", stage=stage.name, payload={"cache_key": stage.cache_key})
                self._cached.append(stage.name)
                record_stage(stage.name, "cached")
                return outputs, True
            self.cache.invalidate(stage.cache_key)

        log.info("Stage %s: running (%s)", stage.name, stage.cache_key[:12])
        self._emit("StageStarted", stage=stage.name, payload={"cache_key": stage.cache_key})
        failure = _FAILURE_FOR_STAGE[stage.name]
        try:
            outputs = self.backend.run_stage(stage, ctx)
            if check is not None:
                check(outputs)
        except BuildError as e:
            self._stage_failed(stage, str(e))
            raise
        except (CommandFailed, OSError) as e:
            self._stage_failed(stage, str(e))
            detail: Dict[str, Any] = {"cache_key": stage.cache_key}
            if isinstance(e, CommandFailed):
                detail.update({"argv": e.argv, "returncode": e.returncode, "stderr": e.stderr[-2000:]})
            raise failure(f"stage {stage.name} failed: {e}", stage=stage.name, detail=detail) from e

        self.cache.record(stage=stage.name, cache_key=stage.cache_key, outputs=outputs)
        self._emit("StageCompleted", stage=stage.name, payload={"cache_key": stage.cache_key})
        self._ran.append(stage.name)
        record_stage(stage.name, "completed")
        return outputs, False

    @staticmethod
    def _passes(check: Callable[[Dict[str, Any]], None], outputs: Dict[str, Any]) -> bool:
        try:
            check(outputs)
        except BuildError:
            return False
        return True

    def _stage_failed(self, stage: BuildStage, message: str) -> None:
        log.error("Stage %s failed: %s", stage.name, message)
        self._emit("StageFailed", stage=stage.name, payload={"error": message})
        record_stage(stage.name, "failed")

    # ----------------------------------------
    # Pipeline operations
    # ----------------------------------------
    def prepare_base_environment(self, os_image_ref: str) -> BaseEnvironment:
        if os_image_ref != self.toolchain.base_image:
            requested = self.toolchain.model_copy(update={"base_image": os_image_ref})
            problem = requested.release_mismatch()
            if problem:
                raise EnvironmentSetupFailure(problem, stage="base")
            self.toolchain = requested
            self._replan()
            self._prepare_backend()

        stage = self.plan.stage("base")
        outputs, cached = self._execute(stage)
        return BaseEnvironment(
            ref=str(outputs.get("ref")),
            os_image_ref=os_image_ref,
            packages=list(stage.packages),
            cache_key=stage.cache_key,
            cached=cached,
        )

    def prepare_build_environment(self, base: BaseEnvironment, extra_tools: Dict[str, str]) -> BuildEnvironment:
        if base.cache_key != self.plan.stage("base").cache_key:
            raise ValueError("base environment does not belong to the current plan")

        unknown = set(extra_tools) - set(self.toolchain.extra_tools())
        if unknown:
            raise ValueError(f"unknown build tools: {sorted(unknown)}")
        if any(self.toolchain.extra_tools()[k] != v for k, v in extra_tools.items()):
            self.toolchain = self.toolchain.model_copy(update=dict(extra_tools))
            self._replan()
            self._prepare_backend()

        stage = self.plan.stage("toolchain")
        outputs, cached = self._execute(stage)
        return BuildEnvironment(
            ref=str(outputs.get("ref")),
            base=base,
            tools=self.toolchain.extra_tools(),
            packages=list(stage.packages),
            cache_key=stage.cache_key,
            cached=cached,
        )

    def compile(self, build_env: BuildEnvironment, target: BuildTarget) -> ArtifactPath:
        if build_env.cache_key != self.plan.stage("toolchain").cache_key:
            raise ValueError("build environment does not belong to the current plan")
        if target != self.plan.target:
            raise ValueError("compile target differs from the planned target")

        # The lockfile is copied verbatim; refuse to compile if it moved since planning.
        lock = validate_manifests(
            target.source_root,
            lock_name=target.dependency_manifest,
            manifest_name=target.crate_manifest,
        )
        if lock.lock_sha256 != self.plan.lock_sha256:
            raise ManifestInconsistency(
                f"{target.dependency_manifest} changed after planning; restart the build",
                stage="builder",
            )

        def check_artifact(outputs: Dict[str, Any]) -> None:
            artifact = outputs.get("artifact")
            if not artifact or not is_nonempty_executable(Path(str(artifact))):
                raise CompilationFailure(
                    f"builder produced no executable at {target.artifact_relpath}",
                    stage="builder",
                    detail={"artifact": artifact},
                )

        stage = self.plan.stage("builder")
        outputs, cached = self._execute(stage, check=check_artifact)
        path = Path(str(outputs["artifact"]))
        return ArtifactPath(
            path=path,
            linkage=target.linkage.kind,
            relpath=target.artifact_relpath,
            sha256=sha256_file(path),
            size=path.stat().st_size,
            cache_key=stage.cache_key,
            cached=cached,
        )

    def finalize(self, artifact: ArtifactPath) -> DeployImage:
        if artifact.cache_key != self.plan.stage("builder").cache_key:
            raise ValueError("artifact does not belong to the current plan")

        stage = self.plan.stage("runner")
        outputs, cached = self._execute(stage)
        return DeployImage(
            ref=str(outputs.get("ref")),
            binary_path=self.plan.target.deploy_path,
            artifact_sha256=artifact.sha256,
            runtime_packages=list(stage.packages),
            cache_key=stage.cache_key,
            cached=cached,
        )

    # ----------------------------------------
    # Publication
    # ----------------------------------------
    def _publish(self, artifact: ArtifactPath, image: DeployImage) -> BuildResult:
        target = self.plan.target
        publish_dir = self.output_dir / target.linkage.kind
        publish_dir.mkdir(parents=True, exist_ok=True)

        dest = publish_dir / target.output_binary_name
        tmp = publish_dir / f".{target.output_binary_name}.tmp"
        shutil.copy2(artifact.path, tmp)
        os.replace(tmp, dest)
        sha_path = write_sha_file(dest)

        plan_id = self.plan.compute_plan_id()
        build_id = BuildRegistry(self.state_dir, target.linkage.kind).register_build(
            plan_id=plan_id,
            artifact_path=str(dest),
            artifact_sha256=artifact.sha256,
            deploy_ref=image.ref,
            lock_sha256=self.plan.lock_sha256,
            backend=self.backend.name,
        )
        self._emit("ArtifactPublished", payload={"path": str(dest), "sha256": artifact.sha256})
        self._emit("BuildCompleted", payload={"build_id": build_id, "deploy_ref": image.ref})
        log.info("Published %s (%s) as %s", dest, artifact.sha256[:12], image.ref)

        return BuildResult(
            build_id=build_id,
            plan_id=plan_id,
            linkage=target.linkage.kind,
            artifact_path=str(dest),
            artifact_sha256=artifact.sha256,
            sha_path=str(sha_path),
            deploy_ref=image.ref,
            stages_run=list(self._ran),
            stages_cached=list(self._cached),
            events=[e.to_dict() for e in self._events],
        )

    def run(self, target: BuildTarget) -> BuildResult:
        try:
            self.begin(target)
            base = self.prepare_base_environment(self.toolchain.base_image)
            env = self.prepare_build_environment(base, self.toolchain.extra_tools())
            artifact = self.compile(env, target)
            image = self.finalize(artifact)
            return self._publish(artifact, image)
        except BuildError as e:
            self._emit("BuildAborted", stage=e.stage, payload={"kind": e.kind, "error": e.message})
            log.error("Build aborted (%s): %s", e.kind, e.message)
            raise
        finally:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            append_events(self.state_dir, [e.to_dict() for e in self._events])
