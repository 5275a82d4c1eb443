from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from indexer_deploy.core.build.linkage import DynamicLinkage, StaticMuslLinkage

StageName = Literal["base", "toolchain", "builder", "runner"]
STAGE_ORDER: tuple[str, ...] = ("base", "toolchain", "builder", "runner")

Linkage = Union[DynamicLinkage, StaticMuslLinkage]


def canonical_hash(payload: Any) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class BuildTarget:
    source_root: Path
    linkage: Linkage
    output_binary_name: str = "electrs"
    dependency_manifest: str = "Cargo.lock"
    crate_manifest: str = "Cargo.toml"
    source_inputs: List[str] = field(default_factory=lambda: ["src"])

    @property
    def artifact_relpath(self) -> str:
        return self.linkage.output_path(self.output_binary_name)

    @property
    def deploy_path(self) -> str:
        return f"/bin/{self.output_binary_name}"

    def declared_inputs(self) -> List[str]:
        """Everything a stage may copy straight from the source tree."""
        return [self.crate_manifest, self.dependency_manifest, *self.source_inputs]


@dataclass(frozen=True)
class StageInput:
    """A path copied into a stage, from the source tree or a prior stage."""

    path: str
    from_stage: Optional[str] = None
    dest: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "from_stage": self.from_stage, "dest": self.dest}


@dataclass(frozen=True)
class BuildStage:
    name: StageName
    base_ref: str
    packages: List[str] = field(default_factory=list)
    copied_inputs: List[StageInput] = field(default_factory=list)
    commands: List[List[str]] = field(default_factory=list)
    produced_outputs: List[str] = field(default_factory=list)
    depends_on: List[str] = field(default_factory=list)
    cache_key: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "base_ref": self.base_ref,
            "packages": list(self.packages),
            "copied_inputs": [i.to_dict() for i in self.copied_inputs],
            "commands": [list(c) for c in self.commands],
            "produced_outputs": list(self.produced_outputs),
            "depends_on": list(self.depends_on),
            "cache_key": self.cache_key,
        }


class PlanError(ValueError):
    pass


@dataclass(frozen=True)
class BuildPlan:
    plan_version: str
    target: BuildTarget
    lock_sha256: str
    stages: List[BuildStage] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def stage(self, name: str) -> BuildStage:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def validate(self) -> None:
        """Stages run in STAGE_ORDER and only consume what already exists."""
        names = [s.name for s in self.stages]
        if names != list(STAGE_ORDER):
            raise PlanError(f"stages must be {list(STAGE_ORDER)}, got {names}")

        declared = set(self.target.declared_inputs())
        produced: Dict[str, set[str]] = {}
        for s in self.stages:
            for dep in s.depends_on:
                if dep not in produced:
                    raise PlanError(f"stage {s.name} depends on {dep}, which does not run before it")
            for inp in s.copied_inputs:
                if inp.from_stage is None:
                    if inp.path not in declared:
                        raise PlanError(f"stage {s.name} copies undeclared source input {inp.path}")
                    continue
                if inp.from_stage not in produced:
                    raise PlanError(f"stage {s.name} copies from {inp.from_stage}, which does not run before it")
                if inp.path not in produced[inp.from_stage]:
                    raise PlanError(f"stage {s.name} copies {inp.path}, which {inp.from_stage} does not produce")
            produced[s.name] = set(s.produced_outputs)

    def compute_plan_id(self) -> str:
        payload = {
            "plan_version": self.plan_version,
            "linkage": self.target.linkage.kind,
            "binary": self.target.output_binary_name,
            "lock_sha256": self.lock_sha256,
            "stages": [{"name": s.name, "cache_key": s.cache_key} for s in self.stages],
        }
        return canonical_hash(payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.compute_plan_id(),
            "plan_version": self.plan_version,
            "linkage": self.target.linkage.model_dump(),
            "output_binary_name": self.target.output_binary_name,
            "artifact_path": self.target.artifact_relpath,
            "deploy_path": self.target.deploy_path,
            "lock_sha256": self.lock_sha256,
            "metadata": dict(self.metadata),
            "stages": [s.to_dict() for s in self.stages],
        }


# ---------------------------------------------------------------------
# Stage products handed from one pipeline operation to the next
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class BaseEnvironment:
    ref: str
    os_image_ref: str
    packages: List[str]
    cache_key: str
    cached: bool = False


@dataclass(frozen=True)
class BuildEnvironment:
    ref: str
    base: BaseEnvironment
    tools: Dict[str, str]
    packages: List[str]
    cache_key: str
    cached: bool = False


@dataclass(frozen=True)
class ArtifactPath:
    path: Path
    linkage: str
    relpath: str
    sha256: str
    size: int
    cache_key: str
    cached: bool = False


@dataclass(frozen=True)
class DeployImage:
    ref: str
    binary_path: str
    artifact_sha256: str
    runtime_packages: List[str]
    cache_key: str
    cached: bool = False
