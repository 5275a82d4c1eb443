from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from indexer_deploy.core.build.models import BuildPlan, BuildStage
from indexer_deploy.core.config import ToolchainSettings


@dataclass(frozen=True)
class StageContext:
    plan: BuildPlan
    toolchain: ToolchainSettings
    state_dir: Path
    output_dir: Path
    image_name: str

    @property
    def linkage(self) -> str:
        return self.plan.target.linkage.kind

    @property
    def artifact_staging(self) -> Path:
        """Where the builder stage must leave the compiled binary."""
        key = self.plan.stage("builder").cache_key[:16]
        return self.state_dir / "artifacts" / key / self.plan.target.output_binary_name

    @property
    def publish_dir(self) -> Path:
        return self.output_dir / self.linkage


class BuildBackend(ABC):
    name: str

    def prepare(self, ctx: StageContext) -> None:
        """Called once per pipeline run before the first stage."""
        return None

    @abstractmethod
    def run_stage(self, stage: BuildStage, ctx: StageContext) -> Dict[str, Any]:
        """Execute one stage.

        Returns the stage outputs recorded in the stage cache, always including
        "ref" (image tag or host location). Raises CommandFailed or OSError.
        """

    @abstractmethod
    def outputs_present(self, stage: BuildStage, outputs: Dict[str, Any], ctx: StageContext) -> bool:
        """Whether cached outputs of `stage` can still be reused."""

    def reuse_stage(self, stage: BuildStage, outputs: Dict[str, Any], ctx: StageContext) -> None:
        """Called when `stage` is served from the stage cache instead of running."""
        return None
