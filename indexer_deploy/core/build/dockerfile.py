from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from indexer_deploy.core.build.models import BuildPlan
from indexer_deploy.core.config import ToolchainSettings

PACKAGE_ROOT = Path(__file__).resolve().parents[2]
TEMPLATES_DIR = PACKAGE_ROOT / "templates"


def render_dockerfile(plan: BuildPlan, toolchain: ToolchainSettings) -> str:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(enabled_extensions=()),
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )

    template = env.get_template("docker/Dockerfile.j2")

    target = plan.target
    return template.render(
        linkage=target.linkage.kind,
        workdir=toolchain.workdir,
        manifests=[target.crate_manifest, target.dependency_manifest],
        source_inputs=target.source_inputs,
        base=plan.stage("base"),
        toolchain=plan.stage("toolchain"),
        builder=plan.stage("builder"),
        runner=plan.stage("runner"),
    )
