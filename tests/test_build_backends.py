import shutil
from pathlib import Path
from typing import Dict, Optional, Sequence

import pytest

from conftest import RecordingRunner
from indexer_deploy.core.build.backends import BACKENDS, DockerBackend, LocalBackend, StageContext, get_backend
from indexer_deploy.core.build.linkage import DynamicLinkage, StaticMuslLinkage
from indexer_deploy.core.build.models import BuildTarget
from indexer_deploy.core.build.pipeline import BuildPipeline, plan_target
from indexer_deploy.core.commands import CommandResult
from indexer_deploy.core.config import ToolchainSettings
from indexer_deploy.core.errors import CommandFailed, EnvironmentSetupFailure


def _res(rc=0, stdout="", stderr=""):
    return CommandResult(argv=[], returncode=rc, stdout=stdout, stderr=stderr)


def _ctx(crate: Path, state_dir: Path, tmp_path: Path, linkage) -> StageContext:
    tc = ToolchainSettings()
    target = BuildTarget(source_root=crate, linkage=linkage, source_inputs=["src", "rust-bellcoin"])
    plan, _lock = plan_target(target, tc)
    return StageContext(plan=plan, toolchain=tc, state_dir=state_dir, output_dir=tmp_path / "dist", image_name="electrs")


def test_backend_registry():
    assert set(BACKENDS) == {"docker", "local"}
    assert isinstance(get_backend("local", install_packages=True), LocalBackend)
    with pytest.raises(ValueError, match="Unsupported build backend"):
        get_backend("podman")


def test_docker_builder_stage_extracts_artifact(crate, state_dir, tmp_path):
    ctx = _ctx(crate, state_dir, tmp_path, StaticMuslLinkage())
    runner = RecordingRunner({("docker", "create"): _res(stdout="cid123\n")})
    backend = DockerBackend(runner)
    backend.prepare(ctx)

    dockerfile = state_dir / "docker" / "Dockerfile.static_musl"
    assert "AS runner" in dockerfile.read_text(encoding="utf-8")

    builder = ctx.plan.stage("builder")
    out = backend.run_stage(builder, ctx)

    tag = f"electrs-builder:{builder.cache_key[:12]}"
    assert runner.calls[0] == [
        "docker", "build", "--file", str(dockerfile), "--target", "builder", "--tag", tag, str(crate)
    ]
    assert [
        "docker", "cp",
        "cid123:/usr/src/app/target/x86_64-unknown-linux-musl/release/electrs",
        str(ctx.artifact_staging),
    ] in runner.calls
    assert runner.calls[-1] == ["docker", "rm", "-f", "cid123"]
    assert out == {"ref": tag, "artifact": str(ctx.artifact_staging)}


def test_docker_runner_stage_tags(crate, state_dir, tmp_path):
    ctx = _ctx(crate, state_dir, tmp_path, DynamicLinkage())
    runner = RecordingRunner()
    backend = DockerBackend(runner)
    backend.prepare(ctx)

    stage = ctx.plan.stage("runner")
    out = backend.run_stage(stage, ctx)
    # the cached ref is the per-key tag; the linkage tag only follows along
    assert out == {"ref": f"electrs:{stage.cache_key[:12]}"}
    argv = runner.calls[0]
    assert argv[argv.index("--target") + 1] == "runner"
    assert "electrs:dynamic" in argv


class FakeDockerDaemon(RecordingRunner):
    """Keeps tag -> image contents; builder and runner images carry src/main.rs as it was at build time."""

    def __init__(self, crate: Path):
        super().__init__()
        self.crate = crate
        self.images: Dict[str, str] = {}
        self.containers: Dict[str, str] = {}

    def run(self, argv: Sequence[str], *, cwd: Optional[Path] = None) -> CommandResult:
        args = [str(a) for a in argv]
        self.calls.append(args)
        ok = CommandResult(argv=args, returncode=0)

        if args[:2] == ["docker", "build"]:
            stage = args[args.index("--target") + 1]
            content = stage
            if stage in ("builder", "runner"):
                content = (self.crate / "src" / "main.rs").read_text(encoding="utf-8")
            for i, a in enumerate(args):
                if a == "--tag":
                    self.images[args[i + 1]] = content
            return ok
        if args[:3] == ["docker", "image", "inspect"]:
            if args[3] in self.images:
                return ok
            return CommandResult(argv=args, returncode=1, stderr="No such image")
        if args[:2] == ["docker", "create"]:
            cid = f"cid{len(self.containers)}"
            self.containers[cid] = self.images[args[2]]
            return CommandResult(argv=args, returncode=0, stdout=cid + "\n")
        if args[:2] == ["docker", "cp"]:
            cid = args[2].split(":", 1)[0]
            dest = Path(args[3])
            dest.write_text("#!/bin/sh\n" + self.containers[cid], encoding="utf-8")
            dest.chmod(0o755)
            return ok
        if args[:2] == ["docker", "tag"]:
            self.images[args[3]] = self.images[args[2]]
        return ok


def test_docker_rebuild_of_earlier_sources_points_at_its_own_image(crate, state_dir, tmp_path):
    daemon = FakeDockerDaemon(crate)
    main_rs = crate / "src" / "main.rs"

    def build(version: str):
        main_rs.write_text(f"// version {version}\n", encoding="utf-8")
        return BuildPipeline(
            backend=DockerBackend(daemon),
            toolchain=ToolchainSettings(),
            state_dir=state_dir,
            output_dir=tmp_path / "dist",
        ).run(BuildTarget(source_root=crate, linkage=DynamicLinkage(), source_inputs=["src"]))

    first = build("A")
    second = build("B")
    again = build("A")

    assert again.stages_cached == ["base", "toolchain", "builder", "runner"]
    assert again.deploy_ref == first.deploy_ref
    assert again.deploy_ref not in (second.deploy_ref, "electrs:dynamic")
    assert "version A" in Path(again.artifact_path).read_text(encoding="utf-8")
    assert "version A" in daemon.images[again.deploy_ref]
    # the moving linkage tag is brought back to the reused image
    assert ["docker", "tag", again.deploy_ref, "electrs:dynamic"] in daemon.calls
    assert "version A" in daemon.images["electrs:dynamic"]


def test_docker_dockerfile_follows_replanned_inputs(crate, state_dir, tmp_path):
    p = BuildPipeline(
        backend=DockerBackend(RecordingRunner()),
        toolchain=ToolchainSettings(),
        state_dir=state_dir,
        output_dir=tmp_path / "dist",
    )
    p.begin(BuildTarget(source_root=crate, linkage=DynamicLinkage(), source_inputs=["src"]))
    dockerfile = state_dir / "docker" / "Dockerfile.dynamic"
    assert "FROM rust:1.83-bookworm AS base" in dockerfile.read_text(encoding="utf-8")

    base = p.prepare_base_environment("rust:1.80-bookworm")
    assert p.plan.stage("base").base_ref == "rust:1.80-bookworm"
    assert "FROM rust:1.80-bookworm AS base" in dockerfile.read_text(encoding="utf-8")

    p.prepare_build_environment(base, {"linker": "lld"})
    text = dockerfile.read_text(encoding="utf-8")
    assert " lld" in text
    assert " clang" not in text


def test_docker_cleanup_runs_when_copy_fails(crate, state_dir, tmp_path):
    ctx = _ctx(crate, state_dir, tmp_path, DynamicLinkage())
    runner = RecordingRunner(
        {
            ("docker", "create"): _res(stdout="cid9"),
            ("docker", "cp"): _res(1, stderr="No such container:path"),
        }
    )
    backend = DockerBackend(runner)
    backend.prepare(ctx)
    with pytest.raises(CommandFailed):
        backend.run_stage(ctx.plan.stage("builder"), ctx)
    assert runner.calls[-1] == ["docker", "rm", "-f", "cid9"]


def test_docker_outputs_present_checks_image(crate, state_dir, tmp_path):
    ctx = _ctx(crate, state_dir, tmp_path, DynamicLinkage())
    stage = ctx.plan.stage("base")
    gone = DockerBackend(RecordingRunner({("docker", "image", "inspect"): _res(1, stderr="No such image")}))
    assert gone.outputs_present(stage, {"ref": "electrs-base:abc"}, ctx) is False
    assert DockerBackend(RecordingRunner()).outputs_present(stage, {"ref": "electrs-base:abc"}, ctx) is True
    assert DockerBackend(RecordingRunner()).outputs_present(stage, {}, ctx) is False


def _fake_cargo_output(crate: Path) -> None:
    built = crate / "target" / "release" / "electrs"
    built.parent.mkdir(parents=True)
    built.write_bytes(b"\x7fELF electrs")
    built.chmod(0o755)


def test_local_backend_builds_rootfs(crate, state_dir, tmp_path, monkeypatch):
    monkeypatch.setattr(shutil, "which", lambda name: f"/usr/bin/{name}")
    _fake_cargo_output(crate)
    runner = RecordingRunner()

    pipeline = BuildPipeline(
        backend=LocalBackend(runner),
        toolchain=ToolchainSettings(),
        state_dir=state_dir,
        output_dir=tmp_path / "dist",
    )
    result = pipeline.run(BuildTarget(source_root=crate, linkage=DynamicLinkage(), source_inputs=["src"]))

    # package installs are skipped on the host unless asked for
    assert runner.calls == [["cargo", "build", "--release", "--locked"]]
    rootfs = tmp_path / "dist" / "dynamic" / "rootfs"
    assert (rootfs / "bin" / "electrs").read_bytes() == b"\x7fELF electrs"
    assert (rootfs / "etc" / "indexer-deploy" / "runtime-packages").read_text() == "librocksdb7.8\n"
    assert result.deploy_ref == str(rootfs)
    assert Path(result.artifact_path).read_bytes() == b"\x7fELF electrs"


def test_local_backend_installs_packages_when_asked(crate, state_dir, tmp_path, monkeypatch):
    monkeypatch.setattr(shutil, "which", lambda name: f"/usr/bin/{name}")
    _fake_cargo_output(crate)
    runner = RecordingRunner()
    BuildPipeline(
        backend=LocalBackend(runner, install_packages=True),
        toolchain=ToolchainSettings(),
        state_dir=state_dir,
        output_dir=tmp_path / "dist",
    ).run(BuildTarget(source_root=crate, linkage=DynamicLinkage(), source_inputs=["src"]))
    assert ["apt-get", "install", "-qy", "librocksdb-dev"] in runner.calls
    assert ["apt-get", "install", "-qy", "librocksdb7.8"] in runner.calls


def test_local_backend_missing_tool(crate, state_dir, tmp_path, monkeypatch):
    monkeypatch.setattr(shutil, "which", lambda name: None if name == "clang" else f"/usr/bin/{name}")
    pipeline = BuildPipeline(
        backend=LocalBackend(RecordingRunner()),
        toolchain=ToolchainSettings(),
        state_dir=state_dir,
        output_dir=tmp_path / "dist",
    )
    with pytest.raises(EnvironmentSetupFailure) as ei:
        pipeline.run(BuildTarget(source_root=crate, linkage=DynamicLinkage(), source_inputs=["src"]))
    assert ei.value.stage == "toolchain"
    assert "clang" in ei.value.message
