from pathlib import Path

import pytest

from conftest import FakeBuildBackend
from indexer_deploy.core.build.cache import StageCache
from indexer_deploy.core.build.linkage import DynamicLinkage, StaticMuslLinkage
from indexer_deploy.core.build.models import BuildTarget
from indexer_deploy.core.build.persist import read_events
from indexer_deploy.core.build.pipeline import BuildPipeline
from indexer_deploy.core.build.registry import BuildRegistry
from indexer_deploy.core.build.verify import sha256_file, verify_artifact_integrity
from indexer_deploy.core.config import ToolchainSettings
from indexer_deploy.core.errors import CompilationFailure, EnvironmentSetupFailure, ManifestInconsistency
from indexer_deploy.core.observability.metrics import snapshot_named


def _target(crate: Path, linkage=None) -> BuildTarget:
    return BuildTarget(source_root=crate, linkage=linkage or DynamicLinkage(), source_inputs=["src", "rust-bellcoin"])


def _pipeline(backend, state_dir: Path, tmp_path: Path) -> BuildPipeline:
    return BuildPipeline(
        backend=backend,
        toolchain=ToolchainSettings(),
        state_dir=state_dir,
        output_dir=tmp_path / "dist",
    )


@pytest.mark.parametrize("linkage", [DynamicLinkage(), StaticMuslLinkage()])
def test_build_publishes_binary_per_mode(crate, state_dir, tmp_path, linkage):
    backend = FakeBuildBackend()
    result = _pipeline(backend, state_dir, tmp_path).run(_target(crate, linkage))

    assert backend.calls == ["base", "toolchain", "builder", "runner"]
    assert backend.prepared == 1
    published = tmp_path / "dist" / linkage.kind / "electrs"
    assert result.artifact_path == str(published)
    assert published.is_file()
    assert result.artifact_sha256 == sha256_file(published)
    assert verify_artifact_integrity(published, Path(result.sha_path))["valid"] is True
    assert result.deploy_ref.startswith("fake-runner:")

    latest = BuildRegistry(state_dir, linkage.kind).latest()
    assert latest["build_id"] == result.build_id
    assert latest["artifact_sha256"] == result.artifact_sha256

    kinds = [e["event_type"] for e in read_events(state_dir)]
    assert kinds[0] == "BuildRequested"
    assert kinds[-2:] == ["ArtifactPublished", "BuildCompleted"]
    assert (state_dir / "plans" / f"{result.plan_id}.json").exists()


def test_same_sources_build_twice_to_same_path(crate, state_dir, tmp_path):
    backend = FakeBuildBackend()
    first = _pipeline(backend, state_dir, tmp_path).run(_target(crate))
    second = _pipeline(backend, state_dir, tmp_path).run(_target(crate))

    assert second.artifact_path == first.artifact_path
    assert second.artifact_sha256 == first.artifact_sha256
    assert second.stages_run == []
    assert second.stages_cached == ["base", "toolchain", "builder", "runner"]
    assert backend.calls == ["base", "toolchain", "builder", "runner"]


def test_source_only_change_reuses_base_and_toolchain(crate, state_dir, tmp_path):
    backend = FakeBuildBackend()
    first = _pipeline(backend, state_dir, tmp_path).run(_target(crate))

    (crate / "src" / "main.rs").write_text("fn main() { println!(\"v2\"); }\n", encoding="utf-8")
    backend.calls.clear()
    second = _pipeline(backend, state_dir, tmp_path).run(_target(crate))

    assert backend.calls == ["builder", "runner"]
    assert second.stages_cached == ["base", "toolchain"]
    assert second.plan_id != first.plan_id
    assert second.artifact_sha256 != first.artifact_sha256


def test_no_cache_reruns_everything(crate, state_dir, tmp_path):
    backend = FakeBuildBackend()
    _pipeline(backend, state_dir, tmp_path).run(_target(crate))
    p = _pipeline(backend, state_dir, tmp_path)
    p.use_cache = False
    p.run(_target(crate))
    assert backend.calls == ["base", "toolchain", "builder", "runner"] * 2


def test_static_musl_with_unpinned_dependency_fails_before_any_stage(crate, state_dir, tmp_path):
    with (crate / "Cargo.toml").open("a", encoding="utf-8") as f:
        f.write('libc = "0.2"\n')

    backend = FakeBuildBackend()
    with pytest.raises(ManifestInconsistency) as ei:
        _pipeline(backend, state_dir, tmp_path).run(_target(crate, StaticMuslLinkage()))

    assert ei.value.exit_code == 11
    assert backend.calls == []
    assert backend.prepared == 0
    assert not (tmp_path / "dist").exists()

    events = read_events(state_dir)
    assert events[-1]["event_type"] == "BuildAborted"
    assert events[-1]["payload"]["kind"] == "manifest_inconsistency"


def test_compile_failure_aborts_without_publishing(crate, state_dir, tmp_path):
    backend = FakeBuildBackend(fail_stage="builder")
    with pytest.raises(CompilationFailure) as ei:
        _pipeline(backend, state_dir, tmp_path).run(_target(crate))

    assert ei.value.stage == "builder"
    assert ei.value.detail["returncode"] == 101
    assert backend.calls == ["base", "toolchain", "builder"]
    assert not (tmp_path / "dist" / "dynamic" / "electrs").exists()
    assert BuildRegistry(state_dir, "dynamic").latest() is None

    stages = {e["stage"] for e in StageCache(state_dir).load()["entries"].values()}
    assert stages == {"base", "toolchain"}

    # fixed toolchain: only the failed stage onwards runs again
    fixed = FakeBuildBackend()
    _pipeline(fixed, state_dir, tmp_path).run(_target(crate))
    assert fixed.calls == ["builder", "runner"]


def test_environment_failure(crate, state_dir, tmp_path):
    backend = FakeBuildBackend(fail_stage="toolchain")
    with pytest.raises(EnvironmentSetupFailure) as ei:
        _pipeline(backend, state_dir, tmp_path).run(_target(crate))
    assert ei.value.exit_code == 10
    assert backend.calls == ["base", "toolchain"]
    assert snapshot_named().get("build_stage_toolchain_failed") == 1


def test_runner_failure_publishes_nothing(crate, state_dir, tmp_path):
    backend = FakeBuildBackend(fail_stage="runner")
    with pytest.raises(EnvironmentSetupFailure):
        _pipeline(backend, state_dir, tmp_path).run(_target(crate))
    assert not (tmp_path / "dist" / "dynamic").exists()


def test_empty_artifact_is_a_compilation_failure(crate, state_dir, tmp_path):
    backend = FakeBuildBackend(empty_artifact=True)
    with pytest.raises(CompilationFailure, match="no executable"):
        _pipeline(backend, state_dir, tmp_path).run(_target(crate))
    assert StageCache(state_dir).get(
        _pipeline(backend, state_dir, tmp_path).begin(_target(crate)).stage("builder").cache_key
    ) is None


def test_lockfile_change_between_stages_is_rejected(crate, state_dir, tmp_path):
    p = _pipeline(FakeBuildBackend(), state_dir, tmp_path)
    target = _target(crate)
    p.begin(target)
    base = p.prepare_base_environment(p.toolchain.base_image)
    env = p.prepare_build_environment(base, p.toolchain.extra_tools())

    lock = (crate / "Cargo.lock").read_text(encoding="utf-8")
    (crate / "Cargo.lock").write_text(lock + "\n# touched\n", encoding="utf-8")

    with pytest.raises(ManifestInconsistency, match="changed after planning"):
        p.compile(env, target)


def test_operations_run_one_stage_each(crate, state_dir, tmp_path):
    backend = FakeBuildBackend()
    p = _pipeline(backend, state_dir, tmp_path)
    target = _target(crate, StaticMuslLinkage())
    p.begin(target)

    base = p.prepare_base_environment(p.toolchain.base_image)
    assert backend.calls == ["base"]
    assert base.packages == ["librocksdb-dev"]

    env = p.prepare_build_environment(base, p.toolchain.extra_tools())
    assert "musl-tools" in env.packages

    artifact = p.compile(env, target)
    assert artifact.relpath == "target/x86_64-unknown-linux-musl/release/electrs"
    assert artifact.size > 0

    image = p.finalize(artifact)
    assert image.binary_path == "/bin/electrs"
    assert image.runtime_packages == ["librocksdb7.8"]
    assert backend.calls == ["base", "toolchain", "builder", "runner"]


def test_different_base_image_replans(crate, state_dir, tmp_path):
    backend = FakeBuildBackend()
    p = _pipeline(backend, state_dir, tmp_path)
    p.begin(_target(crate))
    default_key = p.plan.stage("base").cache_key

    base = p.prepare_base_environment("rust:1.75-bookworm")
    assert base.os_image_ref == "rust:1.75-bookworm"
    assert base.cache_key != default_key
    assert p.plan.stage("base").base_ref == "rust:1.75-bookworm"
    # the backend re-renders its inputs for the new plan
    assert backend.prepared == 2


def test_base_image_from_another_debian_release_is_refused(crate, state_dir, tmp_path):
    backend = FakeBuildBackend()
    p = _pipeline(backend, state_dir, tmp_path)
    p.begin(_target(crate))
    with pytest.raises(EnvironmentSetupFailure, match="trixie") as ei:
        p.prepare_base_environment("rust:1.83-trixie")
    assert ei.value.stage == "base"
    assert backend.calls == []
    assert p.plan.stage("base").base_ref == "rust:1.83-bookworm"


def test_foreign_build_environment_is_rejected(crate, state_dir, tmp_path):
    p = _pipeline(FakeBuildBackend(), state_dir, tmp_path)
    p.begin(_target(crate))
    base = p.prepare_base_environment(p.toolchain.base_image)
    env = p.prepare_build_environment(base, p.toolchain.extra_tools())

    other = _pipeline(FakeBuildBackend(), state_dir, tmp_path)
    other.begin(_target(crate, StaticMuslLinkage()))
    with pytest.raises(ValueError, match="does not belong"):
        other.compile(env, _target(crate, StaticMuslLinkage()))


def test_stage_metrics_are_counted(crate, state_dir, tmp_path):
    backend = FakeBuildBackend()
    _pipeline(backend, state_dir, tmp_path).run(_target(crate))
    _pipeline(backend, state_dir, tmp_path).run(_target(crate))
    snap = snapshot_named()
    assert snap["build_stage_builder_completed"] == 1
    assert snap["build_stage_builder_cached"] == 1
