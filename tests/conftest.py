import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest
from fastapi.testclient import TestClient

from indexer_deploy.api.main import app
from indexer_deploy.core.build.backends import BuildBackend, StageContext
from indexer_deploy.core.build.models import BuildStage
from indexer_deploy.core.commands import CommandResult, CommandRunner
from indexer_deploy.core.errors import CommandFailed
from indexer_deploy.core.observability.metrics import reset_metrics
from indexer_deploy.core.provision.acl import AclEntry
from indexer_deploy.core.provision.host import HostBackend
from indexer_deploy.core.provision.models import VolumeInfo

CARGO_TOML = """\
[package]
name = "electrs"
version = "0.4.1"
edition = "2018"

[dependencies]
serde = "1.0"
"""

CARGO_LOCK = """\
# This file is automatically @generated by Cargo.
version = 3

[[package]]
name = "electrs"
version = "0.4.1"
dependencies = [
 "serde",
]

[[package]]
name = "serde"
version = "1.0.190"
source = "registry+https://github.com/rust-lang/crates.io-index"
checksum = "91d3c334ca1ee894a2c6f6ad698fe8c435b76d504b13d436f0685d648d6d96f7"
"""


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path: Path):
    # Deterministic config: no ambient DEPLOY_* overrides, no ./deploy.yaml pickup.
    for key in list(os.environ):
        if key.startswith("DEPLOY_") and not key.startswith("DEPLOY_SMOKE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_metrics()


@pytest.fixture()
def crate(tmp_path: Path) -> Path:
    """A minimal electrs-shaped crate with a consistent lockfile."""
    root = tmp_path / "electrs"
    (root / "src").mkdir(parents=True)
    (root / "rust-bellcoin").mkdir()
    (root / "Cargo.toml").write_text(CARGO_TOML, encoding="utf-8")
    (root / "Cargo.lock").write_text(CARGO_LOCK, encoding="utf-8")
    (root / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
    (root / "rust-bellcoin" / "lib.rs").write_text("pub fn id() {}\n", encoding="utf-8")
    return root


@pytest.fixture()
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


# ---------------------------------------------------------------------
# Build backend double
# ---------------------------------------------------------------------

class FakeBuildBackend(BuildBackend):
    """Runs no commands; the builder stage writes a small executable."""

    name = "fake"

    def __init__(self, fail_stage: Optional[str] = None, empty_artifact: bool = False):
        self.fail_stage = fail_stage
        self.empty_artifact = empty_artifact
        self.calls: List[str] = []
        self.prepared = 0

    def prepare(self, ctx: StageContext) -> None:
        self.prepared += 1

    def run_stage(self, stage: BuildStage, ctx: StageContext) -> Dict:
        self.calls.append(stage.name)
        if stage.name == self.fail_stage:
            raise CommandFailed(["fake", stage.name], 101, stderr=f"{stage.name} exploded")

        out = {"ref": f"fake-{stage.name}:{stage.cache_key[:12]}"}
        if stage.name == "builder":
            dest = ctx.artifact_staging
            dest.parent.mkdir(parents=True, exist_ok=True)
            body = "" if self.empty_artifact else f"#!/bin/sh\necho electrs {ctx.linkage} {stage.cache_key[:8]}\n"
            dest.write_text(body, encoding="utf-8")
            dest.chmod(0o755)
            out["artifact"] = str(dest)
        return out

    def outputs_present(self, stage: BuildStage, outputs: Dict, ctx: StageContext) -> bool:
        if stage.name == "builder":
            return Path(str(outputs.get("artifact", ""))).is_file()
        return bool(outputs.get("ref"))


# ---------------------------------------------------------------------
# Command runner double
# ---------------------------------------------------------------------

class RecordingRunner(CommandRunner):
    """Records argv; answers from `responses` keyed by argv prefix."""

    def __init__(self, responses: Optional[Dict[Tuple[str, ...], CommandResult]] = None):
        super().__init__()
        self.responses = responses or {}
        self.calls: List[List[str]] = []

    def run(self, argv: Sequence[str], *, cwd: Optional[Path] = None) -> CommandResult:
        args = [str(a) for a in argv]
        self.calls.append(args)
        best: Optional[Tuple[str, ...]] = None
        for prefix in self.responses:
            if tuple(args[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return CommandResult(argv=args, returncode=0)
        r = self.responses[best]
        return CommandResult(argv=args, returncode=r.returncode, stdout=r.stdout, stderr=r.stderr)


# ---------------------------------------------------------------------
# Host double
# ---------------------------------------------------------------------

TRIVIAL_ACL = [
    AclEntry.make("owner@", None, "rwxp--aARWcCos", "", "allow"),
    AclEntry.make("group@", None, "r-----a-R-c--s", "", "allow"),
    AclEntry.make("everyone@", None, "r-----a-R-c--s", "", "allow"),
]


class FakeHost(HostBackend):
    """In-memory pool + filesystem.

    `users`: known user names (None = everyone exists).
    `fail_acl` / `fail_create`: mountpoints / datasets whose writes fail.
    """

    name = "fake"

    def __init__(self, users: Optional[Set[str]] = None):
        self.datasets: Dict[str, VolumeInfo] = {}
        self.acls: Dict[str, List[AclEntry]] = {}
        self.owners: Dict[str, Tuple[str, str]] = {}
        self.users = users
        self.fail_acl: Set[str] = set()
        self.fail_create: Set[str] = set()
        self.calls: List[Tuple[str, ...]] = []
        self._lock = threading.Lock()

    def _record(self, *call: str) -> None:
        with self._lock:
            self.calls.append(call)

    def add_dataset(self, dataset: str, mountpoint: str, **properties: str) -> None:
        props = {"aclmode": "passthrough", "aclinherit": "passthrough", **properties}
        self.datasets[dataset] = VolumeInfo(name=dataset, mountpoint=mountpoint, properties=props)
        self.acls.setdefault(mountpoint, list(TRIVIAL_ACL))
        self.owners.setdefault(mountpoint, ("root", "root"))

    def dataset_info(self, dataset: str) -> Optional[VolumeInfo]:
        return self.datasets.get(dataset)

    def dataset_at_mountpoint(self, mountpoint: str) -> Optional[str]:
        with self._lock:
            items = list(self.datasets.items())
        for name, info in items:
            if info.mountpoint == mountpoint:
                return name
        return None

    def create_dataset(self, dataset: str, mountpoint: str, properties: Dict[str, str]) -> None:
        self._record("create", dataset, mountpoint)
        if dataset in self.fail_create:
            raise CommandFailed(["zfs", "create", dataset], 1, stderr="pool I/O is currently suspended")
        with self._lock:
            self.add_dataset(dataset, mountpoint, **properties)

    def get_acl(self, path: str) -> List[AclEntry]:
        if path not in self.acls:
            raise FileNotFoundError(path)
        return list(self.acls[path])

    def set_acl(self, path: str, entries: List[AclEntry]) -> None:
        self._record("set_acl", path)
        if path in self.fail_acl:
            raise CommandFailed(["setfacl", "-m", "...", path], 1, stderr="Operation not supported")
        self.acls[path] = [*TRIVIAL_ACL, *entries]

    def get_owner(self, path: str) -> Tuple[str, str]:
        if path not in self.owners:
            raise FileNotFoundError(path)
        return self.owners[path]

    def chown(self, path: str, user: str, group: str) -> None:
        self._record("chown", path, f"{user}:{group}")
        if self.users is not None and user not in self.users:
            raise LookupError(f"no such user: {user!r}")
        self.owners[path] = (user, group)

    def managed_acl(self, path: str) -> List[str]:
        return [e.render() for e in self.acls.get(path, []) if e.managed]


@pytest.fixture()
def fake_host() -> FakeHost:
    return FakeHost()


# ---------------------------------------------------------------------
# API
# ---------------------------------------------------------------------

@pytest.fixture()
def deploy_config(tmp_path: Path, crate: Path, state_dir: Path, monkeypatch) -> Path:
    cfg = tmp_path / "deploy.yaml"
    cfg.write_text(
        f"""\
state_dir: {state_dir}
build:
  source_root: {crate}
  output_dir: {tmp_path / "dist"}
provision:
  pool: tank
  families:
    - name: node
      home_directory: /node
      owner_user: node
      owner_group: node
      consumer_identities: [indexer, consumer]
""",
        encoding="utf-8",
    )
    monkeypatch.setenv("DEPLOY_CONFIG_FILE", str(cfg))
    return cfg


@pytest.fixture()
def client(deploy_config):
    return TestClient(app)
