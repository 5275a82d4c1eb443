"""Pinned dependency manifest checks.

The build copies Cargo.lock verbatim and compiles with `--locked`; these
checks run before any stage so an unpinned or inconsistent lockfile fails
the pipeline up front instead of half-way through a compile.
"""
from __future__ import annotations

import hashlib
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from indexer_deploy.core.errors import ManifestInconsistency

_DEP_TABLES = ("dependencies", "build-dependencies", "dev-dependencies")


@dataclass(frozen=True)
class LockedPackage:
    name: str
    version: str
    source: Optional[str] = None
    checksum: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class LockfileSummary:
    lock_path: str
    lock_sha256: str
    manifest_sha256: str
    lock_version: Optional[int]
    root_package: Optional[str]
    packages: List[LockedPackage]

    @property
    def package_count(self) -> int:
        return len(self.packages)


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _read_toml(path: Path, label: str) -> tuple[bytes, Dict[str, Any]]:
    if not path.exists():
        raise ManifestInconsistency(f"{label} missing: {path}", stage="manifest")
    raw = path.read_bytes()
    try:
        return raw, tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ManifestInconsistency(f"{label} is not valid TOML: {path}: {exc}", stage="manifest") from exc


def parse_lock_packages(lock: Dict[str, Any]) -> tuple[List[LockedPackage], List[str]]:
    packages: List[LockedPackage] = []
    problems: List[str] = []

    raw_pkgs = lock.get("package", [])
    if not isinstance(raw_pkgs, list):
        return [], ["lockfile 'package' entries must be an array of tables"]

    for i, p in enumerate(raw_pkgs):
        if not isinstance(p, dict):
            problems.append(f"package entry #{i} is not a table")
            continue
        name = p.get("name")
        version = p.get("version")
        if not isinstance(name, str) or not name:
            problems.append(f"package entry #{i} has no name")
            continue
        if not isinstance(version, str) or not version:
            problems.append(f"package {name} has no pinned version")
            continue
        deps = p.get("dependencies") or []
        if not isinstance(deps, list):
            problems.append(f"package {name} {version}: dependencies must be an array")
            deps = []
        packages.append(
            LockedPackage(
                name=name,
                version=version,
                source=p.get("source"),
                checksum=p.get("checksum"),
                dependencies=[str(d) for d in deps],
            )
        )
    return packages, problems


def _check_sources(packages: List[LockedPackage], lock: Dict[str, Any]) -> List[str]:
    problems: List[str] = []
    # lockfile v1 keeps checksums in [metadata] instead of per package
    legacy_metadata = isinstance(lock.get("metadata"), dict)

    for p in packages:
        src = p.source or ""
        if src.startswith("registry+") and not p.checksum and not legacy_metadata:
            problems.append(f"package {p.name} {p.version} has no checksum")
        if src.startswith("git+") and "#" not in src:
            problems.append(f"package {p.name} {p.version} git source is not pinned to a commit")
    return problems


def _resolve_reference(ref: str, by_name: Dict[str, List[LockedPackage]]) -> bool:
    # "name", "name version" or "name version (source)"
    parts = ref.split(" ", 2)
    candidates = by_name.get(parts[0], [])
    if len(parts) == 1:
        return len(candidates) == 1
    return any(c.version == parts[1] for c in candidates)


def _declared_dependencies(manifest: Dict[str, Any]) -> Set[str]:
    names: Set[str] = set()

    def collect(table: Any) -> None:
        if not isinstance(table, dict):
            return
        for key, spec in table.items():
            # renamed deps are locked under their real package name
            if isinstance(spec, dict) and isinstance(spec.get("package"), str):
                names.add(spec["package"])
            else:
                names.add(key)

    for t in _DEP_TABLES:
        collect(manifest.get(t))
    targets = manifest.get("target")
    if isinstance(targets, dict):
        for tcfg in targets.values():
            if isinstance(tcfg, dict):
                for t in _DEP_TABLES:
                    collect(tcfg.get(t))
    return names


def validate_manifests(source_root: Path, *, lock_name: str = "Cargo.lock", manifest_name: str = "Cargo.toml") -> LockfileSummary:
    """Check that the lockfile pins every dependency the crate declares.

    Raises ManifestInconsistency listing every problem found.
    """
    lock_path = source_root / lock_name
    manifest_path = source_root / manifest_name

    manifest_raw, manifest = _read_toml(manifest_path, "crate manifest")
    lock_raw, lock = _read_toml(lock_path, "lockfile")

    packages, problems = parse_lock_packages(lock)
    if not packages and not problems:
        problems.append("lockfile contains no packages")
    problems.extend(_check_sources(packages, lock))

    by_name: Dict[str, List[LockedPackage]] = {}
    for p in packages:
        by_name.setdefault(p.name, []).append(p)

    for p in packages:
        for ref in p.dependencies:
            if not _resolve_reference(ref, by_name):
                problems.append(f"package {p.name} {p.version} depends on unresolved {ref!r}")

    root_package: Optional[str] = None
    pkg_table = manifest.get("package")
    if isinstance(pkg_table, dict):
        root_package = pkg_table.get("name")
        if root_package and root_package not in by_name:
            problems.append(f"crate {root_package} is not in the lockfile")
    elif not isinstance(manifest.get("workspace"), dict):
        problems.append("crate manifest has neither [package] nor [workspace]")

    for dep in sorted(_declared_dependencies(manifest)):
        if dep not in by_name:
            problems.append(f"declared dependency {dep} is not pinned in the lockfile")

    if problems:
        raise ManifestInconsistency(
            f"{lock_path} is inconsistent ({len(problems)} problem(s)): {problems[0]}",
            stage="manifest",
            detail={"problems": problems},
        )

    version = lock.get("version")
    return LockfileSummary(
        lock_path=str(lock_path),
        lock_sha256=_sha256_bytes(lock_raw),
        manifest_sha256=_sha256_bytes(manifest_raw),
        lock_version=version if isinstance(version, int) else None,
        root_package=root_package,
        packages=packages,
    )
