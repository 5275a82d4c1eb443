import hashlib
import json
import os
from pathlib import Path
from typing import Dict, Iterable


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def load_expected_sha(sha_file: Path) -> str:
    content = sha_file.read_text().strip()
    return content.split()[0]


def write_sha_file(artifact_path: Path) -> Path:
    """Write `<artifact>.sha256` in `sha256sum` format next to the artifact."""
    sha_path = artifact_path.with_name(artifact_path.name + ".sha256")
    sha_path.write_text(f"{sha256_file(artifact_path)}  {artifact_path.name}\n")
    return sha_path


def verify_artifact_integrity(artifact_path: Path, sha_path: Path) -> Dict:
    if not artifact_path.exists():
        return {"valid": False, "reason": "artifact_missing"}

    if not sha_path.exists():
        return {"valid": False, "reason": "sha_file_missing"}

    actual_sha = sha256_file(artifact_path)
    expected_sha = load_expected_sha(sha_path)

    return {
        "valid": actual_sha == expected_sha,
        "expected_sha": expected_sha,
        "actual_sha": actual_sha,
        "executable": os.access(artifact_path, os.X_OK),
        "size": artifact_path.stat().st_size,
    }


def is_nonempty_executable(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0 and os.access(path, os.X_OK)


_EXCLUDED_DIRS = {
    "target", ".git", ".deploy", "__pycache__", ".idea", ".vscode",
}


def generate_source_manifest(source_root: Path, inputs: Iterable[str]) -> Dict:
    """Per-file sha256 of the declared source inputs, in a stable order."""
    manifest = {
        "files": [],
        "total_files": 0,
    }

    for rel in sorted(set(inputs)):
        top = source_root / rel
        if top.is_file():
            paths = [top]
        elif top.is_dir():
            paths = sorted(p for p in top.rglob("*") if p.is_file())
        else:
            manifest["files"].append({"path": rel, "sha256": None})
            continue

        for path in paths:
            # Skip excluded directories anywhere in the path
            parts = set(path.relative_to(source_root).parts)
            if parts & _EXCLUDED_DIRS:
                continue
            manifest["files"].append({
                "path": path.relative_to(source_root).as_posix(),
                "sha256": sha256_file(path),
            })

    manifest["total_files"] = len(manifest["files"])
    return manifest


def source_tree_hash(source_root: Path, inputs: Iterable[str]) -> str:
    manifest = generate_source_manifest(source_root, inputs)
    return hashlib.sha256(json.dumps(manifest, sort_keys=True).encode("utf-8")).hexdigest()
