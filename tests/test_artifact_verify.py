from pathlib import Path

from indexer_deploy.core.build.verify import (
    generate_source_manifest,
    is_nonempty_executable,
    source_tree_hash,
    verify_artifact_integrity,
    write_sha_file,
)


def _binary(tmp_path: Path) -> Path:
    p = tmp_path / "electrs"
    p.write_bytes(b"\x7fELF fake")
    p.chmod(0o755)
    return p


def test_sha_file_round_trip(tmp_path: Path):
    art = _binary(tmp_path)
    sha = write_sha_file(art)
    assert sha.name == "electrs.sha256"
    assert sha.read_text().endswith("  electrs\n")

    r = verify_artifact_integrity(art, sha)
    assert r["valid"] is True
    assert r["executable"] is True
    assert r["size"] == art.stat().st_size


def test_tampered_artifact(tmp_path: Path):
    art = _binary(tmp_path)
    sha = write_sha_file(art)
    art.write_bytes(b"\x7fELF other")
    r = verify_artifact_integrity(art, sha)
    assert r["valid"] is False
    assert r["expected_sha"] != r["actual_sha"]


def test_missing_inputs(tmp_path: Path):
    assert verify_artifact_integrity(tmp_path / "nope", tmp_path / "nope.sha256")["reason"] == "artifact_missing"
    art = _binary(tmp_path)
    assert verify_artifact_integrity(art, tmp_path / "x.sha256")["reason"] == "sha_file_missing"


def test_nonempty_executable(tmp_path: Path):
    art = _binary(tmp_path)
    assert is_nonempty_executable(art)
    empty = tmp_path / "empty"
    empty.write_bytes(b"")
    empty.chmod(0o755)
    assert not is_nonempty_executable(empty)
    plain = tmp_path / "plain"
    plain.write_bytes(b"x")
    plain.chmod(0o644)
    assert not is_nonempty_executable(plain)


def test_source_manifest_skips_build_output(crate: Path):
    (crate / "src" / "target").mkdir()
    (crate / "src" / "target" / "junk.o").write_bytes(b"x")
    m = generate_source_manifest(crate, ["src", "rust-bellcoin", "missing-dir"])
    paths = [f["path"] for f in m["files"]]
    assert "src/main.rs" in paths
    assert "rust-bellcoin/lib.rs" in paths
    assert not any("target" in p for p in paths)
    assert {"path": "missing-dir", "sha256": None} in m["files"]


def test_source_hash_tracks_content(crate: Path):
    before = source_tree_hash(crate, ["src"])
    (crate / "rust-bellcoin" / "lib.rs").write_text("changed\n", encoding="utf-8")
    assert source_tree_hash(crate, ["src"]) == before
    (crate / "src" / "main.rs").write_text("changed\n", encoding="utf-8")
    assert source_tree_hash(crate, ["src"]) != before
