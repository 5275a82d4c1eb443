"""
Deploy configuration.

Reads an optional YAML/JSON file and merges it over the built-in defaults
(the electrs build and the two node socket families).

Example (YAML):
    state_dir: /var/lib/indexer-deploy
    build:
      source_root: /src/electrs
      linkage: {kind: static_musl}
    provision:
      pool: tank
      grant_everyone: true
      families:
        - name: node
          home_directory: /node
          owner_user: node
          owner_group: node
          consumer_identities: [indexer, consumer]

Environment variables:
    DEPLOY_CONFIG_FILE    path to the config file (default: ./deploy.yaml)
    DEPLOY_STATE_DIR      overrides state_dir
    DEPLOY_POOL           overrides provision.pool
    DEPLOY_GRANT_EVERYONE overrides provision.grant_everyone (1/0, true/false)
    DEPLOY_ENV            overrides env
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from indexer_deploy.core.build.linkage import DynamicLinkage, LinkageMode
from indexer_deploy.core.errors import ConfigError
from indexer_deploy.core.provision.builtins import builtin_families
from indexer_deploy.core.provision.models import ServiceFamily

_log = logging.getLogger("deploy.config")

DEFAULT_CONFIG_NAME = "deploy.yaml"

DEBIAN_RELEASES = ("buster", "bullseye", "bookworm", "trixie")


def debian_release(image_ref: str) -> Optional[str]:
    """Debian codename named by an image tag (`rust:1.83-bookworm` -> bookworm), if any."""
    tag = image_ref.rsplit(":", 1)[1] if ":" in image_ref.rsplit("/", 1)[-1] else ""
    for name in DEBIAN_RELEASES:
        if name in tag:
            return name
    return None


class ToolchainSettings(BaseModel):
    # builder and runner must share a Debian release: the dynamic binary
    # links against the base image's glibc and librocksdb
    base_image: str = "rust:1.83-bookworm"
    storage_dev_package: str = "librocksdb-dev"

    # build-only tooling (never copied into the runner stage)
    version_control: str = "git"
    compiler_toolchain: str = "cargo"
    native_crypto_lib: str = "libssl-dev"
    cmake_like: str = "cmake"
    linker: str = "clang"

    runtime_image: str = "debian:bookworm-slim"
    storage_runtime_package: str = "librocksdb7.8"
    workdir: str = "/usr/src/app"

    def extra_tools(self) -> Dict[str, str]:
        return {
            "version_control": self.version_control,
            "compiler_toolchain": self.compiler_toolchain,
            "native_crypto_lib": self.native_crypto_lib,
            "cmake_like": self.cmake_like,
            "linker": self.linker,
        }

    def release_mismatch(self) -> Optional[str]:
        built, runs = debian_release(self.base_image), debian_release(self.runtime_image)
        if built is None or runs is None:
            return f"base_image {self.base_image!r} and runtime_image {self.runtime_image!r} must both name a Debian release"
        if built != runs:
            return f"base_image {self.base_image!r} is {built} but runtime_image {self.runtime_image!r} is {runs}"
        return None

    @model_validator(mode="after")
    def _same_release(self) -> "ToolchainSettings":
        problem = self.release_mismatch()
        if problem:
            raise ValueError(problem)
        return self


class BuildSettings(BaseModel):
    source_root: str = "."
    dependency_manifest: str = "Cargo.lock"
    crate_manifest: str = "Cargo.toml"
    source_inputs: List[str] = Field(default_factory=lambda: ["src", "rust-bellcoin"])
    output_binary_name: str = "electrs"
    linkage: LinkageMode = Field(default_factory=DynamicLinkage)

    backend: str = "docker"
    image_name: str = "electrs"
    output_dir: str = "dist"
    toolchain: ToolchainSettings = Field(default_factory=ToolchainSettings)


class ProvisionSettings(BaseModel):
    pool: str = "tank"
    # Original behaviour: everyone@ gets full_set on every socket directory.
    grant_everyone: bool = True
    max_workers: int = 4
    dataset_properties: Dict[str, str] = Field(
        default_factory=lambda: {"aclmode": "passthrough", "aclinherit": "passthrough"}
    )
    families: List[ServiceFamily] = Field(default_factory=builtin_families)

    @model_validator(mode="after")
    def _unique_families(self) -> "ProvisionSettings":
        for attr, label in (("name", "name"), ("home_directory", "home_directory")):
            seen: Dict[str, str] = {}
            for fam in self.families:
                key = getattr(fam, attr)
                if key in seen:
                    raise ValueError(f"duplicate family {label} {key!r} ({seen[key]}, {fam.name})")
                seen[key] = fam.name

        datasets: Dict[str, str] = {}
        for fam in self.families:
            ds = fam.dataset_name(self.pool)
            if ds in datasets:
                raise ValueError(f"families {datasets[ds]} and {fam.name} share dataset {ds!r}")
            datasets[ds] = fam.name

        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        return self

    def family(self, name: str) -> Optional[ServiceFamily]:
        for fam in self.families:
            if fam.name == name:
                return fam
        return None

    def grants_everyone(self, family: ServiceFamily) -> bool:
        if family.grant_everyone is not None:
            return family.grant_everyone
        return self.grant_everyone


class DeployConfig(BaseModel):
    env: str = "dev"
    state_dir: str = ".deploy"
    build: BuildSettings = Field(default_factory=BuildSettings)
    provision: ProvisionSettings = Field(default_factory=ProvisionSettings)

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir)


def _truthy(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_text(raw_text: str, source: Path) -> Dict[str, Any]:
    # JSON first, YAML as the fallback
    try:
        data = json.loads(raw_text)
    except json.JSONDecodeError:
        try:
            data = yaml.safe_load(raw_text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Failed to parse config file {source} as JSON or YAML: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {source} must be a mapping, got {type(data).__name__}")
    return data


def _apply_env(data: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(data)
    prov = dict(out.get("provision") or {})

    v = os.getenv("DEPLOY_STATE_DIR", "").strip()
    if v:
        out["state_dir"] = v
    v = os.getenv("DEPLOY_ENV", "").strip()
    if v:
        out["env"] = v.lower()
    v = os.getenv("DEPLOY_POOL", "").strip()
    if v:
        prov["pool"] = v
    v = os.getenv("DEPLOY_GRANT_EVERYONE", "").strip()
    if v:
        prov["grant_everyone"] = _truthy(v)

    if prov:
        out["provision"] = prov
    return out


def resolve_config_path(path: Optional[Path] = None) -> Optional[Path]:
    """Determine the config file path from argument or env var or default."""
    if path is not None:
        return Path(path)
    env_path = os.getenv("DEPLOY_CONFIG_FILE", "").strip()
    if env_path:
        return Path(env_path)
    default = Path.cwd() / DEFAULT_CONFIG_NAME
    return default if default.exists() else None


def load_config(path: Optional[Path] = None) -> DeployConfig:
    """
    Load the deploy configuration.

    An explicitly requested file (argument or DEPLOY_CONFIG_FILE) must exist;
    without one, built-in defaults apply.
    """
    resolved = resolve_config_path(path)
    data: Dict[str, Any] = {}

    if resolved is not None:
        if not resolved.exists():
            raise ConfigError(f"Config file not found: {resolved}")
        try:
            raw_text = resolved.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Cannot read config file {resolved}: {exc}") from exc
        data = _parse_text(raw_text, resolved)
        _log.info("Loaded deploy config from %s", resolved)

    try:
        return DeployConfig.model_validate(_apply_env(data))
    except ValidationError as exc:
        raise ConfigError(f"Invalid deploy config: {exc}") from exc
