from __future__ import annotations

from typing import Annotated, List, Literal, Union

from pydantic import BaseModel, Field


class DynamicLinkage(BaseModel):
    """Standard release build linked against the environment's shared libraries."""

    kind: Literal["dynamic"] = "dynamic"

    def cargo_args(self) -> List[str]:
        return ["build", "--release", "--locked"]

    def extra_packages(self) -> List[str]:
        return []

    def target_registration(self) -> List[List[str]]:
        return []

    def output_path(self, binary_name: str) -> str:
        return f"target/release/{binary_name}"


class StaticMuslLinkage(BaseModel):
    """Static build against the musl C runtime.

    Only the C runtime is replaced: the storage library (librocksdb) is still
    loaded dynamically, so the runner stage keeps its runtime package in
    both modes.
    """

    kind: Literal["static_musl"] = "static_musl"
    target_triple: str = "x86_64-unknown-linux-musl"

    def cargo_args(self) -> List[str]:
        return ["build", "--release", "--locked", "--target", self.target_triple]

    def extra_packages(self) -> List[str]:
        return ["musl-tools"]

    def target_registration(self) -> List[List[str]]:
        return [["rustup", "target", "add", self.target_triple]]

    def output_path(self, binary_name: str) -> str:
        return f"target/{self.target_triple}/release/{binary_name}"


LinkageMode = Annotated[Union[DynamicLinkage, StaticMuslLinkage], Field(discriminator="kind")]

LINKAGE_KINDS = ("dynamic", "static_musl")


def linkage_from_kind(kind: str) -> Union[DynamicLinkage, StaticMuslLinkage]:
    k = (kind or "").strip().lower().replace("-", "_")
    if k in ("dynamic", "dyn"):
        return DynamicLinkage()
    if k in ("static_musl", "musl", "static"):
        return StaticMuslLinkage()
    raise ValueError(f"Unsupported linkage mode: {kind!r} (expected one of {', '.join(LINKAGE_KINDS)})")
