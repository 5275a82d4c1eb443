from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
# user/group names end up inside comma- and colon-separated ACL specs
_IDENTITY_RE = re.compile(r"^[A-Za-z0-9_.][A-Za-z0-9_.-]*\$?$")


class ServiceFamily(BaseModel):
    """One logical deployment that needs its own socket directory."""

    model_config = ConfigDict(frozen=True)

    name: str
    home_directory: str
    owner_user: str
    owner_group: str
    consumer_identities: List[str] = Field(default_factory=list)

    # Dataset path below the pool; defaults to "<name>/socket".
    dataset: Optional[str] = None
    # None = follow the global provision.grant_everyone option.
    grant_everyone: Optional[bool] = None
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        v = (v or "").strip()
        if not _NAME_RE.match(v):
            raise ValueError(f"invalid family name {v!r} (lowercase letters, digits, '-' and '_')")
        return v

    @field_validator("home_directory")
    @classmethod
    def _check_home(cls, v: str) -> str:
        v = (v or "").strip()
        if not v.startswith("/"):
            raise ValueError(f"home_directory must be absolute: {v!r}")
        norm = posixpath.normpath(v)
        if norm == "/":
            raise ValueError("home_directory cannot be the filesystem root")
        return norm

    @field_validator("owner_user", "owner_group")
    @classmethod
    def _check_owner(cls, v: str) -> str:
        v = (v or "").strip()
        if not _IDENTITY_RE.match(v):
            raise ValueError(f"invalid identity name {v!r}")
        return v

    @field_validator("consumer_identities")
    @classmethod
    def _check_consumers(cls, v: List[str]) -> List[str]:
        out: List[str] = []
        for ident in v:
            ident = (ident or "").strip()
            if not _IDENTITY_RE.match(ident):
                raise ValueError(f"invalid consumer identity {ident!r}")
            out.append(ident)
        return out

    @field_validator("dataset")
    @classmethod
    def _check_dataset(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().strip("/")
        if not v or any(not part for part in v.split("/")):
            raise ValueError(f"invalid dataset path {v!r}")
        return v

    @property
    def socket_path(self) -> str:
        return posixpath.join(self.home_directory, "socket")

    def dataset_name(self, pool: str) -> str:
        return f"{pool.strip('/')}/{self.dataset or self.name + '/socket'}"

    def grantees(self) -> List[str]:
        """Owner first, then consumers in declared order, without duplicates."""
        seen: List[str] = []
        for ident in [self.owner_user, *self.consumer_identities]:
            if ident not in seen:
                seen.append(ident)
        return seen


@dataclass(frozen=True)
class SocketVolume:
    family: str
    dataset: str
    mountpoint: str
    created: bool = False


@dataclass(frozen=True)
class VolumeInfo:
    """What the storage pool reports about one dataset."""

    name: str
    mountpoint: str
    properties: Dict[str, str] = field(default_factory=dict)


FamilyStatus = Literal["provisioned", "unchanged", "failed"]


@dataclass
class FamilyResult:
    family: str
    status: FamilyStatus
    complete: bool
    socket_path: str
    failed_stage: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    actions: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "family": self.family,
            "status": self.status,
            "complete": self.complete,
            "socket_path": self.socket_path,
            "failed_stage": self.failed_stage,
            "error_kind": self.error_kind,
            "error": self.error,
            "actions": list(self.actions),
        }


@dataclass
class ProvisionReport:
    pool: str
    started_ts: str
    finished_ts: str
    results: List[FamilyResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    def failed(self) -> List[FamilyResult]:
        return [r for r in self.results if not r.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "provision_report",
            "pool": self.pool,
            "started_ts": self.started_ts,
            "finished_ts": self.finished_ts,
            "ok": self.ok,
            "results": [r.to_dict() for r in self.results],
        }
