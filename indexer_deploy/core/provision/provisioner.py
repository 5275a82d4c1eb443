from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from indexer_deploy.core.config import ProvisionSettings
from indexer_deploy.core.errors import (
    AccessControlFailure,
    CommandFailed,
    OwnershipFailure,
    ProvisionError,
    VolumeConflict,
)
from indexer_deploy.core.locking import exclusive_lock, lock_path
from indexer_deploy.core.observability.metrics import record_family
from indexer_deploy.core.provision.acl import acl_matches, expected_acl
from indexer_deploy.core.provision.host import HostBackend, create_command, set_acl_commands
from indexer_deploy.core.provision.models import FamilyResult, ProvisionReport, ServiceFamily, SocketVolume
from indexer_deploy.core.provision.report import save_family_status, save_report, utc_now_iso

log = logging.getLogger("deploy.provision")

_HOST_ERRORS = (CommandFailed, OSError, LookupError, ValueError)


class SocketProvisioner:
    """Creates one ZFS-backed socket directory per service family.

    Per family: dataset -> ACL -> ownership. Every step checks the current
    state first and does nothing when it already matches, so re-running is
    safe. Families are independent; one failing never stops the others.
    """

    def __init__(self, host: HostBackend, settings: ProvisionSettings, state_dir: Path):
        self.host = host
        self.settings = settings
        self.state_dir = Path(state_dir)

    # ----------------------------------------
    # Steps
    # ----------------------------------------
    def create_volume(self, pool: str, family: ServiceFamily) -> SocketVolume:
        dataset = family.dataset_name(pool)
        mountpoint = family.socket_path
        wanted = dict(self.settings.dataset_properties)

        try:
            info = self.host.dataset_info(dataset)
            if info is not None:
                if info.mountpoint != mountpoint:
                    raise VolumeConflict(
                        f"dataset {dataset} is mounted at {info.mountpoint}, expected {mountpoint}",
                        stage="volume",
                        detail={"dataset": dataset, "mountpoint": info.mountpoint},
                    )
                drift = {k: info.properties.get(k) for k, v in wanted.items() if info.properties.get(k) != v}
                if drift:
                    raise VolumeConflict(
                        f"dataset {dataset} has conflicting properties {drift}",
                        stage="volume",
                        detail={"dataset": dataset, "properties": drift},
                    )
                return SocketVolume(family=family.name, dataset=dataset, mountpoint=mountpoint, created=False)

            owner = self.host.dataset_at_mountpoint(mountpoint)
            if owner is not None and owner != dataset:
                raise VolumeConflict(
                    f"{mountpoint} already belongs to dataset {owner}",
                    stage="volume",
                    detail={"dataset": owner, "mountpoint": mountpoint},
                )

            self.host.create_dataset(dataset, mountpoint, wanted)
        except _HOST_ERRORS as e:
            raise ProvisionError(f"cannot create {dataset}: {e}", stage="volume") from e

        return SocketVolume(family=family.name, dataset=dataset, mountpoint=mountpoint, created=True)

    def apply_access_control(self, volume: SocketVolume, family: ServiceFamily, default_grant: bool) -> bool:
        """Returns True when the ACL had to be rewritten."""
        entries = expected_acl(family, default_grant)
        try:
            if acl_matches(self.host.get_acl(volume.mountpoint), entries):
                return False
            log.info("Setting ACL on %s (%d entries)", volume.mountpoint, len(entries))
            self.host.set_acl(volume.mountpoint, entries)
        except _HOST_ERRORS as e:
            raise AccessControlFailure(
                f"cannot set ACL on {volume.mountpoint}: {e}",
                stage="acl",
                detail={"entries": [x.render() for x in entries]},
            ) from e
        return True

    def assign_ownership(self, volume: SocketVolume, owner_user: str, owner_group: str) -> bool:
        """Returns True when ownership had to change."""
        try:
            if self.host.get_owner(volume.mountpoint) == (owner_user, owner_group):
                return False
            self.host.chown(volume.mountpoint, owner_user, owner_group)
        except _HOST_ERRORS as e:
            raise OwnershipFailure(
                f"cannot chown {volume.mountpoint} to {owner_user}:{owner_group}: {e}",
                stage="ownership",
            ) from e
        return True

    # ----------------------------------------
    # Per family / all families
    # ----------------------------------------
    def _provision_locked(self, family: ServiceFamily, result: FamilyResult) -> None:
        try:
            volume = self.create_volume(self.settings.pool, family)
            if volume.created:
                result.actions.append(f"created {volume.dataset}")
            if self.apply_access_control(volume, family, self.settings.grants_everyone(family)):
                result.actions.append("acl")
            if self.assign_ownership(volume, family.owner_user, family.owner_group):
                result.actions.append(f"chown {family.owner_user}:{family.owner_group}")
        except ProvisionError as e:
            log.error("Family %s failed at %s: %s", family.name, e.stage, e.message)
            result.status = "failed"
            result.failed_stage = e.stage
            result.error_kind = e.kind
            result.error = e.message
        else:
            result.complete = True
            result.status = "provisioned" if result.actions else "unchanged"
            log.info("Family %s %s (%s)", family.name, result.status, family.socket_path)

    def provision_family(self, family: ServiceFamily) -> FamilyResult:
        result = FamilyResult(family=family.name, status="unchanged", complete=False, socket_path=family.socket_path)

        try:
            with exclusive_lock(lock_path(self.state_dir, f"family-{family.name}")):
                self._provision_locked(family, result)
                save_family_status(self.state_dir, result)
        except OSError as e:
            # lock or status file unusable; the family still gets a result
            log.error("Family %s: cannot record state in %s: %s", family.name, self.state_dir, e)
            result.status = "failed"
            result.complete = False
            result.failed_stage = "state"
            result.error_kind = "state_unavailable"
            result.error = f"cannot record state: {e}"

        record_family(family.name, result.status)
        return result

    def provision_all(self, families: Optional[Sequence[ServiceFamily]] = None) -> ProvisionReport:
        fams = list(families if families is not None else self.settings.families)
        started = utc_now_iso()

        results: List[FamilyResult] = []
        if fams:
            workers = min(self.settings.max_workers, len(fams))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="provision") as pool:
                # map() keeps declaration order
                results = list(pool.map(self.provision_family, fams))

        report = ProvisionReport(pool=self.settings.pool, started_ts=started, finished_ts=utc_now_iso(), results=results)
        try:
            save_report(self.state_dir, report)
        except OSError as e:
            log.error("Cannot write provisioning report to %s: %s", self.state_dir, e)
        return report

    def plan_family(self, family: ServiceFamily) -> Dict[str, Any]:
        """What provisioning `family` would run, computed without touching the host."""
        dataset = family.dataset_name(self.settings.pool)
        mountpoint = family.socket_path
        entries = expected_acl(family, self.settings.grants_everyone(family))
        return {
            "family": family.name,
            "dataset": dataset,
            "mountpoint": mountpoint,
            "owner": f"{family.owner_user}:{family.owner_group}",
            "acl": [e.render() for e in entries],
            "commands": [
                create_command(dataset, mountpoint, dict(self.settings.dataset_properties)),
                *set_acl_commands(mountpoint, entries),
                ["chown", f"{family.owner_user}:{family.owner_group}", mountpoint],
            ],
        }
