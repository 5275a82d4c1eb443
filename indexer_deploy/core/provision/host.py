from __future__ import annotations

import grp
import logging
import os
import pwd
import shutil
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from indexer_deploy.core.commands import CommandRunner
from indexer_deploy.core.errors import CommandFailed
from indexer_deploy.core.provision.acl import AclEntry, parse_acl, render_acl
from indexer_deploy.core.provision.models import VolumeInfo

log = logging.getLogger("deploy.provision.host")


class HostBackend(ABC):
    """Storage pool and filesystem operations the provisioner needs.

    Methods raise CommandFailed, OSError or LookupError; the provisioner
    maps them onto the provisioning error taxonomy.
    """

    name: str

    @abstractmethod
    def dataset_info(self, dataset: str) -> Optional[VolumeInfo]:
        """None when the dataset does not exist."""

    @abstractmethod
    def dataset_at_mountpoint(self, mountpoint: str) -> Optional[str]:
        ...

    @abstractmethod
    def create_dataset(self, dataset: str, mountpoint: str, properties: Dict[str, str]) -> None:
        ...

    @abstractmethod
    def get_acl(self, path: str) -> List[AclEntry]:
        ...

    @abstractmethod
    def set_acl(self, path: str, entries: List[AclEntry]) -> None:
        """Replace every non-trivial entry on `path` with `entries`."""

    @abstractmethod
    def get_owner(self, path: str) -> Tuple[str, str]:
        ...

    @abstractmethod
    def chown(self, path: str, user: str, group: str) -> None:
        ...


def create_command(dataset: str, mountpoint: str, properties: Dict[str, str]) -> List[str]:
    argv = ["zfs", "create", "-p", "-o", f"mountpoint={mountpoint}"]
    for k, v in properties.items():
        argv += ["-o", f"{k}={v}"]
    argv.append(dataset)
    return argv


def set_acl_commands(path: str, entries: List[AclEntry]) -> List[List[str]]:
    return [["setfacl", "-b", path], ["setfacl", "-m", render_acl(entries), path]]


class ZfsHost(HostBackend):
    """ZFS datasets with NFSv4 ACLs (aclmode/aclinherit=passthrough)."""

    name = "zfs"

    def __init__(self, runner: Optional[CommandRunner] = None, *, zfs_properties: Tuple[str, ...] = ("aclmode", "aclinherit")):
        self.runner = runner or CommandRunner()
        self.zfs_properties = zfs_properties

    def dataset_info(self, dataset: str) -> Optional[VolumeInfo]:
        props = ",".join(("mountpoint", *self.zfs_properties))
        r = self.runner.run(["zfs", "get", "-H", "-p", "-o", "property,value", props, dataset])
        if not r.ok:
            if "does not exist" in r.stderr:
                return None
            raise CommandFailed(r.argv, r.returncode, r.stdout, r.stderr)

        values: Dict[str, str] = {}
        for line in r.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) >= 2:
                values[parts[0].strip()] = parts[1].strip()
        mountpoint = values.pop("mountpoint", "")
        return VolumeInfo(name=dataset, mountpoint=mountpoint, properties=values)

    def dataset_at_mountpoint(self, mountpoint: str) -> Optional[str]:
        r = self.runner.check(["zfs", "list", "-H", "-o", "name,mountpoint", "-t", "filesystem"])
        for line in r.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) >= 2 and parts[1].strip() == mountpoint:
                return parts[0].strip()
        return None

    def create_dataset(self, dataset: str, mountpoint: str, properties: Dict[str, str]) -> None:
        log.info("Creating dataset %s at %s", dataset, mountpoint)
        self.runner.check(create_command(dataset, mountpoint, properties))

    def get_acl(self, path: str) -> List[AclEntry]:
        r = self.runner.check(["getfacl", path])
        return parse_acl(r.stdout)

    def set_acl(self, path: str, entries: List[AclEntry]) -> None:
        for argv in set_acl_commands(path, entries):
            self.runner.check(argv)

    def get_owner(self, path: str) -> Tuple[str, str]:
        st = os.stat(path)
        try:
            user = pwd.getpwuid(st.st_uid).pw_name
        except KeyError:
            user = str(st.st_uid)
        try:
            group = grp.getgrgid(st.st_gid).gr_name
        except KeyError:
            group = str(st.st_gid)
        return user, group

    def chown(self, path: str, user: str, group: str) -> None:
        log.info("chown %s:%s %s", user, group, path)
        shutil.chown(path, user=user, group=group)
