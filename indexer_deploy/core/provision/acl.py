"""NFSv4 ACL entries as understood by getfacl/setfacl on ZFS.

Text form: `<tag>[:<qualifier>]:<perms>:<flags>:<type>`, e.g.

    user:electrs:full_set:fd:allow
    everyone@:rwxpDdaARWcCos:fd-----:allow
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from indexer_deploy.core.provision.models import ServiceFamily

FULL_SET = "rwxpDdaARWcCos"
FLAG_ORDER = "fdinSFI"

PERM_ALIASES = {
    "full_set": FULL_SET,
    "modify_set": "rwxpDdaARWcs",
    "read_set": "raRc",
    "write_set": "wpAW",
}

SPECIAL_TAGS = ("owner@", "group@", "everyone@")
QUALIFIED_TAGS = ("user", "group")
ENTRY_TYPES = ("allow", "deny", "audit", "alarm")


def normalize_perms(raw: str) -> str:
    raw = raw.strip()
    if raw in PERM_ALIASES:
        return PERM_ALIASES[raw]
    letters = set(raw.replace("-", ""))
    unknown = letters - set(FULL_SET)
    if unknown:
        raise ValueError(f"unknown ACL permission(s) {''.join(sorted(unknown))!r} in {raw!r}")
    return "".join(c for c in FULL_SET if c in letters)


def normalize_flags(raw: str) -> str:
    letters = set(raw.strip().replace("-", ""))
    unknown = letters - set(FLAG_ORDER)
    if unknown:
        raise ValueError(f"unknown ACL flag(s) {''.join(sorted(unknown))!r} in {raw!r}")
    return "".join(c for c in FLAG_ORDER if c in letters)


@dataclass(frozen=True)
class AclEntry:
    tag: str
    qualifier: Optional[str]
    perms: str
    flags: str
    entry_type: str = "allow"

    @classmethod
    def make(cls, tag: str, qualifier: Optional[str], perms: str, flags: str = "", entry_type: str = "allow") -> "AclEntry":
        if tag in QUALIFIED_TAGS and not qualifier:
            raise ValueError(f"ACL tag {tag!r} needs a qualifier")
        if tag not in QUALIFIED_TAGS and tag not in SPECIAL_TAGS:
            raise ValueError(f"unknown ACL tag {tag!r}")
        if entry_type not in ENTRY_TYPES:
            raise ValueError(f"unknown ACL entry type {entry_type!r}")
        return cls(
            tag=tag,
            qualifier=qualifier if tag in QUALIFIED_TAGS else None,
            perms=normalize_perms(perms),
            flags=normalize_flags(flags),
            entry_type=entry_type,
        )

    @classmethod
    def parse(cls, text: str) -> "AclEntry":
        parts = [p.strip() for p in text.strip().split(":")]
        if parts and parts[0] in QUALIFIED_TAGS:
            if len(parts) < 5:
                raise ValueError(f"malformed ACL entry {text!r}")
            # getfacl -n style output may append the numeric id as a sixth field
            return cls.make(parts[0], parts[1], parts[2], parts[3], parts[4])
        if len(parts) < 4:
            raise ValueError(f"malformed ACL entry {text!r}")
        return cls.make(parts[0], None, parts[1], parts[2], parts[3])

    def render(self) -> str:
        perms = "full_set" if self.perms == FULL_SET else self.perms
        head = f"{self.tag}:{self.qualifier}" if self.qualifier else self.tag
        return f"{head}:{perms}:{self.flags}:{self.entry_type}"

    @property
    def managed(self) -> bool:
        """Entries this tool owns.

        The trivial owner@/group@/everyone@ entries that `setfacl -b`
        leaves behind carry no inheritance flags and are ignored.
        """
        return self.tag in QUALIFIED_TAGS or bool(self.flags)


def parse_acl(text: str) -> List[AclEntry]:
    """Parse `getfacl` output, skipping the `# file:` style header."""
    out: List[AclEntry] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        out.append(AclEntry.parse(line))
    return out


def grant(identity: str) -> AclEntry:
    return AclEntry.make("user", identity, "full_set", "fd", "allow")


def everyone_grant() -> AclEntry:
    return AclEntry.make("everyone@", None, "full_set", "fd", "allow")


def expected_acl(family: ServiceFamily, grant_everyone: bool) -> List[AclEntry]:
    entries = [grant(ident) for ident in family.grantees()]
    if grant_everyone:
        entries.append(everyone_grant())
    return entries


def acl_matches(current: Iterable[AclEntry], expected: Iterable[AclEntry]) -> bool:
    managed = [e for e in current if e.managed]
    wanted = list(expected)
    return len(managed) == len(wanted) and set(managed) == set(wanted)


def render_acl(entries: Iterable[AclEntry]) -> str:
    return ",".join(e.render() for e in entries)
