from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class DeployError(Exception):
    """Root of the deploy error taxonomy.

    `kind` is the stable name surfaced in reports and API payloads.
    `exit_code` is what the CLI terminates with when this error escapes.
    """

    kind = "deploy_error"
    exit_code = 1

    def __init__(self, message: str, *, stage: Optional[str] = None, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "stage": self.stage,
            "message": self.message,
            "detail": self.detail,
        }


class ConfigError(DeployError):
    kind = "config_error"
    exit_code = 2


class CommandFailed(RuntimeError):
    """A host command exited non-zero (or could not be spawned)."""

    def __init__(self, argv: Sequence[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.argv: List[str] = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"{' '.join(self.argv)} failed (rc={returncode}): {stderr.strip() or stdout.strip()}")


# ---------------------------------------------------------------------
# Build pipeline (always aborts the whole pipeline)
# ---------------------------------------------------------------------

class BuildError(DeployError):
    kind = "build_error"


class EnvironmentSetupFailure(BuildError):
    kind = "environment_setup_failure"
    exit_code = 10


class ManifestInconsistency(BuildError):
    kind = "manifest_inconsistency"
    exit_code = 11


class CompilationFailure(BuildError):
    kind = "compilation_failure"
    exit_code = 12


# ---------------------------------------------------------------------
# Socket provisioning (isolated per service family)
# ---------------------------------------------------------------------

class ProvisionError(DeployError):
    kind = "provision_error"
    exit_code = 20


class VolumeConflict(ProvisionError):
    kind = "volume_conflict"


class AccessControlFailure(ProvisionError):
    kind = "access_control_failure"


class OwnershipFailure(ProvisionError):
    kind = "ownership_failure"
