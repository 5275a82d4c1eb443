from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from indexer_deploy.core.errors import CommandFailed

log = logging.getLogger("deploy.commands")


@dataclass(frozen=True)
class CommandResult:
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs host commands with captured, decoded output.

    `run()` never raises on a non-zero exit; `check()` does.
    """

    def __init__(self, *, env: Optional[Dict[str, str]] = None, timeout: Optional[float] = None):
        self.env = env
        self.timeout = timeout

    def run(self, argv: Sequence[str], *, cwd: Optional[Path] = None) -> CommandResult:
        args = [str(a) for a in argv]
        log.debug("exec: %s (cwd=%s)", " ".join(args), cwd)
        try:
            p = subprocess.run(
                args,
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                env={**os.environ, **(self.env or {})},
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            # missing executable is reported like any other failed command
            return CommandResult(argv=args, returncode=127, stderr=str(e))
        except subprocess.TimeoutExpired as e:
            return CommandResult(argv=args, returncode=124, stderr=f"timed out after {e.timeout}s")

        return CommandResult(
            argv=args,
            returncode=p.returncode,
            stdout=(p.stdout or "").strip(),
            stderr=(p.stderr or "").strip(),
        )

    def check(self, argv: Sequence[str], *, cwd: Optional[Path] = None) -> CommandResult:
        r = self.run(argv, cwd=cwd)
        if not r.ok:
            raise CommandFailed(r.argv, r.returncode, r.stdout, r.stderr)
        return r
