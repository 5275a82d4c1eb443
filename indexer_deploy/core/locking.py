from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

try:
    import fcntl as _fcntl
    _HAS_FCNTL = True
except ImportError:
    _HAS_FCNTL = False
    logging.getLogger("deploy.locking").warning(
        "fcntl not available (non-POSIX). File locking is disabled. "
        "Do not provision the same family concurrently on this platform."
    )

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


def lock_path(state_dir: Path, name: str) -> Path:
    d = state_dir / "locks"
    d.mkdir(parents=True, exist_ok=True)
    return d / f"{_SAFE_NAME.sub('_', name)}.lock"


@contextmanager
def exclusive_lock(path: Path) -> Generator[Path, None, None]:
    """Hold an exclusive flock on `path` for the duration of the block (POSIX only).

    Each call opens its own file description, so two threads of one process
    contend exactly like two processes do.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a+", encoding="utf-8") as fh:
        if _HAS_FCNTL:
            _fcntl.flock(fh, _fcntl.LOCK_EX)
        try:
            yield path
        finally:
            if _HAS_FCNTL:
                _fcntl.flock(fh, _fcntl.LOCK_UN)
