from typing import Any, Dict, Optional, Type

from indexer_deploy.core.commands import CommandRunner

from .base import BuildBackend, StageContext
from .docker import DockerBackend
from .local import LocalBackend

BACKENDS: Dict[str, Type[BuildBackend]] = {
    "docker": DockerBackend,
    "local": LocalBackend,
}


def get_backend(name: str, runner: Optional[CommandRunner] = None, **options: Any) -> BuildBackend:
    cls = BACKENDS.get(name)
    if cls is None:
        raise ValueError(f"Unsupported build backend: {name}")
    return cls(runner=runner, **options)


__all__ = ["BACKENDS", "BuildBackend", "DockerBackend", "LocalBackend", "StageContext", "get_backend"]
