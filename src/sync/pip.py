"""Installer that drives ``pip`` in the current interpreter."""
from __future__ import annotations

import logging
import subprocess
import sys
from importlib import metadata
from typing import Dict, List, Sequence

from lockfile import LockEntry
from versioning.errors import ResolutionError
from versioning.models import GitSource, PackageName, PackageVersion, PathSource, normalize_name

from . import Installer

logger = logging.getLogger(__name__)


class InstallError(ResolutionError):
    """The installer command failed."""


def pip_argument(entry: LockEntry) -> str:
    source = entry.source
    if isinstance(source, GitSource):
        return f"{entry.name} @ git+{source.url}" + (f"@{source.rev}" if source.rev else "")
    if isinstance(source, PathSource):
        return source.path
    return f"{entry.name}=={entry.version}"


class PipInstaller(Installer):
    """Installs pins with ``python -m pip install --no-deps``.

    Dependencies are never resolved by pip; the lock already lists them.
    """

    def __init__(self, prune: bool = False, python: str = sys.executable):
        self.prune = prune
        self.python = python

    def installed(self) -> Dict[PackageName, PackageVersion]:
        found: Dict[PackageName, PackageVersion] = {}
        for dist in metadata.distributions():
            name = dist.metadata.get("Name")
            if not name:
                continue
            try:
                found[normalize_name(name)] = PackageVersion(dist.version)
            except ValueError:
                logger.debug("Skipping %s with unparsable version %r", name, dist.version)
        return found

    def _run(self, args: List[str]) -> None:
        cmd = [self.python, "-m", "pip"] + args
        logger.debug("Running %s", " ".join(cmd))
        try:
            subprocess.run(cmd, check=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            raise InstallError(f"pip failed: {exc}") from exc

    def materialize(self, entries: Sequence[LockEntry]) -> None:
        self._run(["install", "--no-deps"] + [pip_argument(entry) for entry in entries])

    def remove(self, names: Sequence[PackageName]) -> None:
        if not self.prune:
            logger.info("Not locked (left installed): %s", ", ".join(str(n) for n in names))
            return
        self._run(["uninstall", "-y"] + [str(n) for n in names])
