"""Bridge from a lock artifact to whatever installs packages."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence, Tuple

from common.logging_utils import extra_context, format_names, is_debug_enabled
from lockfile import LockArtifact, LockEntry, is_stale
from versioning.errors import StaleLockError
from versioning.models import PackageName, PackageVersion, normalize_name

logger = logging.getLogger(__name__)


class Installer(ABC):
    """External collaborator that materializes locked packages."""

    @abstractmethod
    def installed(self) -> Mapping[PackageName, PackageVersion]:
        """Currently installed packages."""

    @abstractmethod
    def materialize(self, entries: Sequence[LockEntry]) -> None:
        """Install exactly the given pins."""

    def remove(self, names: Sequence[PackageName]) -> None:  # pylint: disable=unused-argument
        """Uninstall packages that are no longer locked. Optional."""


@dataclass(frozen=True)
class SyncPlan:
    install: Tuple[LockEntry, ...] = ()
    upgrade: Tuple[LockEntry, ...] = ()
    remove: Tuple[PackageName, ...] = ()
    unchanged: Tuple[LockEntry, ...] = ()

    @property
    def is_noop(self) -> bool:
        return not (self.install or self.upgrade or self.remove)

    def summary(self) -> str:
        return (
            f"{len(self.install)} to install, {len(self.upgrade)} to change, "
            f"{len(self.remove)} to remove, {len(self.unchanged)} unchanged"
        )


def plan_sync(lock: LockArtifact, installed: Mapping) -> SyncPlan:
    """Diff ``installed`` (name -> version) against the lock."""
    current: Dict[PackageName, PackageVersion] = {
        normalize_name(name): PackageVersion.parse(version) for name, version in installed.items()
    }
    install: List[LockEntry] = []
    upgrade: List[LockEntry] = []
    unchanged: List[LockEntry] = []
    for entry in lock:
        have = current.get(entry.name)
        if have is None:
            install.append(entry)
        elif have != entry.version:
            upgrade.append(entry)
        else:
            unchanged.append(entry)
    locked = set(lock.names())
    remove = tuple(sorted(name for name in current if name not in locked))
    return SyncPlan(tuple(install), tuple(upgrade), remove, tuple(unchanged))


def sync(lock: LockArtifact, current_hash: str, installer: Installer) -> SyncPlan:
    """Bring ``installer`` in line with ``lock``.

    Raises:
        StaleLockError: If the lock was produced from other requirements.
    """
    if is_stale(lock, current_hash):
        raise StaleLockError(lock.requirements_hash, current_hash)
    plan = plan_sync(lock, installer.installed())
    needed = plan.install + plan.upgrade
    if needed:
        installer.materialize(needed)
    if plan.remove:
        installer.remove(plan.remove)
    if is_debug_enabled(logger):
        logger.debug(
            "Sync finished",
            extra=extra_context(
                event="function_exit",
                component="sync",
                action="sync",
                outcome="noop" if plan.is_noop else "changed",
                count=len(needed),
            ),
        )
    if needed:
        logger.info("Materialized: %s", format_names(f"{e.name}=={e.version}" for e in needed))
    return plan


@dataclass
class DryRunInstaller(Installer):
    """Records what would happen without touching any environment."""

    present: Dict[PackageName, PackageVersion] = field(default_factory=dict)
    materialized: List[LockEntry] = field(default_factory=list)
    removed: List[PackageName] = field(default_factory=list)

    def installed(self) -> Mapping[PackageName, PackageVersion]:
        return dict(self.present)

    def materialize(self, entries: Sequence[LockEntry]) -> None:
        self.materialized.extend(entries)

    def remove(self, names: Sequence[PackageName]) -> None:
        self.removed.extend(names)
