"""Checks and views over an existing lock artifact."""
from __future__ import annotations

from typing import Dict, List

from versioning.models import GitSource, PackageName, PackageVersion, PathSource
from workspace.graph import RequirementGraph

from .artifact import LockArtifact


def is_stale(lock: LockArtifact, current_requirements_hash: str) -> bool:
    """True when the lock was produced from different requirements."""
    return lock.requirements_hash != current_requirements_hash


def verify_lock(lock: LockArtifact, graph: RequirementGraph) -> List[str]:
    """Return human-readable problems that make ``lock`` unusable for ``graph``.

    An empty list means every root requirement is pinned to a version that
    still satisfies it, from the same source, and every locked dependency
    edge points at a locked package.
    """
    problems: List[str] = []
    for merged in graph:
        entry = lock.get(merged.name)
        who = ", ".join(merged.members())
        if entry is None:
            problems.append(f"{merged.name} is required by {who} but not locked")
            continue
        if not merged.constraint.contains(entry.version):
            problems.append(
                f"{merged.name}=={entry.version} does not satisfy '{merged.constraint.canonical()}' "
                f"(required by {who})"
            )
        if entry.source.key() != merged.source.key():
            problems.append(f"{merged.name} is locked from {entry.source} but requested from {merged.source}")

    locked = set(lock.names())
    for entry in lock:
        for dep in entry.resolved_dependencies:
            if dep not in locked:
                problems.append(f"{entry.name} depends on {dep}, which is not locked")
    return problems


def export_requirements(lock: LockArtifact) -> str:
    """Render ``lock`` as a pip-compatible ``requirements.lock``."""
    lines = [
        "# generated by depsolve",
        f"# requirements_hash: {lock.requirements_hash}",
        "# groups: " + ", ".join(str(g) for g in lock.groups),
    ]
    for entry in lock:
        source = entry.source
        if isinstance(source, GitSource):
            ref = f"@{source.rev}" if source.rev else ""
            lines.append(f"{entry.name} @ git+{source.url}{ref}")
        elif isinstance(source, PathSource):
            lines.append(f"-e file:{source.path}")
        else:
            lines.append(f"{entry.name}=={entry.version}")
    return "\n".join(lines) + "\n"


def preferred_versions(lock: LockArtifact) -> Dict[PackageName, PackageVersion]:
    """Locked versions keyed by name, used to keep re-locks stable."""
    return {entry.name: entry.version for entry in lock}
