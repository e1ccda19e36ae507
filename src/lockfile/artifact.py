"""Lock artifact model and its canonical JSON form."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Sequence, Tuple

from common.logging_utils import extra_context, is_debug_enabled
from constants import Constants
from versioning.errors import LockfileError
from versioning.models import (
    DependencyGroup,
    PackageName,
    PackageVersion,
    Resolution,
    Source,
    normalize_name,
    source_from_dict,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockEntry:
    """One pinned package."""

    name: PackageName
    version: PackageVersion
    source: Source
    resolved_dependencies: Tuple[PackageName, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": str(self.name),
            "version": str(self.version),
            "source": self.source.to_dict(),
            "resolved_dependencies": [str(dep) for dep in self.resolved_dependencies],
        }


@dataclass(frozen=True)
class LockArtifact:
    """Everything needed to reproduce an install: pins plus the input hash."""

    requirements_hash: str
    groups: Tuple[DependencyGroup, ...]
    entries: Tuple[LockEntry, ...]

    def __iter__(self) -> Iterator[LockEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, name) -> Optional[LockEntry]:
        wanted = normalize_name(name)
        return next((entry for entry in self.entries if entry.name == wanted), None)

    def names(self) -> Tuple[PackageName, ...]:
        return tuple(entry.name for entry in self.entries)


def synthesize(
    resolution: Resolution,
    requirements_hash: str,
    groups: Sequence[DependencyGroup],
) -> LockArtifact:
    """Build a LockArtifact from a successful resolution.

    The resolution is only read; entries come out sorted by normalized name.
    """
    if not requirements_hash:
        raise ValueError("requirements_hash must not be empty")
    entries = tuple(
        LockEntry(
            name=node.name,
            version=node.chosen_version,
            source=node.chosen_source,
            resolved_dependencies=tuple(sorted(node.dependencies)),
        )
        for node in sorted(resolution.values(), key=lambda n: n.name)
    )
    return LockArtifact(
        requirements_hash=requirements_hash,
        groups=tuple(sorted(set(groups))),
        entries=entries,
    )


def to_document(lock: LockArtifact) -> Dict[str, Any]:
    return {
        "version": Constants.LOCK_FORMAT_VERSION,
        "requirements_hash": lock.requirements_hash,
        "groups": [str(group) for group in lock.groups],
        "package": [entry.to_dict() for entry in lock.entries],
    }


def dumps(lock: LockArtifact) -> str:
    """Serialize ``lock``; equal artifacts always produce identical text."""
    return json.dumps(to_document(lock), sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def _entry_from_dict(raw: Any, index: int) -> LockEntry:
    if not isinstance(raw, dict):
        raise ValueError(f"package[{index}] must be an object")
    try:
        name = normalize_name(raw["name"])
        version = PackageVersion(str(raw["version"]))
        source = source_from_dict(raw.get("source") or {"index": Constants.DEFAULT_INDEX})
    except KeyError as exc:
        raise ValueError(f"package[{index}] is missing {exc}") from exc
    deps = raw.get("resolved_dependencies") or []
    if not isinstance(deps, list):
        raise ValueError(f"package[{index}].resolved_dependencies must be a list")
    return LockEntry(
        name=name,
        version=version,
        source=source,
        resolved_dependencies=tuple(sorted(normalize_name(d) for d in deps)),
    )


def from_document(data: Any, path: Optional[str] = None) -> LockArtifact:
    """Validate a decoded lock document.

    Raises:
        LockfileError: If the document is malformed or of another format version.
    """
    if not isinstance(data, dict):
        raise LockfileError(path, "top level must be an object")
    if data.get("version") != Constants.LOCK_FORMAT_VERSION:
        raise LockfileError(path, f"unsupported lock format version {data.get('version')!r}")
    requirements_hash = data.get("requirements_hash")
    if not isinstance(requirements_hash, str) or not requirements_hash:
        raise LockfileError(path, "missing requirements_hash")
    packages = data.get("package", [])
    if not isinstance(packages, list):
        raise LockfileError(path, "'package' must be a list")
    try:
        groups = tuple(sorted({DependencyGroup.parse(str(g)) for g in data.get("groups") or ["default"]}))
        entries = tuple(sorted((_entry_from_dict(raw, i) for i, raw in enumerate(packages)), key=lambda e: e.name))
    except ValueError as exc:
        # InvalidVersion derives from ValueError
        raise LockfileError(path, str(exc)) from exc
    names = [entry.name for entry in entries]
    if len(names) != len(set(names)):
        raise LockfileError(path, "a package is locked more than once")
    return LockArtifact(requirements_hash=requirements_hash, groups=groups, entries=entries)


def loads(text: str, path: Optional[str] = None) -> LockArtifact:
    """Parse lock text produced by :func:`dumps`."""
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise LockfileError(path, f"not valid JSON: {exc}") from exc
    return from_document(data, path)


def load(path: str) -> LockArtifact:
    """Read and validate a lock file."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            text = fh.read()
    except OSError as exc:
        raise LockfileError(path, str(exc)) from exc
    return loads(text, path)


def write_text_atomic(text: str, path: str) -> None:
    """Write ``text`` to ``path`` through a temp file in the same directory.

    Raises:
        LockfileError: If the file cannot be written; ``path`` is left untouched.
    """
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(prefix=".depsolve-", suffix=".tmp", dir=directory)
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(text)
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as exc:
        raise LockfileError(path, f"cannot write: {exc}") from exc
    finally:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)


def write_lock(lock: LockArtifact, path: str) -> None:
    """Atomically write ``lock`` to ``path``."""
    write_text_atomic(dumps(lock), path)
    if is_debug_enabled(logger):
        logger.debug(
            "Wrote lock file",
            extra=extra_context(
                event="file_write",
                component="lockfile",
                action="write_lock",
                outcome="success",
                target=path,
                count=len(lock),
            ),
        )
