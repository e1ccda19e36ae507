"""Metadata providers: where candidate versions and their dependencies come from.

The solver only talks to :class:`MetadataProvider`. Implementations here are
deterministic for a fixed input: an index snapshot file, local path
projects, a router between them, and a memoizing wrapper that can prefetch
metadata concurrently.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from packaging.markers import InvalidMarker, Marker

from common.logging_utils import Timer, extra_context, is_debug_enabled
from versioning.errors import MalformedConstraint, UnknownPackage
from versioning.models import (
    GitSource,
    IndexSource,
    PackageName,
    PackageVersion,
    PathSource,
    Requirement,
    Source,
    normalize_name,
)
from versioning.parser import parse_requirement

logger = logging.getLogger(__name__)

Dependencies = Tuple[Tuple[Requirement, ...], Dict[str, Tuple[Requirement, ...]]]


class Candidate:
    """One available version of a package.

    Dependencies may be supplied up front or through ``loader``; a loader runs
    at most once and its result is memoized on the candidate.
    """

    __slots__ = ("name", "version", "source", "_deps", "_loader", "_lock")

    def __init__(
        self,
        name: PackageName,
        version: PackageVersion,
        source: Source,
        requirements: Sequence[Requirement] = (),
        extra_requirements: Optional[Mapping[str, Sequence[Requirement]]] = None,
        loader: Optional[Callable[[], Dependencies]] = None,
    ):
        self.name = name
        self.version = version
        self.source = source
        self._lock = threading.Lock()
        self._loader = loader
        self._deps: Optional[Dependencies] = None
        if loader is None:
            self._deps = (
                tuple(requirements),
                {k: tuple(v) for k, v in (extra_requirements or {}).items()},
            )

    def load(self) -> Dependencies:
        with self._lock:
            if self._deps is None:
                assert self._loader is not None
                self._deps = self._loader()
                self._loader = None
            return self._deps

    @property
    def is_loaded(self) -> bool:
        return self._deps is not None

    @property
    def requirements(self) -> Tuple[Requirement, ...]:
        return self.load()[0]

    @property
    def extra_requirements(self) -> Dict[str, Tuple[Requirement, ...]]:
        return self.load()[1]

    def __repr__(self) -> str:
        return f"Candidate({self.name}=={self.version})"


class MetadataProvider(ABC):
    """Capability the solver uses to discover versions and dependencies."""

    def handles(self, source: Source) -> bool:  # pylint: disable=unused-argument
        """Return True when this provider can answer for ``source``."""
        return True

    @abstractmethod
    def fetch_candidates(self, name: PackageName, source: Source) -> Sequence[Candidate]:
        """Return every known version of ``name`` from ``source``.

        Raises:
            UnknownPackage: If the source has no such package.
        """

    def prefetch(self, queries: Sequence[Tuple[PackageName, Source]]) -> None:
        """Optionally warm metadata for upcoming queries. No-op by default."""


def _marker_applies(marker: Optional[str], environment: Optional[Mapping[str, str]]) -> bool:
    if not marker or environment is None:
        return True
    try:
        env = {"extra": ""}
        env.update(environment)
        return Marker(marker).evaluate(env)
    except InvalidMarker as exc:
        raise MalformedConstraint(marker, f"invalid marker: {exc}") from exc


def _requirement_list(
    items: Iterable[str],
    base_dir: Optional[str],
    environment: Optional[Mapping[str, str]],
) -> Tuple[Requirement, ...]:
    reqs = (parse_requirement(item, base_dir=base_dir) for item in items or ())
    return tuple(r for r in reqs if _marker_applies(r.marker, environment))


class IndexSnapshotProvider(MetadataProvider):
    """Serves packages from a frozen index snapshot.

    Snapshot layout::

        packages:                 # the "default" index
          requests:
            "2.31.0":
              requires: ["idna>=2.5,<4"]
              extras: {socks: ["PySocks>=1.5.6"]}
        indexes:                  # additional named indexes
          internal: {mylib: {"1.0": {}}}
        git:
          - {url: https://host/lib.git, rev: v1, name: lib, version: "1.0", requires: []}
        path:
          - {path: libs/util, name: util, version: "0.1", requires: []}
    """

    def __init__(self, snapshot: Mapping[str, Any], environment: Optional[Mapping[str, str]] = None):
        self._environment = dict(environment) if environment is not None else None
        self._indexes: Dict[str, Dict[PackageName, Mapping[str, Any]]] = {
            "default": self._index_table(snapshot.get("packages") or {}),
        }
        for index_name, table in (snapshot.get("indexes") or {}).items():
            self._indexes[str(index_name)] = self._index_table(table or {})
        self._git = list(snapshot.get("git") or [])
        self._path = list(snapshot.get("path") or [])

    @staticmethod
    def _index_table(table: Mapping[str, Any]) -> Dict[PackageName, Mapping[str, Any]]:
        if not isinstance(table, Mapping):
            raise ValueError("index table must map package names to versions")
        return {normalize_name(name): (versions or {}) for name, versions in table.items()}

    @classmethod
    def from_file(cls, path: str, environment: Optional[Mapping[str, str]] = None) -> "IndexSnapshotProvider":
        """Load a snapshot from YAML, JSON or TOML (by extension)."""
        return cls(load_snapshot(path), environment=environment)

    def _candidate(self, name: PackageName, version: str, entry: Mapping[str, Any], source: Source) -> Candidate:
        entry = entry or {}
        base_dir = source.path if isinstance(source, PathSource) else None

        def _load() -> Dependencies:
            requires = _requirement_list(entry.get("requires") or [], base_dir, self._environment)
            extras = {
                str(extra).lower(): _requirement_list(items or [], base_dir, self._environment)
                for extra, items in (entry.get("extras") or {}).items()
            }
            return requires, extras

        return Candidate(name, PackageVersion(str(version)), source, loader=_load)

    def fetch_candidates(self, name: PackageName, source: Source) -> Sequence[Candidate]:
        if isinstance(source, IndexSource):
            table = self._indexes.get(source.index)
            if table is None or name not in table:
                raise UnknownPackage(name, source)
            return [self._candidate(name, v, e, source) for v, e in table[name].items()]

        if isinstance(source, GitSource):
            entries = [
                e for e in self._git
                if e.get("url") == source.url and normalize_name(e.get("name", "")) == name
                and (source.rev is None or str(e.get("rev")) == source.rev)
            ]
        else:
            entries = [
                e for e in self._path
                if PathSource(str(e.get("path", ""))).path == source.path
                and normalize_name(e.get("name", "")) == name
            ]
        if not entries:
            raise UnknownPackage(name, source)
        return [self._candidate(name, e["version"], e, source) for e in entries]


def load_snapshot(path: str) -> Dict[str, Any]:
    """Read an index snapshot file.

    Raises:
        ValueError: If the file cannot be parsed or is not a mapping.
    """
    lower = path.lower()
    try:
        if lower.endswith((".yml", ".yaml")):
            import yaml  # pylint: disable=import-outside-toplevel

            with open(path, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        elif lower.endswith(".toml"):
            try:
                import tomllib as toml  # type: ignore
            except ImportError:  # Python < 3.11
                import tomli as toml  # type: ignore

            with open(path, "rb") as fh:
                data = toml.load(fh)
        else:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
    except (OSError, ValueError) as exc:
        raise ValueError(f"Cannot read index snapshot {path}: {exc}") from exc
    except Exception as exc:  # yaml.YAMLError does not derive from ValueError
        raise ValueError(f"Cannot parse index snapshot {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Index snapshot {path} must be a mapping")
    return data


class LocalPathProvider(MetadataProvider):
    """Serves PathSource packages by reading their ``pyproject.toml``."""

    def __init__(self, root: str, environment: Optional[Mapping[str, str]] = None):
        self._root = root
        self._environment = dict(environment) if environment is not None else None

    def handles(self, source: Source) -> bool:
        return isinstance(source, PathSource)

    def fetch_candidates(self, name: PackageName, source: Source) -> Sequence[Candidate]:
        from workspace.loader import read_project  # pylint: disable=import-outside-toplevel

        if not isinstance(source, PathSource):
            raise UnknownPackage(name, source)
        project_dir = os.path.join(self._root, source.path)
        project = read_project(project_dir, base_dir=source.path)
        if project is None or project.name != name:
            raise UnknownPackage(name, source)
        requires = tuple(r for r in project.dependencies if _marker_applies(r.marker, self._environment))
        extras = {
            group: tuple(r for r in reqs if _marker_applies(r.marker, self._environment))
            for group, reqs in project.optional_dependencies.items()
        }
        return [Candidate(name, project.version, source, requires, extras)]


class ChainProvider(MetadataProvider):
    """Routes each query to the first provider that handles its source."""

    def __init__(self, providers: Sequence[MetadataProvider]):
        self._providers = list(providers)

    def handles(self, source: Source) -> bool:
        return any(p.handles(source) for p in self._providers)

    def fetch_candidates(self, name: PackageName, source: Source) -> Sequence[Candidate]:
        for provider in self._providers:
            if provider.handles(source):
                return provider.fetch_candidates(name, source)
        raise UnknownPackage(name, source)


class CachingProvider(MetadataProvider):
    """Memoizes another provider and optionally prefetches concurrently.

    Results (and failures) are cached per ``(package, source)``; dependency
    metadata is memoized per candidate. Prefetch only warms these caches, so
    fetch completion order never influences what the solver sees.
    """

    def __init__(self, inner: MetadataProvider, workers: int = 0, warm_depth: int = 2):
        self._inner = inner
        self._workers = max(0, int(workers))
        self._warm_depth = warm_depth
        self._cache: Dict[Tuple[PackageName, str], Tuple[Optional[List[Candidate]], Optional[BaseException]]] = {}
        self._lock = threading.Lock()
        self._pool: Optional[ThreadPoolExecutor] = None

    def handles(self, source: Source) -> bool:
        return self._inner.handles(source)

    def _fetch(self, name: PackageName, source: Source) -> List[Candidate]:
        key = (name, source.key())
        with self._lock:
            hit = self._cache.get(key)
        if hit is None:
            with Timer() as timer:
                try:
                    result: Tuple[Optional[List[Candidate]], Optional[BaseException]] = (
                        list(self._inner.fetch_candidates(name, source)), None
                    )
                except Exception as exc:  # pylint: disable=broad-exception-caught
                    result = (None, exc)
            if is_debug_enabled(logger):
                logger.debug(
                    "Fetched candidates",
                    extra=extra_context(
                        event="metadata_fetch",
                        component="provider",
                        action="fetch_candidates",
                        outcome="error" if result[1] else "success",
                        package=str(name),
                        duration_ms=timer.duration_ms(),
                    ),
                )
            with self._lock:
                hit = self._cache.setdefault(key, result)
        candidates, error = hit
        if error is not None:
            raise error
        assert candidates is not None
        return candidates

    def fetch_candidates(self, name: PackageName, source: Source) -> Sequence[Candidate]:
        return self._fetch(name, source)

    def _warm(self, name: PackageName, source: Source) -> None:
        try:
            candidates = self._fetch(name, source)
        except Exception:  # pylint: disable=broad-exception-caught
            # cached; the solver re-raises it when it asks for this package
            return
        for candidate in sorted(candidates, key=lambda c: c.version, reverse=True)[: self._warm_depth]:
            try:
                candidate.load()
            except Exception:  # pylint: disable=broad-exception-caught
                # dependency metadata is re-loaded (and fails) on the solver thread
                continue

    def prefetch(self, queries: Sequence[Tuple[PackageName, Source]]) -> None:
        if not self._workers or not queries:
            return
        with self._lock:
            pending = [(n, s) for n, s in queries if (n, s.key()) not in self._cache]
        if not pending:
            return
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="depsolve-prefetch")
        futures = [self._pool.submit(self._warm, name, source) for name, source in pending]
        for future in futures:
            future.result()

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
