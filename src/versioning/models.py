"""Data models for requirements, sources and resolution results."""

from __future__ import annotations

import functools
import posixpath
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, ClassVar, Dict, FrozenSet, Iterator, Optional, Tuple, Union

from packaging.utils import canonicalize_name
from packaging.version import Version

from constants import Constants

if TYPE_CHECKING:
    from .constraint import VersionConstraint

_NAME_RE = re.compile(r"^([A-Z0-9]|[A-Z0-9][A-Z0-9._-]*[A-Z0-9])$", re.IGNORECASE)


@dataclass(frozen=True, order=True)
class PackageName:
    """PEP 503 normalized package name; the written spelling is kept for display."""

    normalized: str
    display: str = field(default="", compare=False)

    @classmethod
    def parse(cls, raw: str) -> "PackageName":
        """Validate and normalize a package name.

        Raises:
            ValueError: If ``raw`` is not a valid distribution name.
        """
        text = (raw or "").strip()
        if not _NAME_RE.match(text):
            raise ValueError(f"Invalid package name: {raw!r}")
        return cls(normalized=canonicalize_name(text), display=text)

    def __str__(self) -> str:
        return self.normalized


def normalize_name(raw: Union[str, PackageName]) -> PackageName:
    """Return the PackageName for ``raw`` (idempotent)."""
    if isinstance(raw, PackageName):
        return raw
    return PackageName.parse(raw)


@functools.total_ordering
class PackageVersion:
    """A PEP 440 version.

    Local labels (``1.0+cpu``) are ignored when comparing against constraints
    and only break ties between otherwise equal public versions, which keeps
    the ordering total.
    """

    __slots__ = ("text", "_version", "_public")

    def __init__(self, text: str):
        self._version = Version(text)
        self.text = text.strip()
        self._public = Version(self._version.public)

    @classmethod
    def parse(cls, value: Union[str, "PackageVersion"]) -> "PackageVersion":
        if isinstance(value, PackageVersion):
            return value
        return cls(str(value))

    @property
    def version(self) -> Version:
        return self._version

    @property
    def public(self) -> Version:
        return self._public

    @property
    def local(self) -> Optional[str]:
        return self._version.local

    @property
    def is_prerelease(self) -> bool:
        return self._version.is_prerelease

    def _key(self) -> Tuple[Version, str]:
        return (self._public, self._version.local or "")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageVersion):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other: "PackageVersion") -> bool:
        if not isinstance(other, PackageVersion):
            return NotImplemented
        return self._key() < other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __str__(self) -> str:
        return str(self._version)

    def __repr__(self) -> str:
        return f"PackageVersion('{self}')"


@dataclass(frozen=True)
class IndexSource:
    """A package served by a named package index."""

    index: str = Constants.DEFAULT_INDEX
    kind: ClassVar[str] = "index"

    def key(self) -> str:
        return f"index:{self.index}"

    def to_dict(self) -> Dict[str, str]:
        return {"index": self.index}

    def __str__(self) -> str:
        return f"index '{self.index}'"


@dataclass(frozen=True)
class GitSource:
    """A package built from a git repository, optionally pinned to a revision."""

    url: str
    rev: Optional[str] = None
    kind: ClassVar[str] = "git"

    def key(self) -> str:
        return f"git:{self.url}@{self.rev or 'HEAD'}"

    def to_dict(self) -> Dict[str, str]:
        data = {"git": self.url}
        if self.rev:
            data["rev"] = self.rev
        return data

    def __str__(self) -> str:
        return f"git {self.url}" + (f"@{self.rev}" if self.rev else "")


@dataclass(frozen=True)
class PathSource:
    """A package read from a local project directory."""

    path: str
    kind: ClassVar[str] = "path"

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", posixpath.normpath(self.path.replace("\\", "/")))

    def key(self) -> str:
        return f"path:{self.path}"

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path}

    def __str__(self) -> str:
        return f"path {self.path}"


Source = Union[IndexSource, GitSource, PathSource]
DEFAULT_SOURCE = IndexSource()


def source_from_dict(data: Mapping) -> Source:
    """Build a Source from its ``to_dict`` form (also used by config files).

    Raises:
        ValueError: If the mapping does not describe a known source kind.
    """
    if not isinstance(data, Mapping):
        raise ValueError(f"Source must be a mapping, got {type(data).__name__}")
    if "git" in data:
        rev = data.get("rev")
        return GitSource(url=str(data["git"]), rev=str(rev) if rev else None)
    if "path" in data:
        return PathSource(path=str(data["path"]))
    if "index" in data:
        return IndexSource(index=str(data["index"]))
    raise ValueError(f"Unknown source declaration: {dict(data)!r}")


@dataclass(frozen=True, order=True)
class DependencyGroup:
    """Default, Dev, or a named optional group (extra)."""

    kind: str
    name: str = ""

    DEFAULT_KIND: ClassVar[str] = "default"
    DEV_KIND: ClassVar[str] = "dev"
    OPTIONAL_KIND: ClassVar[str] = "optional"

    @classmethod
    def default(cls) -> "DependencyGroup":
        return cls(cls.DEFAULT_KIND)

    @classmethod
    def dev(cls) -> "DependencyGroup":
        return cls(cls.DEV_KIND)

    @classmethod
    def optional(cls, name: str) -> "DependencyGroup":
        return cls(cls.OPTIONAL_KIND, str(canonicalize_name(name)))

    @classmethod
    def parse(cls, text: str) -> "DependencyGroup":
        """Parse ``default``, ``dev`` or ``optional:<name>`` (bare names are optional groups)."""
        value = text.strip()
        if value == cls.DEFAULT_KIND:
            return cls.default()
        if value == cls.DEV_KIND:
            return cls.dev()
        if value.startswith(cls.OPTIONAL_KIND + ":"):
            value = value[len(cls.OPTIONAL_KIND) + 1:]
        if not value:
            raise ValueError("Empty dependency group name")
        return cls.optional(value)

    def __str__(self) -> str:
        if self.kind == self.OPTIONAL_KIND:
            return f"{self.OPTIONAL_KIND}:{self.name}"
        return self.kind


DEFAULT_GROUP = DependencyGroup.default()
DEV_GROUP = DependencyGroup.dev()


@dataclass(frozen=True)
class Requirement:
    """A named package plus constraint and source, declared by one member."""

    name: PackageName
    constraint: "VersionConstraint"
    source: Source = DEFAULT_SOURCE
    extras: FrozenSet[str] = frozenset()
    group: DependencyGroup = DEFAULT_GROUP
    marker: Optional[str] = None

    def with_source(self, source: Source) -> "Requirement":
        return replace(self, source=source)

    def __str__(self) -> str:
        text = self.name.display or self.name.normalized
        if self.extras:
            text += "[" + ",".join(sorted(self.extras)) + "]"
        if isinstance(self.source, GitSource):
            text += f" @ git+{self.source.url}" + (f"@{self.source.rev}" if self.source.rev else "")
        elif isinstance(self.source, PathSource):
            text += f" @ file:{self.source.path}"
        elif not self.constraint.is_any():
            text += self.constraint.canonical()
        if self.marker:
            text += f" ; {self.marker}"
        return text


@dataclass(frozen=True)
class WorkspaceMember:
    """One project of a workspace and its root requirements, in declaration order."""

    id: str
    root_requirements: Tuple[Requirement, ...] = ()
    path: Optional[str] = None
    package: Optional[PackageName] = None


@dataclass(frozen=True)
class ResolutionNode:
    """The version chosen for one package by a successful solve."""

    name: PackageName
    chosen_version: PackageVersion
    chosen_source: Source
    satisfied_by: FrozenSet[str] = frozenset()
    dependencies: Tuple[PackageName, ...] = ()
    extras: FrozenSet[str] = frozenset()


class Resolution(Mapping):
    """Read-only mapping of PackageName to ResolutionNode, iterated in name order."""

    def __init__(self, nodes: Mapping[PackageName, ResolutionNode]):
        self._nodes: Dict[PackageName, ResolutionNode] = {
            name: nodes[name] for name in sorted(nodes)
        }

    def __getitem__(self, key: Any) -> ResolutionNode:
        return self._nodes[normalize_name(key)]

    def __iter__(self) -> Iterator[PackageName]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, (str, PackageName)):
            return False
        try:
            return normalize_name(key) in self._nodes
        except ValueError:
            return False

    def version_of(self, name: Union[str, PackageName]) -> PackageVersion:
        return self[name].chosen_version

    def __repr__(self) -> str:
        pins = ", ".join(f"{n}=={node.chosen_version}" for n, node in self._nodes.items())
        return f"Resolution({pins})"


@dataclass(frozen=True)
class ConflictReport:
    """Why no assignment exists for ``package``.

    ``contributing_constraints`` lists ``(source_member, constraint)`` pairs in
    the order they were contributed; a transitive contributor is named
    ``"<package>==<version>"``.
    """

    package: PackageName
    contributing_constraints: Tuple[Tuple[str, "VersionConstraint"], ...]
    reason: str = ""

    def members(self) -> Tuple[str, ...]:
        return tuple(member for member, _ in self.contributing_constraints)

    def format(self) -> str:
        """Render a human-readable explanation."""
        lines = [f"Could not find a version of '{self.package}' that satisfies the requirements:"]
        for member, constraint in self.contributing_constraints:
            lines.append(f"  - {member} requires {self.package}{_render_constraint(constraint)}")
        if self.reason:
            lines.append(f"  ({self.reason})")
        return "\n".join(lines)


def _render_constraint(constraint: "VersionConstraint") -> str:
    text = str(constraint)
    return "" if text == "*" else f" {text}"
