"""Discover workspace members from ``pyproject.toml`` or ``requirements.txt``.

A workspace root either holds a ``pyproject.toml`` (optionally listing
member globs under ``[tool.depsolve.workspace]``) or a plain
``requirements.txt``. Every member becomes a :class:`WorkspaceMember` whose
requirements keep their declaration order.
"""
from __future__ import annotations

import glob
import logging
import os
import posixpath
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import requirements

from common.logging_utils import extra_context, format_names, is_debug_enabled
from constants import Constants
from versioning.constraint import parse_constraint
from versioning.errors import WorkspaceError
from versioning.models import (
    DEFAULT_GROUP,
    DEV_GROUP,
    DependencyGroup,
    GitSource,
    PackageName,
    PackageVersion,
    PathSource,
    Requirement,
    Source,
    WorkspaceMember,
    normalize_name,
    source_from_dict,
)
from versioning.parser import parse_requirement

from .graph import available_groups

logger = logging.getLogger(__name__)

_TOOL_TABLES = ("depsolve", "rye")


def _load_toml(path: str) -> Dict[str, Any]:
    try:
        import tomllib as toml  # type: ignore
    except ImportError:  # Python < 3.11
        import tomli as toml  # type: ignore

    try:
        with open(path, "rb") as fh:
            return toml.load(fh) or {}
    except OSError as exc:
        raise WorkspaceError(path, f"cannot read: {exc}") from exc
    except toml.TOMLDecodeError as exc:
        raise WorkspaceError(path, f"invalid TOML: {exc}") from exc


def _join(base_dir: str, path: str) -> str:
    if posixpath.isabs(path):
        return posixpath.normpath(path)
    return posixpath.normpath(posixpath.join(base_dir, path))


@dataclass(frozen=True)
class ProjectMetadata:
    """What depsolve needs from one ``pyproject.toml``."""

    name: PackageName
    version: PackageVersion
    path: str
    dependencies: Tuple[Requirement, ...] = ()
    optional_dependencies: Dict[str, Tuple[Requirement, ...]] = field(default_factory=dict)
    dev_dependencies: Tuple[Requirement, ...] = ()
    sources: Dict[PackageName, Source] = field(default_factory=dict)
    workspace_members: Tuple[str, ...] = ()

    def root_requirements(self) -> Tuple[Requirement, ...]:
        reqs: List[Requirement] = list(self.dependencies)
        for group in sorted(self.optional_dependencies):
            reqs.extend(self.optional_dependencies[group])
        reqs.extend(self.dev_dependencies)
        return tuple(reqs)


def _tool_value(data: Mapping[str, Any], key: str) -> Any:
    tool = data.get("tool") or {}
    for table in _TOOL_TABLES:
        section = tool.get(table) or {}
        if key in section:
            return section[key]
    return None


def _string_list(value: Any, where: str, path: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise WorkspaceError(path, f"{where} must be a list of strings")
    return [item for item in value if isinstance(item, str)]


def _dev_requirement_strings(data: Mapping[str, Any], path: str) -> List[str]:
    value = _tool_value(data, "dev-dependencies")
    if value is None:
        # PEP 735 dependency groups; include-group tables are not followed
        value = (data.get("dependency-groups") or {}).get("dev")
    return _string_list(value, "dev-dependencies", path)


def _declared_sources(data: Mapping[str, Any], base_dir: str, path: str) -> Dict[PackageName, Source]:
    table = _tool_value(data, "sources") or {}
    if not isinstance(table, Mapping):
        raise WorkspaceError(path, "[tool.depsolve.sources] must be a table")
    sources: Dict[PackageName, Source] = {}
    for name, raw in table.items():
        try:
            source = source_from_dict(raw)
            key = normalize_name(name)
        except ValueError as exc:
            raise WorkspaceError(path, str(exc)) from exc
        if isinstance(source, PathSource):
            source = PathSource(_join(base_dir, source.path))
        sources[key] = source
    return sources


def read_project(project_dir: str, base_dir: Optional[str] = None) -> Optional[ProjectMetadata]:
    """Read ``project_dir/pyproject.toml``.

    Args:
        project_dir: Directory holding the manifest.
        base_dir: Workspace-relative location of ``project_dir``; relative
            path dependencies are resolved against it. Defaults to ``"."``.

    Returns:
        ProjectMetadata, or None when there is no manifest or no
        ``[project]`` table.

    Raises:
        WorkspaceError: On unreadable or invalid manifests.
    """
    path = os.path.join(project_dir, Constants.PYPROJECT_TOML_FILE)
    if not os.path.isfile(path):
        return None
    data = _load_toml(path)
    project = data.get("project")
    base = posixpath.normpath(base_dir or ".")
    members = tuple(_string_list((_tool_value(data, "workspace") or {}).get("members"), "workspace.members", path))
    if not isinstance(project, Mapping):
        if members:
            # virtual workspace root: members only, no requirements of its own
            try:
                root_name = PackageName.parse(os.path.basename(os.path.abspath(project_dir)))
            except ValueError:
                root_name = PackageName.parse("workspace")
            return ProjectMetadata(
                name=root_name,
                version=PackageVersion("0"),
                path=base,
                workspace_members=members,
            )
        return None

    try:
        name = PackageName.parse(str(project.get("name", "")))
    except ValueError as exc:
        raise WorkspaceError(path, str(exc)) from exc
    raw_version = project.get("version")
    if raw_version is None:
        logger.warning("%s has a dynamic version; treating it as 0", path)
        raw_version = "0"
    try:
        version = PackageVersion(str(raw_version))
    except ValueError as exc:
        raise WorkspaceError(path, f"invalid version {raw_version!r}") from exc

    sources = _declared_sources(data, base, path)

    def _parse(items: Sequence[str], group: DependencyGroup) -> Tuple[Requirement, ...]:
        parsed = []
        for item in items:
            req = parse_requirement(item, group=group, base_dir=base)
            if req.name in sources:
                req = req.with_source(sources[req.name])
            parsed.append(req)
        return tuple(parsed)

    optional = project.get("optional-dependencies") or {}
    if not isinstance(optional, Mapping):
        raise WorkspaceError(path, "[project.optional-dependencies] must be a table")

    return ProjectMetadata(
        name=name,
        version=version,
        path=base,
        dependencies=_parse(_string_list(project.get("dependencies"), "dependencies", path), DEFAULT_GROUP),
        optional_dependencies={
            DependencyGroup.optional(extra).name: _parse(
                _string_list(items, f"optional-dependencies.{extra}", path), DependencyGroup.optional(extra)
            )
            for extra, items in optional.items()
        },
        dev_dependencies=_parse(_dev_requirement_strings(data, path), DEV_GROUP),
        sources=sources,
        workspace_members=members,
    )


def _from_parsed_line(parsed: Any, base_dir: str) -> Optional[Requirement]:
    """Convert a requirements-parser entry into a Requirement."""
    name = getattr(parsed, "name", None)
    if not name:
        return None
    extras = frozenset(e.lower() for e in (getattr(parsed, "extras", None) or []))
    line = getattr(parsed, "line", "") or ""
    marker = line.split(";", 1)[1].strip() if ";" in line else None

    source: Source
    if getattr(parsed, "vcs", None):
        if parsed.vcs != "git":
            raise ValueError(f"unsupported VCS '{parsed.vcs}' for {name}")
        uri = parsed.uri or ""
        uri = uri[len("git+"):] if uri.startswith("git+") else uri
        source = GitSource(url=uri, rev=getattr(parsed, "revision", None) or None)
        constraint = parse_constraint("")
    elif getattr(parsed, "local_file", False):
        source = PathSource(_join(base_dir, parsed.path or "."))
        constraint = parse_constraint("")
    else:
        specs = getattr(parsed, "specs", None) or []
        return parse_requirement(
            name
            + (f"[{','.join(sorted(extras))}]" if extras else "")
            + ",".join(op + ver for op, ver in specs)
            + (f" ; {marker}" if marker else "")
        )
    return Requirement(
        name=PackageName.parse(name),
        constraint=constraint,
        source=source,
        extras=extras,
        marker=marker,
    )


def load_requirements_file(path: str, member_id: Optional[str] = None, base_dir: str = ".") -> WorkspaceMember:
    """Load a ``requirements.txt`` as a single workspace member.

    Raises:
        WorkspaceError: If the file cannot be read or contains unsupported lines.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            body = fh.read()
    except OSError as exc:
        raise WorkspaceError(path, f"cannot read: {exc}") from exc
    reqs: List[Requirement] = []
    try:
        for parsed in requirements.parse(body):
            req = _from_parsed_line(parsed, base_dir)
            if req is not None:
                reqs.append(req)
    except ValueError as exc:
        # also raised by requirements-parser for lines it cannot understand
        raise WorkspaceError(path, str(exc)) from exc
    return WorkspaceMember(
        id=member_id or os.path.basename(path),
        root_requirements=tuple(reqs),
        path=base_dir,
    )


@dataclass(frozen=True)
class Workspace:
    """All members of a workspace plus workspace-wide source overrides."""

    root: str
    members: Tuple[WorkspaceMember, ...]
    source_overrides: Dict[PackageName, Source] = field(default_factory=dict)

    def groups(self) -> Tuple[DependencyGroup, ...]:
        return available_groups(self.members)

    def member(self, member_id: str) -> Optional[WorkspaceMember]:
        return next((m for m in self.members if m.id == member_id), None)


def _member(project: ProjectMetadata) -> WorkspaceMember:
    return WorkspaceMember(
        id=str(project.name),
        root_requirements=project.root_requirements(),
        path=project.path,
        package=project.name,
    )


def load_workspace(root: str) -> Workspace:
    """Load every member under ``root``.

    Raises:
        WorkspaceError: If ``root`` has neither manifest, or a member glob
            matches a directory without a ``[project]`` table.
    """
    root_project = read_project(root, ".")
    members: List[WorkspaceMember] = []
    projects: List[ProjectMetadata] = []

    if root_project is None:
        req_path = os.path.join(root, Constants.REQUIREMENTS_FILE)
        if not os.path.isfile(req_path):
            raise WorkspaceError(root, "no pyproject.toml with a [project] table and no requirements.txt")
        members.append(load_requirements_file(req_path))
    else:
        if root_project.dependencies or root_project.optional_dependencies or root_project.dev_dependencies \
                or not root_project.workspace_members:
            projects.append(root_project)
        for pattern in root_project.workspace_members:
            for match in sorted(glob.glob(os.path.join(root, pattern))):
                if not os.path.isdir(match):
                    continue
                rel = posixpath.normpath(os.path.relpath(match, root).replace(os.sep, "/"))
                if rel == ".":
                    continue
                project = read_project(match, rel)
                if project is None:
                    raise WorkspaceError(match, "workspace member has no [project] table")
                projects.append(project)
        members.extend(_member(project) for project in projects)

    ids = [m.id for m in members]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise WorkspaceError(root, f"duplicate workspace members: {', '.join(duplicates)}")

    overrides: Dict[PackageName, Source] = {
        project.name: PathSource(project.path) for project in projects if project.path != "."
    }
    if is_debug_enabled(logger):
        logger.debug(
            "Loaded workspace",
            extra=extra_context(
                event="function_exit",
                component="workspace",
                action="load_workspace",
                outcome="success",
                target=format_names(ids),
                count=len(members),
            ),
        )
    return Workspace(root=root, members=tuple(members), source_overrides=overrides)
