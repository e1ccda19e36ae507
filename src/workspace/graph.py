"""Workspace requirement graph: merge member requirements into one problem.

Every member requirement is folded, in declaration order, into a per-package
entry that carries the intersected constraint and the ordered list of
origins. A looser constraint never replaces a tighter one; both stay in the
provenance chain.
"""
from __future__ import annotations

import functools
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from common.logging_utils import extra_context, is_debug_enabled
from versioning.constraint import VersionConstraint
from versioning.errors import SourceMismatch, UnsatisfiableConstraint
from versioning.models import (
    DEFAULT_GROUP,
    DependencyGroup,
    PackageName,
    Requirement,
    Source,
    WorkspaceMember,
    normalize_name,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConstraintOrigin:
    """One member's contribution to a package's merged constraint."""

    member: str
    requirement: Requirement


@dataclass(frozen=True)
class MergedRequirement:
    """Intersected constraint for one package plus everything that shaped it."""

    name: PackageName
    constraint: VersionConstraint
    source: Source
    extras: FrozenSet[str] = frozenset()
    origins: Tuple[ConstraintOrigin, ...] = ()

    def contributing_constraints(self) -> Tuple[Tuple[str, VersionConstraint], ...]:
        return tuple((o.member, o.requirement.constraint) for o in self.origins)

    def members(self) -> Tuple[str, ...]:
        seen: List[str] = []
        for origin in self.origins:
            if origin.member not in seen:
                seen.append(origin.member)
        return tuple(seen)


@dataclass(frozen=True)
class RequirementGraph:
    """The merged, provenance-carrying requirement set handed to the solver."""

    requirements: Tuple[MergedRequirement, ...]
    groups: Tuple[DependencyGroup, ...] = (DEFAULT_GROUP,)
    members: Tuple[str, ...] = ()
    source_overrides: Tuple[Tuple[PackageName, Source], ...] = ()
    _index: Dict[PackageName, MergedRequirement] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        self._index.update({req.name: req for req in self.requirements})

    def __getitem__(self, name) -> MergedRequirement:
        return self._index[normalize_name(name)]

    def __contains__(self, name) -> bool:
        try:
            return normalize_name(name) in self._index
        except ValueError:
            return False

    def __iter__(self) -> Iterator[MergedRequirement]:
        return iter(self.requirements)

    def __len__(self) -> int:
        return len(self.requirements)

    def get(self, name) -> Optional[MergedRequirement]:
        return self._index.get(normalize_name(name))

    def names(self) -> Tuple[PackageName, ...]:
        return tuple(req.name for req in self.requirements)

    def overrides(self) -> Dict[PackageName, Source]:
        return dict(self.source_overrides)

    def requirements_hash(self) -> str:
        return requirements_hash(self)


def select_requirements(
    member: WorkspaceMember, groups: Sequence[DependencyGroup]
) -> List[Requirement]:
    """Return the member's requirements that belong to one of ``groups``."""
    wanted = set(groups)
    return [req for req in member.root_requirements if req.group in wanted]


def available_groups(members: Iterable[WorkspaceMember]) -> Tuple[DependencyGroup, ...]:
    """All groups declared by any member, default first."""
    found = {req.group for member in members for req in member.root_requirements}
    found.add(DEFAULT_GROUP)
    return tuple(sorted(found, key=lambda g: (g != DEFAULT_GROUP, g)))


def _merge_origin(
    merged: Mapping[PackageName, MergedRequirement],
    origin: ConstraintOrigin,
    overrides: Mapping[PackageName, Source],
) -> Dict[PackageName, MergedRequirement]:
    """Fold one origin into the running per-package mapping (returns a new mapping)."""
    req = origin.requirement
    source = overrides.get(req.name, req.source)
    current = merged.get(req.name)
    result = dict(merged)

    if current is None:
        result[req.name] = MergedRequirement(
            name=req.name,
            constraint=req.constraint,
            source=source,
            extras=req.extras,
            origins=(origin,),
        )
        return result

    origins = current.origins + (origin,)
    if current.source.key() != source.key():
        chain = [(o.member, overrides.get(o.requirement.name, o.requirement.source)) for o in origins]
        raise SourceMismatch(req.name, chain)

    try:
        constraint = current.constraint.intersect(req.constraint)
    except UnsatisfiableConstraint as exc:
        raise exc.with_provenance(
            req.name, [(o.member, o.requirement.constraint) for o in origins]
        ) from exc

    result[req.name] = MergedRequirement(
        name=req.name,
        constraint=constraint,
        source=source,
        extras=current.extras | req.extras,
        origins=origins,
    )
    return result


def build_requirement_graph(
    members: Sequence[WorkspaceMember],
    groups: Sequence[DependencyGroup] = (DEFAULT_GROUP,),
    source_overrides: Optional[Mapping[PackageName, Source]] = None,
) -> RequirementGraph:
    """Merge the selected groups of every member into one RequirementGraph.

    Args:
        members: Workspace members in declaration order.
        groups: Groups to include; optional and dev groups are excluded
            unless listed here.
        source_overrides: Explicit per-package sources that win over member
            declarations.

    Raises:
        UnsatisfiableConstraint: When member constraints on a package cannot
            be intersected; carries every contributing origin.
        SourceMismatch: When members name a package from different sources.
    """
    overrides = {normalize_name(k): v for k, v in (source_overrides or {}).items()}
    selected = tuple(dict.fromkeys(groups)) or (DEFAULT_GROUP,)
    origins = [
        ConstraintOrigin(member=member.id, requirement=req)
        for member in members
        for req in select_requirements(member, selected)
    ]
    merged = functools.reduce(
        lambda acc, origin: _merge_origin(acc, origin, overrides), origins, {}
    )

    graph = RequirementGraph(
        requirements=tuple(merged.values()),
        groups=selected,
        members=tuple(member.id for member in members),
        source_overrides=tuple(sorted(overrides.items(), key=lambda item: item[0])),
    )
    if is_debug_enabled(logger):
        logger.debug(
            "Built requirement graph",
            extra=extra_context(
                event="function_exit",
                component="workspace",
                action="build_requirement_graph",
                outcome="success",
                count=len(graph),
            ),
        )
    return graph


def requirements_hash(graph: RequirementGraph) -> str:
    """SHA-256 over a canonical, order-independent rendering of ``graph``.

    Every origin is included, so editing one member's constraint changes the
    hash even when the merged constraint stays the same.
    """
    lines = ["groups=" + ",".join(sorted(str(g) for g in graph.groups))]
    for name, source in graph.source_overrides:
        lines.append(f"override {name} {source.key()}")
    entries = []
    for req in graph.requirements:
        for origin in req.origins:
            r = origin.requirement
            entries.append(
                "|".join(
                    [
                        str(req.name),
                        origin.member,
                        str(r.group),
                        r.constraint.canonical(),
                        req.source.key(),
                        ",".join(sorted(r.extras)),
                        r.marker or "",
                    ]
                )
            )
    lines.extend(sorted(entries))
    digest = hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"
