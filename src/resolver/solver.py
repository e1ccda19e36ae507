"""Backtracking constraint solver.

Decisions live on an explicit stack of frames. Each frame owns the package it
decides, the state it was opened from, the candidates still to try and the
set of earlier decisions that its failures depend on. When a frame runs out
of candidates the solver jumps straight back to the most recent of those
decisions instead of unwinding one level at a time.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import (
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from common.logging_utils import Timer, extra_context, is_debug_enabled
from constants import DefaultResolver
from versioning.constraint import VersionConstraint
from versioning.errors import (
    ResolutionCancelled,
    ResolutionError,
    ResolutionTimeout,
    SourceMismatch,
    UnknownPackage,
    UnsatisfiableConstraint,
)
from versioning.models import (
    DEFAULT_GROUP,
    ConflictReport,
    DependencyGroup,
    PackageName,
    PackageVersion,
    Requirement,
    Resolution,
    ResolutionNode,
    Source,
    WorkspaceMember,
)
from workspace.graph import RequirementGraph, build_requirement_graph

from .provider import Candidate, MetadataProvider

logger = logging.getLogger(__name__)


@dataclass
class SolverOptions:
    """Tunables for one solve."""

    max_iterations: int = DefaultResolver.MAX_ITERATIONS.value
    allow_prereleases: bool = False
    preferred_versions: Mapping[PackageName, PackageVersion] = field(default_factory=dict)
    upgrade: FrozenSet[PackageName] = frozenset()
    upgrade_all: bool = False
    prefetch_workers: int = DefaultResolver.PREFETCH_WORKERS.value

    def preference_for(self, name: PackageName) -> Optional[PackageVersion]:
        if self.upgrade_all or name in self.upgrade:
            return None
        return self.preferred_versions.get(name)


@dataclass(frozen=True)
class SolveResult:
    """Either a Resolution or a ConflictReport, never both."""

    resolution: Optional[Resolution] = None
    conflict: Optional[ConflictReport] = None
    iterations: int = 0

    @property
    def ok(self) -> bool:
        return self.resolution is not None


class _Contribution(NamedTuple):
    label: str
    constraint: VersionConstraint
    decided_by: Optional[PackageName]
    extras: FrozenSet[str]
    source: Source


class _Conflict(Exception):
    """Internal signal: applying a candidate produced an empty intersection."""

    def __init__(
        self,
        package: PackageName,
        contributions: Sequence[_Contribution],
        culprits: Iterable[PackageName],
        reason: str,
    ):
        super().__init__(reason)
        self.package = package
        self.contributions = tuple(contributions)
        self.culprits = frozenset(culprits)
        self.reason = reason


class _State:
    """Accumulated constraints and selections at one point of the search."""

    __slots__ = ("contributions", "constraints", "sources", "extras", "selected", "applied_extras")

    def __init__(self) -> None:
        self.contributions: Dict[PackageName, Tuple[_Contribution, ...]] = {}
        self.constraints: Dict[PackageName, VersionConstraint] = {}
        self.sources: Dict[PackageName, Source] = {}
        self.extras: Dict[PackageName, FrozenSet[str]] = {}
        self.selected: Dict[PackageName, Candidate] = {}
        self.applied_extras: Dict[PackageName, FrozenSet[str]] = {}

    def copy(self) -> "_State":
        clone = _State()
        clone.contributions = dict(self.contributions)
        clone.constraints = dict(self.constraints)
        clone.sources = dict(self.sources)
        clone.extras = dict(self.extras)
        clone.selected = dict(self.selected)
        clone.applied_extras = dict(self.applied_extras)
        return clone

    def unresolved(self) -> List[PackageName]:
        return [name for name in self.contributions if name not in self.selected]

    def selection_key(self) -> FrozenSet[Tuple[PackageName, PackageVersion]]:
        return frozenset((name, cand.version) for name, cand in self.selected.items())


@dataclass
class _Frame:
    package: PackageName
    base: _State
    remaining: List[Candidate]
    key: Tuple
    chosen: Optional[Candidate] = None
    culprits: Set[PackageName] = field(default_factory=set)
    last_conflict: Optional[_Conflict] = None


def _culprits_of(contributions: Iterable[_Contribution]) -> Set[PackageName]:
    return {c.decided_by for c in contributions if c.decided_by is not None}


class Solver:
    """Find one version per package such that every constraint holds.

    Example:
        >>> solver = Solver(provider)
        >>> result = solver.solve(graph)
        >>> result.resolution.version_of("requests")
    """

    def __init__(
        self,
        provider: MetadataProvider,
        options: Optional[SolverOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.provider = provider
        self.options = options or SolverOptions()
        self.cancel_event = cancel_event
        self._iterations = 0
        self._overrides: Dict[PackageName, Source] = {}
        self._failed: Dict[Tuple, FrozenSet[PackageName]] = {}
        self._versions: Dict[Tuple[PackageName, str], List[Candidate]] = {}

    # -- provider access ---------------------------------------------------

    def _all_candidates(self, name: PackageName, state: _State) -> List[Candidate]:
        """Every version of ``name`` from its source, newest first, deduplicated."""
        source = state.sources[name]
        key = (name, source.key())
        cached = self._versions.get(key)
        if cached is not None:
            return cached
        try:
            fetched = list(self.provider.fetch_candidates(name, source))
        except ResolutionError as exc:
            if isinstance(exc, UnknownPackage) and not exc.required_by:
                raise UnknownPackage(
                    name, source, [c.label for c in state.contributions.get(name, ())]
                ) from exc
            raise
        except Exception as exc:  # provider bugs and I/O failures
            raise UnknownPackage(
                name, source, [c.label for c in state.contributions.get(name, ())]
            ) from exc
        seen: Set[PackageVersion] = set()
        ordered: List[Candidate] = []
        for candidate in sorted(fetched, key=lambda c: c.version, reverse=True):
            if candidate.version not in seen:
                seen.add(candidate.version)
                ordered.append(candidate)
        self._versions[key] = ordered
        return ordered

    def _load(self, candidate: Candidate, state: _State):
        try:
            return candidate.load()
        except ResolutionError:
            raise
        except Exception as exc:  # metadata loader failures
            raise UnknownPackage(
                candidate.name,
                candidate.source,
                [c.label for c in state.contributions.get(candidate.name, ())],
            ) from exc

    def _ordered_candidates(self, name: PackageName, state: _State) -> List[Candidate]:
        """Candidates satisfying the accumulated constraint in try order."""
        constraint = state.constraints[name]
        matching = [c for c in self._all_candidates(name, state) if constraint.contains(c.version)]
        preferred = self.options.preference_for(name)

        allow_pre = self.options.allow_prereleases or constraint.mentions_prerelease()
        if not allow_pre:
            finals = [c for c in matching if not c.version.is_prerelease or c.version == preferred]
            # pre-releases are used only when nothing else fits
            if finals:
                matching = finals

        if preferred is not None:
            front = [c for c in matching if c.version == preferred]
            matching = front + [c for c in matching if c.version != preferred]
        return matching

    def _viable(self, name: PackageName, constraint: VersionConstraint, state: _State) -> bool:
        return any(constraint.contains(c.version) for c in self._all_candidates(name, state))

    # -- state transitions -------------------------------------------------

    def _root_state(self, graph: RequirementGraph) -> _State:
        state = _State()
        for merged in graph:
            state.contributions[merged.name] = tuple(
                _Contribution(
                    label=origin.member,
                    constraint=origin.requirement.constraint,
                    decided_by=None,
                    extras=origin.requirement.extras,
                    source=merged.source,
                )
                for origin in merged.origins
            )
            state.constraints[merged.name] = merged.constraint
            state.sources[merged.name] = merged.source
            state.extras[merged.name] = merged.extras
        return state

    def _add_contribution(
        self,
        state: _State,
        req: Requirement,
        label: str,
        decided_by: PackageName,
    ) -> None:
        name = req.name
        source = self._overrides.get(name, req.source)
        contribution = _Contribution(label, req.constraint, decided_by, req.extras, source)
        existing = state.contributions.get(name, ())

        if existing:
            current = state.sources[name]
            if current.key() != source.key():
                chain = [(c.label, c.source) for c in existing] + [(label, source)]
                raise SourceMismatch(name, chain)
            try:
                merged = state.constraints[name].intersect(req.constraint)
            except UnsatisfiableConstraint:
                raise _Conflict(
                    name,
                    existing + (contribution,),
                    _culprits_of(existing + (contribution,)),
                    f"'{req.constraint}' from {label} excludes every version allowed so far",
                ) from None
        else:
            merged = req.constraint
            state.sources[name] = source

        contributions = existing + (contribution,)
        state.contributions[name] = contributions
        state.constraints[name] = merged
        extras = state.extras.get(name, frozenset()) | req.extras
        state.extras[name] = extras

        chosen = state.selected.get(name)
        if chosen is None:
            if not self._viable(name, merged, state):
                raise _Conflict(
                    name,
                    contributions,
                    _culprits_of(contributions),
                    f"no available version of {name} satisfies '{merged.canonical()}'",
                )
            return

        if not merged.contains(chosen.version):
            raise _Conflict(
                name,
                contributions,
                _culprits_of(contributions) | {name},
                f"{name}=={chosen.version} is already selected",
            )
        missing = extras - state.applied_extras.get(name, frozenset())
        if missing:
            state.applied_extras[name] = extras
            self._apply_requirements(state, chosen, sorted(missing))

    def _apply_requirements(self, state: _State, candidate: Candidate, extras: Sequence[str]) -> None:
        requirements, extra_requirements = self._load(candidate, state)
        label = f"{candidate.name}=={candidate.version}"
        for req in requirements:
            self._add_contribution(state, req, label, candidate.name)
        for extra in extras:
            if extra not in extra_requirements:
                logger.warning("%s does not provide the extra '%s'", label, extra)
                continue
            for req in extra_requirements[extra]:
                self._add_contribution(state, req, f"{candidate.name}[{extra}]=={candidate.version}", candidate.name)

    def _apply(self, base: _State, package: PackageName, candidate: Candidate) -> _State:
        state = base.copy()
        state.selected[package] = candidate
        extras = state.extras.get(package, frozenset())
        state.applied_extras[package] = extras
        self._apply_requirements(state, candidate, sorted(extras))
        return state

    # -- search ------------------------------------------------------------

    def _tick(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ResolutionCancelled(self._iterations)
        self._iterations += 1
        if self._iterations > self.options.max_iterations:
            raise ResolutionTimeout(self._iterations - 1, self.options.max_iterations)

    def _next_package(self, state: _State) -> Optional[PackageName]:
        pending = state.unresolved()
        if not pending:
            return None
        self.provider.prefetch([(name, state.sources[name]) for name in pending])
        return min(pending, key=lambda name: (len(self._ordered_candidates(name, state)), name))

    def _push(self, stack: List[_Frame], state: _State, package: PackageName) -> None:
        key = (
            package,
            state.constraints[package].canonical(),
            state.extras.get(package, frozenset()),
            state.selection_key(),
        )
        frame = _Frame(package=package, base=state, remaining=[], key=key)
        if key in self._failed:
            frame.culprits = set(self._failed[key])
            frame.last_conflict = _Conflict(
                package, state.contributions[package], frame.culprits, "already known to fail"
            )
        else:
            contributions = state.contributions[package]
            # decisions that narrowed this package's candidates are always suspects
            frame.culprits = _culprits_of(contributions)
            frame.remaining = self._ordered_candidates(package, state)
            if not frame.remaining:
                available = ", ".join(str(c.version) for c in reversed(self._all_candidates(package, state)))
                frame.last_conflict = _Conflict(
                    package,
                    contributions,
                    frame.culprits,
                    f"available versions: {available or 'none'}",
                )
        stack.append(frame)

    def _descend(self, stack: List[_Frame]) -> Optional[_State]:
        """Try candidates from the top frame, backjumping on exhaustion."""
        while stack:
            frame = stack[-1]
            while frame.remaining:
                self._tick()
                candidate = frame.remaining.pop(0)
                try:
                    state = self._apply(frame.base, frame.package, candidate)
                except _Conflict as conflict:
                    frame.culprits |= conflict.culprits - {frame.package}
                    frame.last_conflict = conflict
                    continue
                frame.chosen = candidate
                return state

            self._failed[frame.key] = frozenset(frame.culprits)
            if not frame.culprits:
                return None
            levels = {f.package: i for i, f in enumerate(stack)}
            level = max((levels[name] for name in frame.culprits if name in levels), default=-1)
            if level < 0:
                return None
            target = stack[level]
            target.culprits |= frame.culprits - {target.package}
            target.last_conflict = frame.last_conflict
            if is_debug_enabled(logger):
                logger.debug(
                    "Backjumping",
                    extra=extra_context(
                        event="backjump",
                        component="solver",
                        action="solve",
                        package=str(frame.package),
                        target=str(target.package),
                        depth=len(stack) - 1 - level,
                    ),
                )
            del stack[level + 1:]
        return None

    def _report(self, stack: List[_Frame]) -> ConflictReport:
        frame = stack[-1]
        conflict = frame.last_conflict
        if conflict is None:
            contributions = frame.base.contributions[frame.package]
            return ConflictReport(
                package=frame.package,
                contributing_constraints=tuple((c.label, c.constraint) for c in contributions),
            )
        return ConflictReport(
            package=conflict.package,
            contributing_constraints=tuple((c.label, c.constraint) for c in conflict.contributions),
            reason=conflict.reason,
        )

    def _build_resolution(self, graph: RequirementGraph, state: _State) -> Resolution:
        edges: Dict[PackageName, Set[PackageName]] = {name: set() for name in state.selected}
        for name, candidate in state.selected.items():
            requirements, extra_requirements = self._load(candidate, state)
            reqs = list(requirements)
            for extra in state.applied_extras.get(name, frozenset()):
                reqs.extend(extra_requirements.get(extra, ()))
            edges[name].update(r.name for r in reqs if r.name in state.selected)

        satisfied: Dict[PackageName, Set[str]] = {name: set() for name in state.selected}
        for merged in graph:
            for member in merged.members():
                seen: Set[PackageName] = set()
                pending = [merged.name]
                while pending:
                    current = pending.pop()
                    if current in seen:
                        continue
                    seen.add(current)
                    satisfied[current].add(member)
                    pending.extend(edges[current])

        nodes = {
            name: ResolutionNode(
                name=name,
                chosen_version=candidate.version,
                chosen_source=state.sources[name],
                satisfied_by=frozenset(satisfied[name]),
                dependencies=tuple(sorted(edges[name])),
                extras=state.applied_extras.get(name, frozenset()),
            )
            for name, candidate in state.selected.items()
        }
        return Resolution(nodes)

    def solve(self, graph: RequirementGraph) -> SolveResult:
        """Resolve ``graph`` against the provider.

        Returns:
            SolveResult with a Resolution, or a ConflictReport when no
            assignment exists.

        Raises:
            SourceMismatch: Transitive requirements disagree on a source.
            UnknownPackage: A package is missing from its source.
            ResolutionTimeout: ``max_iterations`` was exceeded.
            ResolutionCancelled: ``cancel_event`` was set.
        """
        self._iterations = 0
        self._failed = {}
        self._versions = {}
        self._overrides = graph.overrides()
        stack: List[_Frame] = []
        state = self._root_state(graph)

        with Timer() as timer:
            while True:
                package = self._next_package(state)
                if package is None:
                    result = SolveResult(
                        resolution=self._build_resolution(graph, state), iterations=self._iterations
                    )
                    break
                self._push(stack, state, package)
                next_state = self._descend(stack)
                if next_state is None:
                    result = SolveResult(conflict=self._report(stack), iterations=self._iterations)
                    break
                state = next_state

        if is_debug_enabled(logger):
            logger.debug(
                "Solve finished",
                extra=extra_context(
                    event="function_exit",
                    component="solver",
                    action="solve",
                    outcome="success" if result.ok else "conflict",
                    count=self._iterations,
                    duration_ms=timer.duration_ms(),
                ),
            )
        return result


def solve(
    graph: RequirementGraph,
    provider: MetadataProvider,
    options: Optional[SolverOptions] = None,
    cancel_event: Optional[threading.Event] = None,
) -> SolveResult:
    """Convenience wrapper around :class:`Solver`."""
    return Solver(provider, options, cancel_event).solve(graph)


def resolve(
    members: Sequence[WorkspaceMember],
    provider: MetadataProvider,
    groups: Sequence[DependencyGroup] = (DEFAULT_GROUP,),
    options: Optional[SolverOptions] = None,
    source_overrides: Optional[Mapping[PackageName, Source]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Tuple[RequirementGraph, SolveResult]:
    """Build the requirement graph for ``members`` and solve it.

    Conflicts between root requirements are reported the same way as
    conflicts found during the search: as a ConflictReport on the result.
    """
    try:
        graph = build_requirement_graph(members, groups, source_overrides)
    except UnsatisfiableConstraint as exc:
        if exc.package is None:
            raise
        empty = RequirementGraph(requirements=(), groups=tuple(groups), members=tuple(m.id for m in members))
        return empty, SolveResult(conflict=exc.to_report())
    return graph, Solver(provider, options, cancel_event).solve(graph)
