"""Version constraint expressions.

A constraint is an AND of simple clauses. Compatible-release (``~=``) and
prefix-match (``==X.Y.*``) clauses are rewritten into plain bounds when the
expression is parsed, so matching and intersection only deal with
comparisons against a single version.
"""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from packaging.version import InvalidVersion, Version

from .errors import MalformedConstraint, UnsatisfiableConstraint
from .models import PackageVersion

_CLAUSE_RE = re.compile(r"^(~=|===|==|!=|<=|>=|<|>)\s*(\S+)$")
_LOWER_OPS = (">=", ">")
_UPPER_OPS = ("<=", "<")
# Display order of clauses inside a canonical expression.
_OP_RANK = {">=": 0, ">": 0, "<=": 1, "<": 1, "==": 2, "===": 3, "!=": 4}


@functools.lru_cache(maxsize=4096)
def _version(text: str) -> Version:
    return Version(text)


@dataclass(frozen=True)
class Clause:
    """A single ``<operator> <version>`` comparison.

    ``wildcard`` is only ever set for ``!=X.Y.*`` exclusions; the ``==``
    wildcard form is expanded into bounds at parse time.
    """

    operator: str
    version: str
    wildcard: bool = False
    implicit: bool = field(default=False, compare=False)

    @property
    def parsed(self) -> Version:
        return _version(self.version)

    def matches(self, candidate: PackageVersion) -> bool:
        """Return True when ``candidate`` satisfies this clause (PEP 440 rules)."""
        op = self.operator
        if op == "===":
            return candidate.text.lower() == self.version.lower()
        if self.wildcard:
            return not self._prefix_match(candidate)

        spec = self.parsed
        public = candidate.public
        if op in ("==", "!="):
            if spec.local is not None:
                equal = candidate.version == spec
            else:
                equal = public == spec
            return equal if op == "==" else not equal
        if op == ">=":
            return public >= spec
        if op == "<=":
            return public <= spec
        if op == ">":
            if public <= spec:
                return False
            # >V never admits post-releases of V unless V is itself a post-release
            if not spec.is_postrelease and public.is_postrelease:
                return _version(public.base_version) != _version(spec.base_version)
            return True
        if op == "<":
            if public >= spec:
                return False
            # <V never admits pre-releases of V unless V is itself a pre-release
            if not spec.is_prerelease and public.is_prerelease:
                return _version(public.base_version) != _version(spec.base_version)
            return True
        raise ValueError(f"Unsupported operator {op!r}")

    def _prefix_match(self, candidate: PackageVersion) -> bool:
        prefix = self.parsed
        public = candidate.public
        if public.epoch != prefix.epoch:
            return False
        width = len(prefix.release)
        release = tuple(public.release[:width]) + (0,) * max(0, width - len(public.release))
        return release == prefix.release

    def sort_key(self) -> Tuple[int, Version, str]:
        if self.operator == "===":
            return (_OP_RANK[self.operator], _version("0"), self.version)
        return (_OP_RANK[self.operator], self.parsed, self.operator)

    def __str__(self) -> str:
        return f"{self.operator}{self.version}" + (".*" if self.wildcard else "")


@dataclass(frozen=True)
class VersionConstraint:
    """Conjunction of clauses; the empty conjunction accepts every version.

    ``text`` keeps the expression as written for diagnostics and is ignored by
    equality; ``canonical()`` is the stable form used in hashes and lock files.
    """

    clauses: Tuple[Clause, ...] = ()
    text: str = field(default="", compare=False)

    @classmethod
    def any(cls) -> "VersionConstraint":
        return cls()

    @classmethod
    def from_clauses(cls, clauses: Iterable[Clause], text: str = "") -> "VersionConstraint":
        return cls(clauses=_simplify(clauses), text=text)

    def is_any(self) -> bool:
        return not self.clauses

    def canonical(self) -> str:
        return ",".join(str(c) for c in self.clauses)

    def contains(self, version: PackageVersion) -> bool:
        """Return True when ``version`` satisfies every clause."""
        return all(clause.matches(version) for clause in self.clauses)

    __contains__ = contains

    def mentions_prerelease(self) -> bool:
        """True when a clause names a pre-release, which opts into pre-releases."""
        for clause in self.clauses:
            if clause.operator == "===" or clause.wildcard or clause.implicit:
                continue
            if clause.parsed.is_prerelease:
                return True
        return False

    def lower(self) -> Optional[Clause]:
        return next((c for c in self.clauses if c.operator in _LOWER_OPS), None)

    def upper(self) -> Optional[Clause]:
        return next((c for c in self.clauses if c.operator in _UPPER_OPS), None)

    def is_empty(self) -> bool:
        """True when no version can satisfy the constraint (conservative)."""
        lower, upper = self.lower(), self.upper()
        if lower is not None and upper is not None:
            if lower.parsed > upper.parsed:
                return True
            if lower.parsed == upper.parsed:
                if lower.operator == ">" or upper.operator == "<":
                    return True
                if not self.contains(PackageVersion(lower.version)):
                    return True

        pins = [c for c in self.clauses if c.operator == "=="]
        if pins:
            points = [PackageVersion(c.version) for c in pins]
            if not any(self.contains(p) for p in points):
                return True

        arbitrary = {c.version.lower() for c in self.clauses if c.operator == "==="}
        if len(arbitrary) > 1:
            return True
        return False

    def intersect(self, other: "VersionConstraint") -> "VersionConstraint":
        """Return the constraint satisfied by versions satisfying both operands.

        Raises:
            UnsatisfiableConstraint: If the intersection is provably empty.
        """
        if other.is_any():
            return self
        if self.is_any():
            return other
        merged = VersionConstraint.from_clauses(self.clauses + other.clauses)
        if merged.is_empty():
            raise UnsatisfiableConstraint(self, other)
        return merged

    def __str__(self) -> str:
        if self.text:
            return self.text
        return self.canonical() or "*"

    def __repr__(self) -> str:
        return f"VersionConstraint('{self.canonical()}')"


def _simplify(clauses: Iterable[Clause]) -> Tuple[Clause, ...]:
    """Keep the tightest lower and upper bound, dedupe the rest, sort canonically."""
    lower: Optional[Clause] = None
    upper: Optional[Clause] = None
    rest: List[Clause] = []
    for clause in clauses:
        if clause.operator in _LOWER_OPS:
            if lower is None or _lower_key(clause) > _lower_key(lower):
                lower = clause
        elif clause.operator in _UPPER_OPS:
            if upper is None or _upper_key(clause) < _upper_key(upper):
                upper = clause
        elif clause not in rest:
            rest.append(clause)
    kept = [c for c in (lower, upper) if c is not None] + rest
    return tuple(sorted(kept, key=lambda c: c.sort_key()))


def _lower_key(clause: Clause) -> Tuple[Version, int]:
    return (clause.parsed, 1 if clause.operator == ">" else 0)


def _upper_key(clause: Clause) -> Tuple[Version, int]:
    return (clause.parsed, 0 if clause.operator == "<" else 1)


def _bump(release: Tuple[int, ...], epoch: int) -> str:
    bumped = list(release)
    bumped[-1] += 1
    text = ".".join(str(part) for part in bumped)
    return f"{epoch}!{text}" if epoch else text


def _parse_clause(expression: str, part: str) -> List[Clause]:
    match = _CLAUSE_RE.match(part)
    if not match:
        if re.match(r"^[0-9]", part):
            raise MalformedConstraint(expression, f"missing comparator before '{part}'")
        raise MalformedConstraint(expression, f"unknown comparator in '{part}'")
    op, raw = match.group(1), match.group(2)

    if op == "===":
        return [Clause("===", raw)]

    wildcard = raw.endswith(".*")
    if wildcard:
        if op not in ("==", "!="):
            raise MalformedConstraint(expression, f"wildcard not allowed with '{op}'")
        raw = raw[:-2]
    if "*" in raw:
        raise MalformedConstraint(expression, f"misplaced wildcard in '{part}'")

    try:
        parsed = Version(raw)
    except InvalidVersion as exc:
        raise MalformedConstraint(expression, f"invalid version '{raw}'") from exc

    if parsed.local is not None and op not in ("==", "!="):
        raise MalformedConstraint(expression, f"local version label not allowed with '{op}'")

    if wildcard:
        if parsed.local is not None or parsed.is_prerelease or parsed.is_postrelease:
            raise MalformedConstraint(expression, "wildcard prefix must be a plain release")
        if op == "!=":
            return [Clause("!=", raw, wildcard=True)]
        upper = _bump(parsed.release, parsed.epoch)
        return [
            Clause(">=", f"{raw}.dev0", implicit=True),
            Clause("<", f"{upper}.dev0", implicit=True),
        ]

    if op == "~=":
        if len(parsed.release) < 2:
            raise MalformedConstraint(expression, "compatible release needs at least two segments")
        if parsed.local is not None:
            raise MalformedConstraint(expression, "local version label not allowed with '~='")
        upper = _bump(parsed.release[:-1], parsed.epoch) + ".0"
        return [Clause(">=", raw), Clause("<", upper)]

    return [Clause(op, raw)]


def parse_constraint(expression: Optional[str]) -> VersionConstraint:
    """Parse a comma separated constraint expression such as ``>=1.0,<2``.

    An empty expression or ``*`` means any version.

    Raises:
        MalformedConstraint: On unknown comparators, empty clauses, invalid
            versions or misplaced wildcards.
    """
    text = (expression or "").strip()
    if text in ("", "*"):
        return VersionConstraint.any()

    clauses: List[Clause] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            raise MalformedConstraint(text, "empty clause")
        clauses.extend(_parse_clause(text, part))

    constraint = VersionConstraint.from_clauses(clauses, text=text)
    if constraint.is_empty():
        raise UnsatisfiableConstraint(constraint, constraint)
    return constraint
