"""Requirement string parsing.

PEP 508 strings are validated with ``packaging.requirements`` and the
specifier text is re-parsed by :func:`parse_constraint`, so the original
expression survives for diagnostics.
"""

import posixpath
import re
from typing import Iterable, List, Optional
from urllib.parse import unquote, urlsplit

from packaging.requirements import InvalidRequirement
from packaging.requirements import Requirement as Pep508Requirement

from .constraint import VersionConstraint, parse_constraint
from .errors import MalformedConstraint
from .models import (
    DEFAULT_GROUP,
    DEFAULT_SOURCE,
    DependencyGroup,
    GitSource,
    PackageName,
    PathSource,
    Requirement,
    Source,
)

_HEAD_RE = re.compile(r"^\s*[A-Za-z0-9][A-Za-z0-9._-]*\s*(\[[^\]]*\])?\s*")


def _specifier_text(text: str) -> str:
    """Return the specifier portion of a PEP 508 string as written."""
    body = text.split(";", 1)[0]
    match = _HEAD_RE.match(body)
    rest = body[match.end():].strip() if match else ""
    if rest.startswith("(") and rest.endswith(")"):
        rest = rest[1:-1].strip()
    return rest


def _join_path(path: str, base_dir: Optional[str]) -> str:
    if base_dir and not posixpath.isabs(path):
        return posixpath.normpath(posixpath.join(base_dir, path))
    return path


def source_from_url(url: str, base_dir: Optional[str] = None) -> Source:
    """Map a direct-reference URL to a Source.

    ``git+<url>[@<rev>]`` becomes a GitSource and ``file:`` URLs a PathSource.

    Raises:
        ValueError: For any other URL scheme.
    """
    if url.startswith("git+"):
        parts = urlsplit(url[len("git+"):])
        path, rev = parts.path, None
        if "@" in path:
            path, rev = path.rsplit("@", 1)
        clean = parts._replace(path=path, fragment="", query="").geturl()
        return GitSource(url=clean, rev=rev or None)
    if url.startswith("file:"):
        parts = urlsplit(url)
        path = unquote(parts.path)
        if parts.netloc and parts.netloc != "localhost":
            path = f"//{parts.netloc}{path}"
        return PathSource(path=_join_path(path, base_dir))
    raise ValueError(f"Unsupported direct reference '{url}'")


def parse_requirement(
    text: str,
    group: DependencyGroup = DEFAULT_GROUP,
    source: Optional[Source] = None,
    base_dir: Optional[str] = None,
) -> Requirement:
    """Parse a PEP 508 requirement string into a Requirement.

    Args:
        text: Requirement such as ``"requests[socks]>=2.31,<3 ; python_version>='3.8'"``.
        group: Dependency group the requirement belongs to.
        source: Explicit source declaration; wins over a direct reference.
        base_dir: Directory that relative ``file:`` references are resolved against.

    Raises:
        MalformedConstraint: If the string or its version constraint is invalid.
    """
    raw = (text or "").strip()
    if not raw:
        raise MalformedConstraint(raw, "empty requirement")
    try:
        parsed = Pep508Requirement(raw)
    except InvalidRequirement as exc:
        # Surface comparator problems with the constraint parser's message.
        spec = _specifier_text(raw)
        if spec:
            parse_constraint(spec)
        raise MalformedConstraint(raw, str(exc)) from exc

    name = PackageName.parse(parsed.name)
    constraint: VersionConstraint
    resolved_source: Source = DEFAULT_SOURCE
    if parsed.url:
        try:
            resolved_source = source_from_url(parsed.url, base_dir)
        except ValueError as exc:
            raise MalformedConstraint(raw, str(exc)) from exc
        constraint = VersionConstraint.any()
    else:
        constraint = parse_constraint(_specifier_text(raw))
    if source is not None:
        resolved_source = source

    return Requirement(
        name=name,
        constraint=constraint,
        source=resolved_source,
        extras=frozenset(e.lower() for e in parsed.extras),
        group=group,
        marker=str(parsed.marker) if parsed.marker else None,
    )


def parse_requirements(
    lines: Iterable[str],
    group: DependencyGroup = DEFAULT_GROUP,
    base_dir: Optional[str] = None,
) -> List[Requirement]:
    """Parse requirement strings, skipping blanks and ``#`` comments."""
    result = []
    for line in lines:
        stripped = line.split(" #", 1)[0].strip()
        if not stripped or stripped.startswith("#"):
            continue
        result.append(parse_requirement(stripped, group=group, base_dir=base_dir))
    return result
