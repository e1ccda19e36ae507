"""Exception taxonomy for requirement parsing, resolution and locking.

Every error is terminal for the resolution attempt that raised it. Errors
carry structured fields next to the message so callers can render them
without re-deriving the cause.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Optional, Sequence, Tuple

if TYPE_CHECKING:
    from .constraint import VersionConstraint
    from .models import ConflictReport, PackageName


class ResolutionError(Exception):
    """Base class for all depsolve errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class MalformedConstraint(ResolutionError):
    """A version constraint expression could not be parsed."""

    def __init__(self, expression: str, reason: str):
        super().__init__(f"Malformed constraint '{expression}': {reason}")
        self.expression = expression
        self.reason = reason


class UnsatisfiableConstraint(ResolutionError):
    """Two constraints on the same package have an empty intersection.

    ``origins`` holds the full contributing chain as ``(member, constraint)``
    pairs once the workspace builder or solver has attached provenance.
    """

    def __init__(
        self,
        left: "VersionConstraint",
        right: "VersionConstraint",
        package: Optional["PackageName"] = None,
        origins: Sequence[Tuple[str, "VersionConstraint"]] = (),
    ):
        self.left = left
        self.right = right
        self.package = package
        self.origins: List[Tuple[str, "VersionConstraint"]] = list(origins)
        super().__init__(self._render())

    def _render(self) -> str:
        subject = f" for {self.package}" if self.package is not None else ""
        text = f"No version satisfies both '{self.left}' and '{self.right}'{subject}"
        if self.origins:
            chain = "; ".join(f"{member} requires '{constraint}'" for member, constraint in self.origins)
            text = f"{text} ({chain})"
        return text

    def with_provenance(
        self,
        package: "PackageName",
        origins: Sequence[Tuple[str, "VersionConstraint"]],
    ) -> "UnsatisfiableConstraint":
        """Return a copy carrying the package name and contributing chain."""
        return UnsatisfiableConstraint(self.left, self.right, package=package, origins=origins)

    def to_report(self) -> "ConflictReport":
        """Convert to a ConflictReport for presentation layers."""
        from .models import ConflictReport  # pylint: disable=import-outside-toplevel

        if self.package is None:
            raise ValueError("conflict has no package attached")
        return ConflictReport(package=self.package, contributing_constraints=tuple(self.origins))


class UnknownPackage(ResolutionError):
    """The metadata provider has no such package for the requested source."""

    def __init__(self, package: Any, source: Any = None, required_by: Sequence[str] = ()):
        self.package = package
        self.source = source
        self.required_by = list(required_by)
        text = f"Package '{package}' was not found"
        if source is not None:
            text += f" in {source}"
        if self.required_by:
            text += f" (required by {', '.join(self.required_by)})"
        super().__init__(text)


class SourceMismatch(ResolutionError):
    """Two requirements name the same package from irreconcilable sources."""

    def __init__(self, package: Any, origins: Sequence[Tuple[str, Any]]):
        self.package = package
        self.origins = list(origins)
        chain = "; ".join(f"{member} wants {source}" for member, source in self.origins)
        super().__init__(f"Conflicting sources for '{package}': {chain}")


class ResolutionTimeout(ResolutionError):
    """The solver exceeded its iteration ceiling."""

    def __init__(self, iterations: int, limit: int):
        self.iterations = iterations
        self.limit = limit
        super().__init__(f"Resolution aborted after {iterations} attempts (limit {limit})")


class ResolutionCancelled(ResolutionError):
    """The resolution was cancelled by its caller."""

    def __init__(self, iterations: int):
        self.iterations = iterations
        super().__init__(f"Resolution cancelled after {iterations} attempts")


class LockfileError(ResolutionError):
    """A lock artifact could not be read or written."""

    def __init__(self, path: Optional[str], reason: str):
        self.path = path
        self.reason = reason
        where = f" {path}" if path else ""
        super().__init__(f"Invalid lock file{where}: {reason}")


class StaleLockError(ResolutionError):
    """The lock artifact no longer matches the current requirements."""

    def __init__(self, locked_hash: str, current_hash: str):
        self.locked_hash = locked_hash
        self.current_hash = current_hash
        super().__init__(
            "Lock file is out of date with the project requirements "
            f"(locked {locked_hash[:12]}, current {current_hash[:12]}); re-run 'depsolve lock'"
        )


class WorkspaceError(ResolutionError):
    """A workspace manifest could not be read."""

    def __init__(self, path: Optional[str], reason: str):
        self.path = path
        self.reason = reason
        where = f"{path}: " if path else ""
        super().__init__(f"{where}{reason}")
