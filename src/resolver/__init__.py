"""Constraint solving over a workspace requirement graph."""

from .provider import (
    Candidate,
    CachingProvider,
    ChainProvider,
    IndexSnapshotProvider,
    LocalPathProvider,
    MetadataProvider,
)
from .solver import SolveResult, Solver, SolverOptions, resolve, solve

__all__ = [
    "Candidate",
    "CachingProvider",
    "ChainProvider",
    "IndexSnapshotProvider",
    "LocalPathProvider",
    "MetadataProvider",
    "SolveResult",
    "Solver",
    "SolverOptions",
    "resolve",
    "solve",
]
