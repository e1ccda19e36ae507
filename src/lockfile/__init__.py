"""Lock artifact synthesis, serialization and checks."""

from .artifact import LockArtifact, LockEntry, dumps, load, loads, synthesize, write_lock
from .checks import export_requirements, is_stale, preferred_versions, verify_lock

__all__ = [
    "LockArtifact",
    "LockEntry",
    "dumps",
    "export_requirements",
    "is_stale",
    "load",
    "loads",
    "preferred_versions",
    "synthesize",
    "verify_lock",
    "write_lock",
]
