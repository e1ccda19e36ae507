"""depsolve - workspace dependency resolver and lock file manager.

    Returns:
        int: Exit code (see constants.ExitCodes)
"""
import logging
import os
import sys
from typing import List, Optional, Sequence, Tuple

from args import parse_args
from cli_config import Settings, build_settings
from common.logging_utils import Timer, configure_logging, extra_context, is_debug_enabled
from constants import Constants, ExitCodes
from lockfile import (
    LockArtifact,
    export_requirements,
    is_stale,
    load,
    preferred_versions,
    synthesize,
    verify_lock,
    write_lock,
)
from lockfile.artifact import write_text_atomic
from resolver import (
    CachingProvider,
    ChainProvider,
    IndexSnapshotProvider,
    LocalPathProvider,
    MetadataProvider,
    SolverOptions,
    resolve,
)
from sync import DryRunInstaller, sync
from sync.pip import PipInstaller
from versioning.errors import (
    LockfileError,
    ResolutionError,
    StaleLockError,
    UnsatisfiableConstraint,
    WorkspaceError,
)
from versioning.models import (
    DEFAULT_GROUP,
    DEV_GROUP,
    ConflictReport,
    DependencyGroup,
    normalize_name,
)
from workspace.graph import RequirementGraph, build_requirement_graph
from workspace.loader import Workspace, load_workspace

logger = logging.getLogger(__name__)


def format_conflict(report: ConflictReport) -> str:
    """Render a ConflictReport for the terminal."""
    return report.format()


def build_provider(settings: Settings, workspace: Workspace) -> MetadataProvider:
    """Local path projects first, then the index snapshot, behind a cache."""
    snapshot = (
        IndexSnapshotProvider.from_file(settings.index) if settings.index else IndexSnapshotProvider({})
    )
    chain = ChainProvider([LocalPathProvider(workspace.root), snapshot])
    return CachingProvider(chain, workers=settings.prefetch_workers)


def _selected_groups(args, workspace: Workspace) -> Tuple[DependencyGroup, ...]:
    groups: List[DependencyGroup] = [DEFAULT_GROUP]
    if getattr(args, "DEV", False):
        groups.append(DEV_GROUP)
    if getattr(args, "ALL_FEATURES", False):
        groups.extend(g for g in workspace.groups() if g.kind == DependencyGroup.OPTIONAL_KIND)
    for value in getattr(args, "FEATURES", None) or []:
        groups.extend(DependencyGroup.optional(part) for part in value.split(",") if part.strip())
    return tuple(dict.fromkeys(groups))


def _overrides(settings: Settings, workspace: Workspace):
    merged = dict(workspace.source_overrides)
    merged.update(settings.sources)
    return merged


def _current_graph(settings: Settings, workspace: Workspace, groups: Sequence[DependencyGroup]) -> RequirementGraph:
    return build_requirement_graph(workspace.members, groups, _overrides(settings, workspace))


def _existing_lock(path: str) -> Optional[LockArtifact]:
    if not os.path.isfile(path):
        return None
    try:
        return load(path)
    except LockfileError as exc:
        logger.warning("Ignoring unreadable lock file: %s", exc)
        return None


def cmd_lock(args, settings: Settings) -> int:
    """Resolve and write the lock file; nothing is written on failure."""
    workspace = load_workspace(settings.project)
    groups = _selected_groups(args, workspace)
    lock_path = settings.lock_file(getattr(args, "DEV", False))

    previous = _existing_lock(lock_path)
    options = SolverOptions(
        max_iterations=settings.max_iterations,
        allow_prereleases=settings.allow_prereleases,
        preferred_versions=preferred_versions(previous) if previous else {},
        upgrade=frozenset(normalize_name(n) for n in getattr(args, "UPDATE", None) or []),
        upgrade_all=getattr(args, "UPDATE_ALL", False),
        prefetch_workers=settings.prefetch_workers,
    )
    provider = build_provider(settings, workspace)
    try:
        with Timer() as timer:
            graph, result = resolve(
                workspace.members,
                provider,
                groups=groups,
                options=options,
                source_overrides=_overrides(settings, workspace),
            )
    finally:
        if isinstance(provider, CachingProvider):
            provider.close()

    if not result.ok:
        assert result.conflict is not None
        sys.stderr.write(format_conflict(result.conflict) + "\n")
        return ExitCodes.RESOLUTION_ERROR.value

    assert result.resolution is not None
    lock = synthesize(result.resolution, graph.requirements_hash(), graph.groups)
    write_lock(lock, lock_path)
    logging.info("Locked %d packages to %s in %d ms", len(lock), lock_path, timer.duration_ms())
    return ExitCodes.SUCCESS.value


def _load_for_check(args, settings: Settings) -> Tuple[LockArtifact, RequirementGraph]:
    workspace = load_workspace(settings.project)
    lock_path = settings.lock_file(getattr(args, "DEV", False))
    if not os.path.isfile(lock_path):
        raise LockfileError(lock_path, "not found; run 'depsolve lock' first")
    lock = load(lock_path)
    return lock, _current_graph(settings, workspace, lock.groups)


def cmd_check(args, settings: Settings) -> int:
    lock, graph = _load_for_check(args, settings)
    current = graph.requirements_hash()
    if is_stale(lock, current):
        logging.error(str(StaleLockError(lock.requirements_hash, current)))
        return ExitCodes.STALE_LOCK.value
    problems = verify_lock(lock, graph)
    if problems:
        for problem in problems:
            logging.error("Lock problem: %s", problem)
        return ExitCodes.STALE_LOCK.value
    logging.info("Lock file is up to date (%d packages).", len(lock))
    return ExitCodes.SUCCESS.value


def cmd_sync(args, settings: Settings) -> int:
    lock, graph = _load_for_check(args, settings)
    installer = DryRunInstaller() if getattr(args, "DRY_RUN", False) else PipInstaller(
        prune=getattr(args, "PRUNE", False)
    )
    if isinstance(installer, DryRunInstaller):
        installer.present.update(PipInstaller().installed())
    plan = sync(lock, graph.requirements_hash(), installer)
    if isinstance(installer, DryRunInstaller):
        for entry in plan.install:
            print(f"+ {entry.name}=={entry.version}")
        for entry in plan.upgrade:
            print(f"~ {entry.name}=={entry.version}")
        for name in plan.remove:
            print(f"- {name}")
    logging.info("Sync: %s", plan.summary())
    return ExitCodes.SUCCESS.value


def cmd_export(args, settings: Settings) -> int:
    lock_path = settings.lock_file(getattr(args, "DEV", False))
    lock = load(lock_path)
    text = export_requirements(lock)
    output = getattr(args, "OUTPUT", None) or os.path.join(
        os.path.dirname(lock_path) or ".",
        Constants.DEV_REQUIREMENTS_LOCK_FILE if getattr(args, "DEV", False) else Constants.REQUIREMENTS_LOCK_FILE,
    )
    if output == "-":
        sys.stdout.write(text)
    else:
        write_text_atomic(text, output)
        logging.info("Exported %d pins to %s", len(lock), output)
    return ExitCodes.SUCCESS.value


COMMANDS = {
    "lock": cmd_lock,
    "check": cmd_check,
    "sync": cmd_sync,
    "export": cmd_export,
}


def run(argv: Optional[Sequence[str]] = None) -> int:
    """Parse ``argv``, run the selected command and return its exit code."""
    args = parse_args(argv)
    configure_logging(getattr(args, "LOG_LEVEL", None), getattr(args, "LOG_FILE", None))

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND),
        )

    try:
        settings = build_settings(args)
    except ValueError as exc:
        logging.error("Configuration error: %s", exc)
        return ExitCodes.CONFIG_ERROR.value

    try:
        code = COMMANDS[args.COMMAND](args, settings)
    except UnsatisfiableConstraint as exc:
        if exc.package is None:
            logging.error("%s", exc)
        else:
            sys.stderr.write(format_conflict(exc.to_report()) + "\n")
        code = ExitCodes.RESOLUTION_ERROR.value
    except (WorkspaceError, LockfileError) as exc:
        logging.error("%s", exc)
        code = ExitCodes.FILE_ERROR.value
    except StaleLockError as exc:
        logging.error("%s", exc)
        code = ExitCodes.STALE_LOCK.value
    except ResolutionError as exc:
        logging.error("%s", exc)
        code = ExitCodes.RESOLUTION_ERROR.value
    except ValueError as exc:
        # unreadable index snapshot
        logging.error("%s", exc)
        code = ExitCodes.FILE_ERROR.value

    if is_debug_enabled(logger):
        logger.debug(
            "CLI finished",
            extra=extra_context(
                event="function_exit",
                component="cli",
                action=args.COMMAND,
                outcome="success" if code == ExitCodes.SUCCESS.value else "failure",
            ),
        )
    return code


def main():
    """Main function of the program."""
    sys.exit(run())


if __name__ == "__main__":
    main()
