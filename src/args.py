"""Argument parsing functionality for depsolve."""

import argparse

from constants import Constants


def _common_parser():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--project",
                        dest="PROJECT",
                        help="Workspace root holding pyproject.toml or requirements.txt (default: .)",
                        action="store", type=str,
                        default=".")
    common.add_argument("--index",
                        dest="INDEX",
                        help="Index snapshot file (YAML, JSON or TOML) used as the package index",
                        action="store", type=str)
    common.add_argument("--config",
                        dest="CONFIG",
                        help="Path to a depsolve YAML config file",
                        action="store", type=str)
    common.add_argument("--lockfile",
                        dest="LOCK_PATH",
                        help=f"Lock file to read or write (default: {Constants.LOCK_FILE})",
                        action="store", type=str)
    common.add_argument("--dev",
                        dest="DEV",
                        help="Include dev dependencies and use the dev lock file",
                        action="store_true")
    common.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str.upper,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'])
    common.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)
    return common


def build_parser():
    """Build the top-level parser with one subcommand per action."""
    common = _common_parser()
    parser = argparse.ArgumentParser(
        prog="depsolve",
        description="depsolve - resolve workspace requirements into a reproducible lock file",
        add_help=True,
    )
    commands = parser.add_subparsers(dest="COMMAND", metavar="COMMAND")
    commands.required = True

    lock = commands.add_parser("lock", parents=[common],
                               help="Resolve requirements and write the lock file")
    lock.add_argument("--update",
                      dest="UPDATE",
                      help="Ignore the locked version of this package (repeatable)",
                      action="append", type=str,
                      default=[])
    lock.add_argument("--update-all",
                      dest="UPDATE_ALL",
                      help="Ignore every locked version",
                      action="store_true")
    lock.add_argument("--pre",
                      dest="PRE",
                      help="Allow pre-release versions",
                      action="store_true")
    lock.add_argument("--features",
                      dest="FEATURES",
                      help="Optional dependency groups to include (repeatable or comma separated)",
                      action="append", type=str,
                      default=[])
    lock.add_argument("--all-features",
                      dest="ALL_FEATURES",
                      help="Include every optional dependency group",
                      action="store_true")

    commands.add_parser("check", parents=[common],
                        help="Fail when the lock file is stale or no longer satisfies the requirements")

    sync = commands.add_parser("sync", parents=[common],
                               help="Install exactly what the lock file pins")
    sync.add_argument("--dry-run",
                      dest="DRY_RUN",
                      help="Only print what would change",
                      action="store_true")
    sync.add_argument("--prune",
                      dest="PRUNE",
                      help="Uninstall packages that are not locked",
                      action="store_true")

    export = commands.add_parser("export", parents=[common],
                                 help=f"Write a pip-style {Constants.REQUIREMENTS_LOCK_FILE}")
    export.add_argument("-o", "--output",
                        dest="OUTPUT",
                        help="Output path, '-' for stdout (default: next to the lock file)",
                        action="store", type=str)
    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
