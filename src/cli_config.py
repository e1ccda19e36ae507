"""CLI settings: built-in defaults, overlaid by YAML config, overlaid by CLI flags.

Extracted from depsolve.py to keep the entrypoint slim.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from constants import Constants, DefaultResolver, _load_yaml_config
from versioning.models import PackageName, PathSource, Source, normalize_name, source_from_dict

logger = logging.getLogger(__name__)


@dataclass
class Settings:  # pylint: disable=too-many-instance-attributes
    """Effective runtime settings for one CLI invocation."""

    project: str = "."
    index: Optional[str] = None
    lock_path: str = Constants.LOCK_FILE
    dev_lock_path: str = Constants.DEV_LOCK_FILE
    max_iterations: int = DefaultResolver.MAX_ITERATIONS.value
    allow_prereleases: bool = False
    prefetch_workers: int = DefaultResolver.PREFETCH_WORKERS.value
    sources: Dict[PackageName, Source] = field(default_factory=dict)

    def lock_file(self, dev: bool = False) -> str:
        return self.dev_lock_path if dev else self.lock_path


def _in_project(project: str, path: str) -> str:
    expanded = os.path.expanduser(path)
    if os.path.isabs(expanded):
        return expanded
    return os.path.join(project, expanded)


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name) or {}
    if not isinstance(value, Mapping):
        raise ValueError(f"config section '{name}' must be a mapping")
    return value


def _int_setting(section: Mapping[str, Any], key: str, default: int, minimum: int) -> int:
    if key not in section:
        return default
    value = section[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValueError(f"resolver.{key} must be an integer >= {minimum}, got {value!r}")
    return value


def _config_sources(config: Mapping[str, Any], project: str) -> Dict[PackageName, Source]:
    sources: Dict[PackageName, Source] = {}
    for name, raw in _section(config, "sources").items():
        source = source_from_dict(raw)
        if isinstance(source, PathSource):
            # path sources are workspace relative
            source = PathSource(os.path.relpath(_in_project(project, source.path), project))
        sources[normalize_name(name)] = source
    return sources


def build_settings(args) -> Settings:
    """Merge CLI flags over the YAML config over built-in defaults.

    Raises:
        ValueError: If the config file is missing, malformed or holds
            invalid values.
    """
    config_path = getattr(args, "CONFIG", None)
    try:
        config = _load_yaml_config(config_path)
    except OSError as exc:
        raise ValueError(f"Cannot read config {config_path}: {exc}") from exc

    project = getattr(args, "PROJECT", None) or "."
    resolver = _section(config, "resolver")
    lock = _section(config, "lock")

    index = config.get("index")
    if isinstance(index, Mapping):
        index = index.get("snapshot")
    if index is not None and not isinstance(index, str):
        raise ValueError("index must be a snapshot path")

    allow_pre = resolver.get("allow_prereleases", False)
    if not isinstance(allow_pre, bool):
        raise ValueError("resolver.allow_prereleases must be true or false")

    settings = Settings(
        project=project,
        index=_in_project(project, index) if index else None,
        lock_path=_in_project(project, str(lock.get("path") or Constants.LOCK_FILE)),
        dev_lock_path=_in_project(project, str(lock.get("dev_path") or Constants.DEV_LOCK_FILE)),
        max_iterations=_int_setting(resolver, "max_iterations", DefaultResolver.MAX_ITERATIONS.value, 1),
        allow_prereleases=allow_pre,
        prefetch_workers=_int_setting(resolver, "prefetch_workers", DefaultResolver.PREFETCH_WORKERS.value, 0),
        sources=_config_sources(config, project),
    )

    # CLI flags have the highest precedence
    if getattr(args, "INDEX", None):
        settings.index = args.INDEX
    if getattr(args, "LOCK_PATH", None):
        if getattr(args, "DEV", False):
            settings.dev_lock_path = args.LOCK_PATH
        else:
            settings.lock_path = args.LOCK_PATH
    if getattr(args, "PRE", False):
        settings.allow_prereleases = True

    logger.debug("Effective settings: %s", settings)
    return settings
