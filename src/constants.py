"""Constants used in the project."""

import logging
import os
from enum import Enum
from typing import Any, Dict, Optional


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    RESOLUTION_ERROR = 2
    STALE_LOCK = 3
    CONFIG_ERROR = 4


class DefaultResolver(Enum):
    """Default resolver tunables.

    Args:
        Enum (int): Default resolver tunables.
    """

    MAX_ITERATIONS = 100000
    PREFETCH_WORKERS = 0


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    PYPROJECT_TOML_FILE = "pyproject.toml"
    REQUIREMENTS_FILE = "requirements.txt"
    LOCK_FILE = "depsolve.lock"
    DEV_LOCK_FILE = "depsolve-dev.lock"
    REQUIREMENTS_LOCK_FILE = "requirements.lock"
    DEV_REQUIREMENTS_LOCK_FILE = "requirements-dev.lock"
    LOCK_FORMAT_VERSION = 1
    DEFAULT_INDEX = "default"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    ENV_LOG_LEVEL = "DEPSOLVE_LOG_LEVEL"
    ENV_CONFIG = "DEPSOLVE_CONFIG"
    CONFIG_FILES = ("depsolve.yml", "depsolve.yaml")
    USER_CONFIG_FILE = os.path.join("~", ".config", "depsolve", "depsolve.yml")


def _config_candidates() -> list:
    """Return config file locations in lookup order."""
    paths = []
    env_path = os.environ.get(Constants.ENV_CONFIG)
    if env_path and env_path.strip():
        paths.append(env_path.strip())
    paths.extend(Constants.CONFIG_FILES)
    paths.append(os.path.expanduser(Constants.USER_CONFIG_FILE))
    return paths


def _load_yaml_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the YAML configuration.

    An explicit ``path`` must exist; otherwise the first default location that
    exists is used. Returns an empty dict when no config file is present.

    Raises:
        ValueError: If the file is not valid YAML or is not a mapping.
    """
    import yaml  # pylint: disable=import-outside-toplevel

    logger = logging.getLogger(__name__)
    candidates = [path] if path else _config_candidates()
    for candidate in candidates:
        if not path and not os.path.isfile(candidate):
            continue
        try:
            with open(candidate, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {candidate}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Config {candidate} must be a mapping, got {type(data).__name__}")
        logger.debug("Loaded configuration from %s", candidate)
        return data
    return {}
