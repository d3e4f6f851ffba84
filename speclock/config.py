"""speclock Configuration — project-level .speclockrc.yml support.

Loads configuration from .speclockrc.yml (or .speclockrc.yaml,
.speclockrc.json, speclock.config.yml) found by walking up from the
working directory. Command-line options override file values.

Example .speclockrc.yml:
    spec: docs/SPEC.md          # specification document for titles/drift
    timeout_ms: 5000            # per-clause solver budget
    run_timeout: 300            # whole-run budget in seconds (0 = none)
    workers: 0                  # 0 = auto
    fail_fast: false
    strict: false               # unlinked functions are errors
    solver: true
    require_solver: false       # missing z3 is fatal
    format: human
    exclude:
      - "tests/**"
    constants:
      COIN: 100000000
    cache_dir: .speclock-cache
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from speclock.errors import EnvironmentFailure

logger = logging.getLogger(__name__)


@dataclass
class SpecLockConfig:
    """Project-level speclock configuration."""
    # Specification document
    spec: str = ""
    # Budgets
    timeout_ms: int = 5000
    run_timeout: float = 0.0  # seconds, 0 = unlimited
    workers: int = 0  # 0 = auto
    # Behaviour
    fail_fast: bool = False
    strict: bool = False
    solver: bool = True
    require_solver: bool = False
    # Output
    format: str = "human"  # "human", "json", "junit", "markdown"
    # File patterns
    exclude: List[str] = field(default_factory=list)
    # Extra named constants visible to clauses and bodies
    constants: Dict[str, int] = field(default_factory=dict)
    cache_dir: str = ".speclock-cache"
    # Where the config was loaded from, if anywhere
    path: Optional[str] = None


# ---------------------------------------------------------------------------
# Config file names (in priority order)
# ---------------------------------------------------------------------------

_CONFIG_FILES = [
    ".speclockrc.yml",
    ".speclockrc.yaml",
    ".speclockrc.json",
    "speclock.config.yml",
]

_FORMATS = ("human", "json", "junit", "markdown")


def find_config(start_dir: str = ".") -> Optional[str]:
    """Find the nearest config file by walking up from start_dir."""
    current = os.path.abspath(start_dir)
    while True:
        for name in _CONFIG_FILES:
            path = os.path.join(current, name)
            if os.path.isfile(path):
                return path
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return None


def load_config(path: Optional[str] = None, start_dir: str = ".") -> SpecLockConfig:
    """Load configuration from a file.

    If no path is given, searches for a config file starting from
    start_dir; if none is found, returns defaults. An explicitly given
    path that cannot be read or parsed is an EnvironmentFailure; a
    discovered one that is broken is logged and ignored.
    """
    explicit = path is not None
    if path is None:
        path = find_config(start_dir)

    if path is None:
        return SpecLockConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
        if path.endswith(".json"):
            data = json.loads(content)
        else:
            data = yaml.safe_load(content) or {}
        if not isinstance(data, dict):
            raise ValueError("top level must be a mapping")
        config = _dict_to_config(data)
    except (OSError, ValueError, yaml.YAMLError) as e:
        if explicit:
            raise EnvironmentFailure(f"cannot load config {path}: {e}") from e
        logger.warning("ignoring config %s: %s", path, e)
        return SpecLockConfig()

    config.path = path
    base = os.path.dirname(os.path.abspath(path))
    if config.spec and not os.path.isabs(config.spec):
        config.spec = os.path.join(base, config.spec)
    if config.cache_dir and not os.path.isabs(config.cache_dir):
        config.cache_dir = os.path.join(base, config.cache_dir)
    logger.debug("loaded config from %s", path)
    return config


def _dict_to_config(data: Dict[str, Any]) -> SpecLockConfig:
    """Convert a parsed dict to SpecLockConfig."""
    config = SpecLockConfig()

    if "spec" in data and data["spec"]:
        config.spec = str(data["spec"])
    if "timeout_ms" in data:
        config.timeout_ms = int(data["timeout_ms"])
        if config.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
    if "run_timeout" in data:
        config.run_timeout = float(data["run_timeout"] or 0)
    if "workers" in data:
        config.workers = int(data["workers"])
    for key in ("fail_fast", "strict", "solver", "require_solver"):
        if key in data:
            setattr(config, key, bool(data[key]))
    if "format" in data:
        config.format = str(data["format"])
        if config.format not in _FORMATS:
            raise ValueError(f"unknown format '{config.format}'")
    if "exclude" in data and isinstance(data["exclude"], list):
        config.exclude = [str(p) for p in data["exclude"]]
    if "constants" in data and isinstance(data["constants"], dict):
        for name, value in data["constants"].items():
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"constant {name} must be an integer")
            config.constants[str(name)] = value
    if "cache_dir" in data and data["cache_dir"]:
        config.cache_dir = str(data["cache_dir"])

    return config
