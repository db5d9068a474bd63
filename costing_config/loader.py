"""
Configuration Loader (``costing_config.loader``).

Loads the costing settings from a YAML file.  The settings may sit at the
top level of the file or under a ``costing:`` key, so they can share a file
with other application settings.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Document that is not a mapping  -> ``ConfigurationError``.
* Invalid or unknown settings  -> ``ConfigurationError``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from costing_config.schema import CostingConfig
from costing_kernel.exceptions import ConfigurationError
from costing_kernel.logging_config import get_logger

logger = get_logger("config.loader")

SECTION_KEY = "costing"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    An empty file yields an empty dict.
    """
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def parse_costing_config(data: dict[str, Any]) -> CostingConfig:
    """Build a CostingConfig from parsed YAML, honouring the optional section key."""
    if SECTION_KEY in data:
        section = data[SECTION_KEY]
        if section is None:
            section = {}
        if not isinstance(section, dict):
            raise ConfigurationError(SECTION_KEY, "must be a mapping")
        data = section
    return CostingConfig.from_dict(data)


def load_costing_config(path: Path | str | None = None) -> CostingConfig:
    """
    Load costing settings from ``path``; defaults when no path is given.
    """
    if path is None:
        return CostingConfig.with_defaults()

    path = Path(path)
    config = parse_costing_config(load_yaml_file(path))
    logger.info("costing_config_loaded", extra={"path": str(path)})
    return config
