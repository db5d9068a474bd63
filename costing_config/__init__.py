"""
Costing configuration.

    from costing_config import load_costing_config
    config = load_costing_config("config/costing.yaml")
"""

from costing_config.loader import load_costing_config, parse_costing_config
from costing_config.schema import CostingConfig

__all__ = ["CostingConfig", "load_costing_config", "parse_costing_config"]
