"""
costing_config.schema
=====================

Responsibility:
    Configuration schema for the costing core: recalculation time budget,
    default audit reason tag, warning formatting precision, and the locking
    and replay switches.

Architecture:
    Config layer.  Consumed by the services in costing_services and by the
    operator CLI.  MUST NOT be imported by costing_kernel.

Invariants enforced:
    - ``recalculation_timeout_seconds`` is positive.
    - ``money_decimal_places`` is between 0 and 9 (storage precision).
    - ``default_change_reason`` is a non-empty tag of at most 50 characters.

Failure modes:
    - Invalid values -> ``ConfigurationError`` from ``__post_init__``.
    - Unknown keys in ``from_dict`` -> ``ConfigurationError``.
"""

from dataclasses import dataclass, fields
from typing import Any, Self

from costing_kernel.db.types import STORAGE_DECIMAL_PLACES
from costing_kernel.exceptions import ConfigurationError
from costing_kernel.logging_config import get_logger
from costing_kernel.models.cost_audit_log import CostChangeReason

logger = get_logger("config.costing")


@dataclass(frozen=True)
class CostingConfig:
    """
    Settings for the FIFO costing services.

    Example::

        config = CostingConfig(recalculation_timeout_seconds=60)
        RecalculationService(session, config=config)
    """

    # Wall-clock budget for one product's recalculation
    recalculation_timeout_seconds: float = 30.0

    default_change_reason: str = CostChangeReason.RECALCULATION

    # Precision used when quoting quantities and costs in warnings
    money_decimal_places: int = 2

    # SELECT ... FOR UPDATE on the product row before lot mutation
    lock_product_rows: bool = True

    # Replay debit-note lines during recalculation (strict; shortfall aborts)
    replay_debit_notes: bool = True

    def __post_init__(self):
        if isinstance(self.recalculation_timeout_seconds, bool) or not isinstance(
            self.recalculation_timeout_seconds, (int, float)
        ):
            raise ConfigurationError("recalculation_timeout_seconds", "must be a number")
        if self.recalculation_timeout_seconds <= 0:
            raise ConfigurationError("recalculation_timeout_seconds", "must be positive")

        if isinstance(self.money_decimal_places, bool) or not isinstance(
            self.money_decimal_places, int
        ):
            raise ConfigurationError("money_decimal_places", "must be an integer")
        if not 0 <= self.money_decimal_places <= STORAGE_DECIMAL_PLACES:
            raise ConfigurationError(
                "money_decimal_places",
                f"must be between 0 and {STORAGE_DECIMAL_PLACES}",
            )

        if not isinstance(self.default_change_reason, str) or not self.default_change_reason.strip():
            raise ConfigurationError("default_change_reason", "must be a non-empty string")
        if len(self.default_change_reason) > 50:
            raise ConfigurationError("default_change_reason", "must be at most 50 characters")

        for flag in ("lock_product_rows", "replay_debit_notes"):
            if not isinstance(getattr(self, flag), bool):
                raise ConfigurationError(flag, "must be true or false")

        logger.info(
            "costing_config_initialized",
            extra={
                "recalculation_timeout_seconds": self.recalculation_timeout_seconds,
                "money_decimal_places": self.money_decimal_places,
                "lock_product_rows": self.lock_product_rows,
                "replay_debit_notes": self.replay_debit_notes,
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with the built-in defaults."""
        logger.info("costing_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create config from a dictionary (e.g., parsed YAML)."""
        logger.info(
            "costing_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        known = {f.name for f in fields(cls)}
        for key in data:
            if key not in known:
                raise ConfigurationError(key, "unknown setting")
        return cls(**data)
