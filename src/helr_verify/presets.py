"""
Named MatchConfiguration presets.

Each dataset trades radix size against digit count: three-bit digits need
fewer table evaluations per feature, two-bit digits allow smaller (faster)
bootstrapping parameters at the cost of more digits.
"""

from types import MappingProxyType
from typing import List, Mapping

import structlog

from .data_models import MatchConfiguration
from .exceptions import ConfigurationError

logger = structlog.get_logger(__name__)

PUT = MatchConfiguration(
    dataset_name="PUT",
    block_length=3,
    block_count=4,
    sum_width=4,
    number_of_features=49,
    threshold=14,
)

BMDB = MatchConfiguration(
    dataset_name="BMDB",
    block_length=3,
    block_count=4,
    sum_width=4,
    number_of_features=36,
    threshold=14,
)

BMDB2 = MatchConfiguration(
    dataset_name="BMDB2",
    block_length=2,
    block_count=6,
    sum_width=6,
    number_of_features=36,
    threshold=14,
)

FRGC = MatchConfiguration(
    dataset_name="FRGC",
    block_length=3,
    block_count=4,
    sum_width=4,
    number_of_features=94,
    threshold=14,
)

PRESETS: Mapping[str, MatchConfiguration] = MappingProxyType(
    {preset.dataset_name: preset for preset in (PUT, BMDB, BMDB2, FRGC)}
)


def get_preset(name: str) -> MatchConfiguration:
    """
    Look up a preset by dataset name (case-insensitive).

    Raises
    ------
    ConfigurationError
        If no preset has that name.
    """
    preset = PRESETS.get(name.upper())
    if preset is None:
        raise ConfigurationError(
            f"Unknown preset '{name}'. Available: {list_presets()}",
            config_key="preset",
            config_value=name,
        )
    logger.debug("Preset selected", **preset.to_dict())
    return preset


def list_presets() -> List[str]:
    return sorted(PRESETS)
