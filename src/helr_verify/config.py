"""
Configuration management for the HELR-Verify system.

This module loads command-line defaults from environment variables and .env
files. The matching core never reads these values: every entry point takes
an explicit MatchConfiguration, and the CLI is the only consumer of the
settings below.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .constants import DEFAULT_HOST_WORKERS, DEFAULT_PRESET_NAME, DEFAULT_STRATEGY_NAME

# Load environment variables from .env file if it exists
load_dotenv()

# =============================================================================
# Base Paths
# =============================================================================
BASE_DIR: Path = Path(__file__).resolve().parent.parent

# Project root directory (parent of src/)
PROJECT_ROOT: Path = BASE_DIR.parent

# =============================================================================
# Classifier Data Configuration
# =============================================================================
# Root holding <DATASET>.csv files and the lookupTables/ folder
DATA_PATH: Path = Path(os.getenv("HELR_DATA_PATH", str(PROJECT_ROOT / "data")))

# Default dataset preset for the CLI
DEFAULT_DATASET: str = os.getenv("HELR_DATASET", DEFAULT_PRESET_NAME).upper()

# =============================================================================
# Output Configuration
# =============================================================================
# Results output directory, created lazily by the result logger
RESULTS_PATH: Path = Path(
    os.getenv("HELR_RESULTS_PATH", str(PROJECT_ROOT / "results"))
)

# =============================================================================
# Logging Configuration
# =============================================================================
# Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# =============================================================================
# Execution Configuration
# =============================================================================
# Worker threads for host-side table evaluation
MAX_WORKERS: int = int(os.getenv("MAX_WORKERS", str(DEFAULT_HOST_WORKERS)))

# Default execution strategy for the CLI
DEFAULT_STRATEGY: str = os.getenv("HELR_STRATEGY", DEFAULT_STRATEGY_NAME).lower()

# Seed for the simulated engine's key and noise generation
ENGINE_SEED: Optional[int] = None
if seed_str := os.getenv("HELR_ENGINE_SEED"):
    ENGINE_SEED = int(seed_str)

# =============================================================================
# Development and Debugging Configuration
# =============================================================================
# Enable debug mode (decrypted intermediate values are logged)
DEBUG_MODE: bool = os.getenv("DEBUG_MODE", "false").lower() == "true"


# =============================================================================
# Configuration Validation
# =============================================================================
def validate_configuration() -> bool:
    """
    Validate the current configuration settings.

    Returns
    -------
    bool
        True if configuration is valid.

    Raises
    ------
    ValueError
        If critical configuration parameters are invalid.
    """
    errors = []

    if MAX_WORKERS < 1:
        errors.append("MAX_WORKERS must be at least 1")

    if ENGINE_SEED is not None and ENGINE_SEED < 0:
        errors.append("HELR_ENGINE_SEED cannot be negative")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if LOG_LEVEL not in valid_log_levels:
        errors.append(f"LOG_LEVEL must be one of {valid_log_levels}")

    if errors:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"- {error}" for error in errors)
        )

    return True


def get_config_summary() -> dict:
    """
    Get a summary of the current configuration.

    Returns
    -------
    dict
        Dictionary containing key configuration parameters.
    """
    return {
        "paths": {
            "data": str(DATA_PATH),
            "results": str(RESULTS_PATH),
        },
        "matching": {
            "dataset": DEFAULT_DATASET,
            "strategy": DEFAULT_STRATEGY,
        },
        "execution": {
            "max_workers": MAX_WORKERS,
            "engine_seed": ENGINE_SEED,
        },
        "logging": {
            "level": LOG_LEVEL,
            "debug_mode": DEBUG_MODE,
        },
    }
