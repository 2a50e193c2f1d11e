"""
Constants and fixed parameters for the HELR-Verify system.

This module centralizes the fixed naming conventions of the classifier table
storage and the numeric limits of the encrypted matching protocol. Tunable
policy (radix, digit counts, thresholds) lives in MatchConfiguration presets,
not here.
"""

from typing import Final

# =============================================================================
# Classifier Table Storage Layout
# =============================================================================

# File name prefix of the per-feature HELR score tables (HELR0.csv, HELR1.csv, ...)
TABLE_PREFIX: Final[str] = "HELR"

# Suffix of the quantization bins file ("<dataset>_qbins.csv")
QBIN_SUFFIX: Final[str] = "_qbins"

# Sub-folder of the data root holding per-dataset lookup tables
LOOKUP_TABLES_FOLDER: Final[str] = "lookupTables"

# Extension of every table, bins and dataset file
TABLE_FILE_EXTENSION: Final[str] = ".csv"

# =============================================================================
# Quantization
# =============================================================================

# Quantized codes are stored in one byte
MAX_QUANTIZED_CODE: Final[int] = 255

# =============================================================================
# Radix Decomposition Limits
# =============================================================================

# Supported bits per digit. The plaintext space of one ciphertext holds
# message and carry bits, so 2 * block_length bits must stay small.
MIN_BLOCK_LENGTH: Final[int] = 1
MAX_BLOCK_LENGTH: Final[int] = 4

# Upper bound on digits per radix integer
MAX_BLOCK_COUNT: Final[int] = 16

# =============================================================================
# Simulated Engine Defaults
# =============================================================================

# LWE ciphertext modulus (fits in int64 arithmetic)
CIPHERTEXT_MODULUS: Final[int] = 2**32

# Grouping factor used by multi-bit bootstrapping parameter sets
MULTI_BIT_GROUPING_FACTOR: Final[int] = 3

# Security estimate below which a parameter set is reported as reduced assurance
MIN_SECURITY_BITS: Final[int] = 128

# =============================================================================
# Execution Defaults
# =============================================================================

# Default number of host worker threads for table evaluation
DEFAULT_HOST_WORKERS: Final[int] = 4

# Default preset and strategy names used by the CLI
DEFAULT_PRESET_NAME: Final[str] = "BMDB"
DEFAULT_STRATEGY_NAME: Final[str] = "classic_cpu"

# =============================================================================
# Output Files
# =============================================================================

DEFAULT_BENCHMARK_FILE: Final[str] = "strategy_benchmarks"
