"""
Feature quantization for the HELR-Verify system.

Continuous biometric measurements are replaced by the index of the first
quantization bin boundary they do not exceed. The resulting small codes index
the rows and columns of the per-feature HELR score tables.
"""

from typing import Optional, Sequence

import numpy as np
import structlog

from .constants import MAX_QUANTIZED_CODE
from .exceptions import MalformedInputError

logger = structlog.get_logger(__name__)


def quantize(value: float, bins: Optional[Sequence[float]]) -> int:
    """
    Quantize a single feature value.

    Parameters
    ----------
    value : float
        Raw feature value.
    bins : Sequence[float] or None
        Ascending bin boundaries. Unsorted bins are not detected.

    Returns
    -------
    int
        Smallest index ``i`` with ``value <= bins[i]``, or ``len(bins)`` when
        the value exceeds every boundary. Empty or missing bins give 0.

    Examples
    --------
    >>> quantize(0.5, [0.0, 1.0, 2.0])
    1
    >>> quantize(3.0, [0.0, 1.0, 2.0])
    3
    """
    if bins is None:
        return 0

    for index, boundary in enumerate(bins):
        if value <= boundary:
            return index
    return len(bins)


def quantize_vector(
    vector: Sequence[float], bins: Optional[Sequence[float]]
) -> np.ndarray:
    """
    Quantize every feature of a vector with the same bins.

    Parameters
    ----------
    vector : Sequence[float]
        Raw feature vector.
    bins : Sequence[float] or None
        Ascending bin boundaries shared by all features.

    Returns
    -------
    np.ndarray
        ``uint8`` codes, one per input feature.

    Raises
    ------
    MalformedInputError
        If there are more bins than a one-byte code can index.
    """
    bin_count = 0 if bins is None else len(bins)
    if bin_count > MAX_QUANTIZED_CODE:
        raise MalformedInputError(
            f"{bin_count} quantization bins do not fit one-byte codes",
            context={"bin_count": bin_count, "max_code": MAX_QUANTIZED_CODE},
        )

    codes = np.fromiter(
        (quantize(float(value), bins) for value in vector),
        dtype=np.uint8,
        count=len(vector),
    )
    logger.debug("Vector quantized", features=len(codes), bin_count=bin_count)
    return codes
