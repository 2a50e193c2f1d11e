"""
Score table compilation for the HELR-Verify system.

A HELR score table holds the signed log-likelihood-ratio contribution of a
(template code, probe code) pair for one feature. Homomorphic table
evaluation only works on small unsigned domains, so each table is

1. shifted by a per-feature offset to become nonnegative,
2. split into little-endian base ``2 ** block_length`` digits, and
3. exposed as one CompiledLookup per digit, with the template code fixed.

The template code selects a table row in the clear; the probe code stays
encrypted and is the only input of each lookup.
"""

from typing import List, Sequence, Tuple

import numpy as np
import structlog

from .data_models import (
    CompiledLookup,
    CompiledTemplate,
    MatchConfiguration,
    RadixDecomposition,
)
from .exceptions import DomainViolationError, MalformedInputError
from .utils import timer

logger = structlog.get_logger(__name__)


def _as_table(table, feature_index: int = 0) -> np.ndarray:
    """Convert a nested sequence into a 2-D int64 array, rejecting ragged or non-integer tables."""
    if isinstance(table, np.ndarray):
        array = table
    else:
        rows = [list(row) for row in table]
        if not rows or len({len(row) for row in rows}) != 1 or not rows[0]:
            raise MalformedInputError(
                "Score table must be a non-empty table with uniform row length",
                context={"feature_index": feature_index},
            )
        array = np.array(rows)

    if array.ndim != 2 or array.size == 0:
        raise MalformedInputError(
            f"Score table must be 2-D, got shape {array.shape}",
            context={"feature_index": feature_index},
        )
    if not np.issubdtype(array.dtype, np.integer):
        raise MalformedInputError(
            f"Score table entries must be integers, got dtype {array.dtype}",
            context={"feature_index": feature_index},
        )
    return array.astype(np.int64)


def normalize_table(table) -> Tuple[np.ndarray, int]:
    """
    Shift a signed score table into the nonnegative domain.

    The offset is ``abs(table[0][-1])``. The offline table generator places
    the most negative score in that cell; this is trusted, not checked, so a
    table violating the convention keeps negative entries after the shift.

    Parameters
    ----------
    table : array-like
        Signed 2-D table indexed ``[template_code][probe_code]``.

    Returns
    -------
    Tuple[np.ndarray, int]
        The shifted table and the offset applied.

    Examples
    --------
    >>> normalized, offset = normalize_table([[3, -4], [-4, 3]])
    >>> offset, normalized.tolist()
    (4, [[7, 0], [0, 7]])
    """
    array = _as_table(table)
    offset = abs(int(array[0, -1]))
    return array + offset, offset


def normalize_tables(tables: Sequence) -> Tuple[List[np.ndarray], int]:
    """
    Normalize every feature's table.

    Returns
    -------
    Tuple[List[np.ndarray], int]
        Shifted tables in feature order and the total offset.
    """
    normalized = []
    total_offset = 0
    for feature_index, table in enumerate(tables):
        shifted, offset = normalize_table(_as_table(table, feature_index))
        normalized.append(shifted)
        total_offset += offset
    return normalized, total_offset


def decompose_value(value: int, decomposition: RadixDecomposition) -> Tuple[int, ...]:
    """
    Split ``value`` into ``block_count`` little-endian digits.

    Digits beyond ``block_count`` are dropped, so the result represents
    ``value`` modulo ``radix ** block_count``.
    """
    radix = decomposition.radix
    digits = []
    remaining = int(value)
    for _ in range(decomposition.block_count):
        digits.append(remaining % radix)
        remaining //= radix
    return tuple(digits)


def recompose_digits(digits: Sequence[int], radix: int) -> int:
    """Inverse of :func:`decompose_value` for little-endian digits."""
    return sum(int(digit) * radix**position for position, digit in enumerate(digits))


def decompose_table(
    normalized: np.ndarray, block_length: int, block_count: int
) -> np.ndarray:
    """
    Decompose every entry of a normalized table into radix digits.

    Parameters
    ----------
    normalized : np.ndarray
        Nonnegative 2-D table.
    block_length : int
        Bits per digit.
    block_count : int
        Digits per entry.

    Returns
    -------
    np.ndarray
        Read-only array indexed ``[template_code][probe_code][block_index]``.
    """
    radix = 1 << block_length
    remaining = np.asarray(normalized, dtype=np.int64).copy()
    blocks = np.empty(remaining.shape + (block_count,), dtype=np.int64)

    for block_index in range(block_count):
        blocks[..., block_index] = remaining % radix
        remaining //= radix

    blocks.setflags(write=False)
    return blocks


def early_stop_block_count(
    normalized: np.ndarray, decomposition: RadixDecomposition
) -> int:
    """
    Number of digit lookups needed for a feature.

    Digits are emitted from block 0 upward until the table maximum, shifted
    right by ``block_index * block_length`` bits, reaches zero. The maximum is
    read from cell ``[0][0]``; this is only sound when that cell holds the
    largest normalized score.
    """
    max_value = int(normalized[0, 0])
    count = 0
    for block_index in range(decomposition.block_count):
        if max_value >> (block_index * decomposition.block_length) == 0:
            break
        count += 1
    return count


def check_sum_capacity(
    normalized_tables: Sequence[np.ndarray], radix: int, sum_width: int
) -> bool:
    """
    Check that the largest possible total fits ``sum_width`` digits.

    Returns
    -------
    bool
        True if no feature combination can wrap the radix sum.
    """
    max_total = sum(int(np.max(table)) for table in normalized_tables)
    capacity = radix**sum_width
    fits = max_total < capacity
    if not fits:
        logger.warning(
            "Largest possible score exceeds radix sum capacity; totals may wrap",
            max_total=max_total,
            capacity=capacity,
            sum_width=sum_width,
        )
    return fits


def compile_lookups(
    template: Sequence[int],
    decomposed_tables: Sequence[np.ndarray],
    decomposition: RadixDecomposition,
    block_counts: Sequence[int] = None,
) -> Tuple[Tuple[CompiledLookup, ...], ...]:
    """
    Build the per-feature digit lookups for one template.

    Parameters
    ----------
    template : Sequence[int]
        Quantized template codes, one per feature.
    decomposed_tables : Sequence[np.ndarray]
        Output of :func:`decompose_table` per feature.
    decomposition : RadixDecomposition
        Digit parameters.
    block_counts : Sequence[int], optional
        Digits to emit per feature. Defaults to ``block_count`` for every feature.

    Returns
    -------
    tuple of tuple of CompiledLookup
        Ordered lookups per feature, block 0 first.

    Raises
    ------
    MalformedInputError
        If the template length differs from the number of tables.
    DomainViolationError
        If a template code has no row in its feature's table.
    """
    if len(template) != len(decomposed_tables):
        raise MalformedInputError(
            "Template length does not match number of score tables",
            context={
                "template_length": len(template),
                "table_count": len(decomposed_tables),
            },
        )
    if block_counts is None:
        block_counts = [decomposition.block_count] * len(decomposed_tables)

    feature_lookups = []
    for feature_index, (code, table) in enumerate(zip(template, decomposed_tables)):
        template_code = int(code)
        if not 0 <= template_code < table.shape[0]:
            raise DomainViolationError(
                f"Template code {template_code} outside score table rows",
                feature_index=feature_index,
                code=template_code,
                domain_size=int(table.shape[0]),
            )
        feature_lookups.append(
            tuple(
                CompiledLookup(feature_index, template_code, block_index, table)
                for block_index in range(block_counts[feature_index])
            )
        )
    return tuple(feature_lookups)


class ScoreTableCompiler:
    """
    Compiles HELR score tables into per-template digit lookups.

    Normalization and decomposition do not depend on the template, so they
    run once here; :meth:`compile` only binds template codes.

    Parameters
    ----------
    configuration : MatchConfiguration
        Radix parameters, sum width and source threshold.
    score_tables : Sequence
        Signed score tables in feature order.

    Examples
    --------
    >>> compiler = ScoreTableCompiler(BMDB2, tables)
    >>> compiled = compiler.compile(template_codes, early_stop=True)
    >>> compiled.threshold == BMDB2.threshold + compiler.total_offset
    True
    """

    def __init__(self, configuration: MatchConfiguration, score_tables: Sequence) -> None:
        if len(score_tables) != configuration.number_of_features:
            raise MalformedInputError(
                "Number of score tables does not match configuration",
                context={
                    "table_count": len(score_tables),
                    "number_of_features": configuration.number_of_features,
                    "dataset_name": configuration.dataset_name,
                },
            )

        self.configuration = configuration
        self.decomposition = configuration.decomposition
        self.normalized_tables, self.total_offset = normalize_tables(score_tables)
        self.decomposed_tables = [
            decompose_table(table, configuration.block_length, configuration.block_count)
            for table in self.normalized_tables
        ]
        self.early_stop_counts = [
            early_stop_block_count(table, self.decomposition)
            for table in self.normalized_tables
        ]
        self.fits_sum_width = check_sum_capacity(
            self.normalized_tables, configuration.radix, configuration.sum_width
        )

        logger.info(
            "ScoreTableCompiler initialized",
            dataset_name=configuration.dataset_name,
            features=len(self.normalized_tables),
            total_offset=self.total_offset,
            early_stop_digits=sum(self.early_stop_counts),
        )

    @property
    def threshold(self) -> int:
        """Source threshold shifted into the offset domain."""
        return self.configuration.threshold + self.total_offset

    @timer
    def compile(self, template: Sequence[int], early_stop: bool = False) -> CompiledTemplate:
        """
        Compile the lookups for one template.

        Parameters
        ----------
        template : Sequence[int]
            Quantized template codes.
        early_stop : bool, default=False
            Emit only the digits that can be nonzero for each feature instead
            of the full ``block_count``.

        Returns
        -------
        CompiledTemplate
            Lookups, offset-adjusted threshold and sum width.
        """
        block_counts = self.early_stop_counts if early_stop else None
        feature_lookups = compile_lookups(
            template, self.decomposed_tables, self.decomposition, block_counts
        )

        compiled = CompiledTemplate(
            feature_lookups=feature_lookups,
            threshold=self.threshold,
            total_offset=self.total_offset,
            sum_width=self.configuration.sum_width,
            radix=self.configuration.radix,
        )
        logger.debug(
            "Template compiled",
            early_stop=early_stop,
            flat_length=compiled.flat_length,
        )
        return compiled

    def cleartext_score(self, template: Sequence[int], probe: Sequence[int]) -> int:
        """
        Offset-domain score computed without encryption.

        Reference value for the encrypted total: the sum of the normalized
        table entries, i.e. the signed score plus the total offset.
        """
        return sum(
            int(table[int(t), int(p)])
            for table, t, p in zip(self.normalized_tables, template, probe)
        )
