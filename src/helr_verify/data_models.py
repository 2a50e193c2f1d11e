"""
Data models for the HELR-Verify system.

This module defines the value types that flow through the encrypted matching
protocol: the immutable run-wide MatchConfiguration, the radix decomposition
parameters, compiled per-digit lookups and the per-template compilation
result, and the records returned to callers after a verification.

Configuration and compiled values are frozen dataclasses. They are built once
and shared read-only between concurrent authentications.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .constants import MAX_BLOCK_COUNT, MAX_BLOCK_LENGTH, MIN_BLOCK_LENGTH
from .exceptions import ConfigurationError, DomainViolationError


@dataclass(frozen=True)
class RadixDecomposition:
    """
    Fixed-radix digit decomposition parameters.

    Parameters
    ----------
    block_length : int
        Bits per digit. The radix is ``2 ** block_length``.
    block_count : int
        Number of little-endian digits per value.
    """

    block_length: int
    block_count: int

    def __post_init__(self) -> None:
        if not MIN_BLOCK_LENGTH <= self.block_length <= MAX_BLOCK_LENGTH:
            raise ConfigurationError(
                f"block_length must be in [{MIN_BLOCK_LENGTH}, {MAX_BLOCK_LENGTH}]",
                config_key="block_length",
                config_value=self.block_length,
            )
        if not 1 <= self.block_count <= MAX_BLOCK_COUNT:
            raise ConfigurationError(
                f"block_count must be in [1, {MAX_BLOCK_COUNT}]",
                config_key="block_count",
                config_value=self.block_count,
            )

    @property
    def radix(self) -> int:
        return 1 << self.block_length

    @property
    def capacity(self) -> int:
        """Number of distinct values representable with ``block_count`` digits."""
        return self.radix**self.block_count


@dataclass(frozen=True)
class MatchConfiguration:
    """
    Immutable run-wide matching policy.

    One value of this type is threaded through every entry point; nothing in
    the matching core reads process-wide settings.

    Parameters
    ----------
    dataset_name : str
        Name of the dataset whose classifier tables are used.
    block_length : int
        Bits per radix digit.
    block_count : int
        Digits emitted per feature by the score table compiler.
    sum_width : int
        Digit width every feature is aligned to before summation.
    number_of_features : int
        Number of biometric features (and score tables).
    threshold : int
        Source decision threshold, before offset adjustment.

    Examples
    --------
    >>> cfg = MatchConfiguration("BMDB2", 2, 6, 6, 36, 14)
    >>> cfg.radix
    4
    """

    dataset_name: str
    block_length: int
    block_count: int
    sum_width: int
    number_of_features: int
    threshold: int

    def __post_init__(self) -> None:
        if not self.dataset_name or not isinstance(self.dataset_name, str):
            raise ConfigurationError(
                "dataset_name must be a non-empty string",
                config_key="dataset_name",
                config_value=self.dataset_name,
            )

        # Validates block_length and block_count ranges
        RadixDecomposition(self.block_length, self.block_count)

        if self.sum_width < self.block_count:
            raise ConfigurationError(
                "sum_width must be at least block_count",
                config_key="sum_width",
                config_value=self.sum_width,
            )
        if self.number_of_features < 1:
            raise ConfigurationError(
                "number_of_features must be positive",
                config_key="number_of_features",
                config_value=self.number_of_features,
            )
        if self.threshold < 0:
            raise ConfigurationError(
                "threshold must be non-negative",
                config_key="threshold",
                config_value=self.threshold,
            )

    @property
    def radix(self) -> int:
        return 1 << self.block_length

    @property
    def decomposition(self) -> RadixDecomposition:
        return RadixDecomposition(self.block_length, self.block_count)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the configuration to a dictionary for serialization."""
        return {
            "dataset_name": self.dataset_name,
            "block_length": self.block_length,
            "block_count": self.block_count,
            "sum_width": self.sum_width,
            "number_of_features": self.number_of_features,
            "threshold": self.threshold,
        }


@dataclass(frozen=True)
class CompiledLookup:
    """
    One digit lookup of one feature for one fixed template code.

    The lookup references the feature's decomposed table, indexed
    ``[template_code][probe_code][block_index]``. All lookups of a feature
    share the same read-only array.

    Parameters
    ----------
    feature_index : int
        Index of the feature whose table this lookup reads.
    template_code : int
        Quantized template code fixing the table row.
    block_index : int
        Little-endian digit position returned by the lookup.
    table : np.ndarray
        Shared decomposed table of shape (template codes, probe codes, blocks).
    """

    feature_index: int
    template_code: int
    block_index: int
    table: np.ndarray = field(repr=False, compare=False)

    @property
    def domain_size(self) -> int:
        """Number of probe codes the underlying table covers."""
        return int(self.table.shape[1])

    def evaluate(self, probe_code: int, strict: bool = True) -> int:
        """
        Return the digit for ``probe_code``.

        Parameters
        ----------
        probe_code : int
            Quantized probe code.
        strict : bool, default=True
            Raise for codes outside the table. With ``strict=False`` such codes
            yield digit 0.

        Raises
        ------
        DomainViolationError
            If ``strict`` and the code is outside ``[0, domain_size)``.
        """
        if 0 <= probe_code < self.domain_size:
            return int(self.table[self.template_code, probe_code, self.block_index])

        if strict:
            raise DomainViolationError(
                f"Probe code {probe_code} outside lookup domain",
                feature_index=self.feature_index,
                code=probe_code,
                domain_size=self.domain_size,
            )
        return 0

    def tabulate(self, size: int) -> np.ndarray:
        """
        Tabulate the lookup over a plaintext domain of ``size`` codes.

        Codes the table does not cover map to 0; they are unreachable because
        probe codes are range-checked before encryption.
        """
        out = np.zeros(size, dtype=np.int64)
        row = self.table[self.template_code, :, self.block_index]
        covered = min(size, row.shape[0])
        out[:covered] = row[:covered]
        return out


@dataclass(frozen=True)
class CompiledTemplate:
    """
    Result of compiling the score tables for one template.

    Parameters
    ----------
    feature_lookups : tuple of tuple of CompiledLookup
        Ordered digit lookups per feature. Lengths may differ under early stop.
    threshold : int
        Decision threshold shifted into the offset (nonnegative) domain.
    total_offset : int
        Sum of the per-feature normalization offsets.
    sum_width : int
        Digit width all features are aligned to before summation.
    radix : int
        Radix of the digit decomposition.
    """

    feature_lookups: Tuple[Tuple[CompiledLookup, ...], ...]
    threshold: int
    total_offset: int
    sum_width: int
    radix: int

    @property
    def feature_count(self) -> int:
        return len(self.feature_lookups)

    @property
    def block_counts(self) -> Tuple[int, ...]:
        return tuple(len(lookups) for lookups in self.feature_lookups)

    @property
    def flat_length(self) -> int:
        return sum(self.block_counts)


class VerificationStatus(str, Enum):
    """Outcome of one verification request."""

    ACCEPT = "accept"
    REJECT = "reject"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthenticationTrace:
    """
    Decrypted intermediate values of one authentication.

    Only produced in debug mode, where the caller holds the secret key and
    explicitly asks for the intermediates.

    Parameters
    ----------
    feature_values : tuple of int
        Decrypted per-feature radix integers after zero extension, in feature order.
    total : int
        Decrypted homomorphic sum.
    """

    feature_values: Tuple[int, ...]
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {"feature_values": list(self.feature_values), "total": self.total}


@dataclass
class VerificationResult:
    """
    Caller-facing result of one verification.

    Parameters
    ----------
    verification_id : str
        Unique identifier of the verification request.
    status : VerificationStatus
        Accept, reject, or failed when the evaluation engine faulted.
    dataset_name : str
        Dataset of the MatchConfiguration used.
    strategy : str
        Name of the execution strategy used.
    elapsed_ms : float
        Wall-clock time of the encrypted evaluation in milliseconds.
    error_details : dict, optional
        Structured error information when ``status`` is FAILED.
    trace : AuthenticationTrace, optional
        Decrypted intermediates, debug mode only.
    timestamp : datetime
        Time the result was produced.
    """

    verification_id: str
    status: VerificationStatus
    dataset_name: str
    strategy: str
    elapsed_ms: float
    error_details: Optional[Dict[str, Any]] = None
    trace: Optional[AuthenticationTrace] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def accepted(self) -> bool:
        return self.status is VerificationStatus.ACCEPT

    @property
    def has_error(self) -> bool:
        return self.status is VerificationStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        """Convert the result to a dictionary for serialization."""
        return {
            "verification_id": self.verification_id,
            "status": self.status.value,
            "dataset_name": self.dataset_name,
            "strategy": self.strategy,
            "elapsed_ms": self.elapsed_ms,
            "error_details": self.error_details,
            "trace": self.trace.to_dict() if self.trace else None,
            "timestamp": self.timestamp.isoformat(),
            "accepted": self.accepted,
        }
