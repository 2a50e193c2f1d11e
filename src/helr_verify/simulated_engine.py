"""
Simulated LWE evaluation engine for the HELR-Verify system.

This module provides a numpy implementation of the EvaluationEngine
interface. Encryption, decryption and homomorphic addition are real LWE
operations over ``q = 2 ** 32`` with binary secret keys, Gaussian noise and
a padding bit. Key switching and programmable bootstrapping are simulated:
the engine decodes the phase with the source key and re-encrypts the
(optionally table-mapped) message under the target key, which reproduces
their input/output behaviour and noise reset without the cost of a real
blind rotation.

The implementation simulates a TFHE-style shortint engine suitable for
research purposes. It is NOT secure: a simulated bootstrap needs the secret
key it is supposed to hide.

For production, implement EvaluationEngine over a real TFHE library such as
concrete-python (``from concrete import fhe``): ``evaluate_lookup`` maps to an
``fhe.LookupTable`` applied to an encrypted input, and key switching and
bootstrapping then happen inside the compiled circuit.
"""

import threading
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from .constants import CIPHERTEXT_MODULUS, MIN_SECURITY_BITS, MULTI_BIT_GROUPING_FACTOR
from .data_models import CompiledLookup
from .engine import EvaluationEngine, LookupPrimitive, Placement, RadixCiphertext
from .exceptions import ConfigurationError, EngineFailureError

logger = structlog.get_logger(__name__)

# Inputs, table outputs and radix arithmetic live under the large key;
# key switching moves ciphertexts to the small bootstrapping key.
LARGE_KEY = "large"
SMALL_KEY = "small"


@dataclass(frozen=True)
class ParameterSet:
    """
    Cryptographic parameters of the simulated engine.

    Parameters
    ----------
    name : str
        Parameter set identifier.
    primitive : LookupPrimitive
        Bootstrapping flavour the set is tuned for.
    message_bits : int
        Bits of message per block; the radix is ``2 ** message_bits``.
    carry_bits : int
        Bits of carry space per block.
    lwe_dimension : int
        Dimension of the small (key-switched) LWE key.
    polynomial_size : int
        GLWE polynomial size; with GLWE dimension 1 this is the large key's
        LWE dimension.
    lwe_noise_std : float
        Noise standard deviation under the small key, as a fraction of q.
    glwe_noise_std : float
        Noise standard deviation under the large key, as a fraction of q.
    grouping_factor : int, default=1
        Multi-bit grouping factor, 1 for classic bootstrapping.
    security_bits : int, default=128
        Estimated security level.
    """

    name: str
    primitive: LookupPrimitive
    message_bits: int
    carry_bits: int
    lwe_dimension: int
    polynomial_size: int
    lwe_noise_std: float
    glwe_noise_std: float
    grouping_factor: int = 1
    security_bits: int = 128

    @property
    def message_modulus(self) -> int:
        return 1 << self.message_bits

    @property
    def carry_modulus(self) -> int:
        return 1 << self.carry_bits

    @property
    def total_modulus(self) -> int:
        return self.message_modulus * self.carry_modulus

    @property
    def large_lwe_dimension(self) -> int:
        return self.polynomial_size

    @property
    def reduced_assurance(self) -> bool:
        return self.security_bits < MIN_SECURITY_BITS


# (lwe_dimension, polynomial_size) per message bits
_CLASSIC_DIMENSIONS = {1: (672, 1024), 2: (742, 2048), 3: (864, 8192), 4: (996, 32768)}
_MULTI_BIT_DIMENSIONS = {1: (690, 1024), 2: (888, 2048), 3: (972, 8192), 4: (1098, 32768)}

# Faster multi-bit accelerator set for two-bit digits, below the security target
_REDUCED_MULTI_BIT_TWO_BIT = (744, 2048)


def parameter_set_for(
    primitive: LookupPrimitive, block_length: int, accelerated: bool = False
) -> ParameterSet:
    """
    Select the parameter set hosting ``block_length``-bit digits.

    Message and carry space both get ``block_length`` bits, so a lookup input
    can range over ``2 ** (2 * block_length)`` codes and two digits plus a
    carry never overflow a block.

    Raises
    ------
    ConfigurationError
        If no parameter set exists for ``block_length``.
    """
    dimensions = (
        _CLASSIC_DIMENSIONS if primitive is LookupPrimitive.CLASSIC else _MULTI_BIT_DIMENSIONS
    )
    if block_length not in dimensions:
        raise ConfigurationError(
            f"No parameter set for {block_length}-bit digits",
            config_key="block_length",
            config_value=block_length,
        )

    if primitive is LookupPrimitive.CLASSIC:
        lwe_dimension, polynomial_size = dimensions[block_length]
        return ParameterSet(
            name=f"PARAM_MESSAGE_{block_length}_CARRY_{block_length}_KS_PBS",
            primitive=primitive,
            message_bits=block_length,
            carry_bits=block_length,
            lwe_dimension=lwe_dimension,
            polynomial_size=polynomial_size,
            lwe_noise_std=2.0**-17,
            glwe_noise_std=2.0**-40,
        )

    if accelerated and block_length == 2:
        lwe_dimension, polynomial_size = _REDUCED_MULTI_BIT_TWO_BIT
        return ParameterSet(
            name="PARAM_GPU_MULTI_BIT_MESSAGE_2_CARRY_2_GROUP_3_KS_PBS_REDUCED",
            primitive=primitive,
            message_bits=2,
            carry_bits=2,
            lwe_dimension=lwe_dimension,
            polynomial_size=polynomial_size,
            lwe_noise_std=2.0**-15,
            glwe_noise_std=2.0**-40,
            grouping_factor=MULTI_BIT_GROUPING_FACTOR,
            security_bits=100,
        )

    lwe_dimension, polynomial_size = dimensions[block_length]
    prefix = "PARAM_GPU_MULTI_BIT" if accelerated else "PARAM_MULTI_BIT"
    return ParameterSet(
        name=(
            f"{prefix}_MESSAGE_{block_length}_CARRY_{block_length}"
            f"_GROUP_{MULTI_BIT_GROUPING_FACTOR}_KS_PBS"
        ),
        primitive=primitive,
        message_bits=block_length,
        carry_bits=block_length,
        lwe_dimension=lwe_dimension,
        polynomial_size=polynomial_size,
        lwe_noise_std=2.0**-17,
        glwe_noise_std=2.0**-40,
        grouping_factor=MULTI_BIT_GROUPING_FACTOR,
        security_bits=128,
    )


@dataclass(frozen=True)
class LweCiphertext:
    """
    One LWE ciphertext ``(mask, body)`` over ``q = 2 ** 32``.

    ``trivial`` ciphertexts have an all-zero mask and no noise; they encode
    public constants such as padding zeros.
    """

    mask: np.ndarray
    body: int
    key: str
    trivial: bool = False


@dataclass(frozen=True)
class CiphertextBatch:
    """A contiguous list of LWE ciphertexts under one key, held on ``placement``."""

    masks: np.ndarray
    bodies: np.ndarray
    key: str
    placement: Placement = Placement.ACCELERATOR

    def __len__(self) -> int:
        return int(self.bodies.shape[0])


class SimulatedLweEngine(EvaluationEngine):
    """
    Numpy LWE engine with simulated key switching and bootstrapping.

    Parameters
    ----------
    parameters : ParameterSet
        Cryptographic parameters; see :func:`parameter_set_for`.
    seed : int, optional
        Seed for key generation and encryption randomness.

    Examples
    --------
    >>> engine = SimulatedLweEngine(parameter_set_for(LookupPrimitive.CLASSIC, 2), seed=7)
    >>> engine.decrypt(engine.encrypt(9))
    9
    """

    def __init__(self, parameters: ParameterSet, seed: Optional[int] = None) -> None:
        self.parameters = parameters
        self.primitive = parameters.primitive
        self._delta = CIPHERTEXT_MODULUS // (2 * parameters.total_modulus)
        self._lock = threading.Lock()
        self._rng = np.random.default_rng(seed)
        self.operation_counts: Counter = Counter()

        self._keys: Dict[str, np.ndarray] = {
            LARGE_KEY: self._rng.integers(
                0, 2, size=parameters.large_lwe_dimension, dtype=np.int64
            ),
            SMALL_KEY: self._rng.integers(
                0, 2, size=parameters.lwe_dimension, dtype=np.int64
            ),
        }
        self._noise_std = {
            LARGE_KEY: parameters.glwe_noise_std,
            SMALL_KEY: parameters.lwe_noise_std,
        }

        radix = parameters.message_modulus
        domain = np.arange(parameters.total_modulus, dtype=np.int64)
        self._digit_table = domain % radix
        self._carry_table = domain // radix

        logger.info(
            "SimulatedLweEngine initialized",
            parameter_set=parameters.name,
            primitive=parameters.primitive.value,
            total_modulus=parameters.total_modulus,
            security_bits=parameters.security_bits,
        )
        if parameters.reduced_assurance:
            logger.warning(
                "Parameter set below security target",
                parameter_set=parameters.name,
                security_bits=parameters.security_bits,
                target_bits=MIN_SECURITY_BITS,
            )

    @classmethod
    def for_block_length(
        cls,
        primitive: LookupPrimitive,
        block_length: int,
        accelerated: bool = False,
        seed: Optional[int] = None,
    ) -> "SimulatedLweEngine":
        return cls(parameter_set_for(primitive, block_length, accelerated), seed=seed)

    @property
    def message_modulus(self) -> int:
        return self.parameters.message_modulus

    @property
    def total_modulus(self) -> int:
        return self.parameters.total_modulus

    # ------------------------------------------------------------------
    # Raw LWE
    # ------------------------------------------------------------------
    def _count(self, operation: str, amount: int = 1) -> None:
        with self._lock:
            self.operation_counts[operation] += amount

    def _encrypt_many(
        self, messages: np.ndarray, key: str
    ) -> Tuple[np.ndarray, np.ndarray]:
        secret = self._keys[key]
        count = int(messages.shape[0])
        with self._lock:
            masks = self._rng.integers(
                0, CIPHERTEXT_MODULUS, size=(count, secret.shape[0]), dtype=np.int64
            )
            noise = np.rint(
                self._rng.normal(0.0, self._noise_std[key] * CIPHERTEXT_MODULUS, size=count)
            ).astype(np.int64)
        bodies = (masks @ secret + messages * self._delta + noise) % CIPHERTEXT_MODULUS
        return masks, bodies

    def _decode_many(self, masks: np.ndarray, bodies: np.ndarray, key: str) -> np.ndarray:
        phases = (bodies - masks @ self._keys[key]) % CIPHERTEXT_MODULUS
        return np.rint(phases / self._delta).astype(np.int64) % self.total_modulus

    def _encrypt_one(self, message: int, key: str) -> LweCiphertext:
        masks, bodies = self._encrypt_many(np.array([message], dtype=np.int64), key)
        return LweCiphertext(mask=masks[0], body=int(bodies[0]), key=key)

    def _decode_one(self, ciphertext: LweCiphertext) -> int:
        return int(
            self._decode_many(
                ciphertext.mask[np.newaxis, :],
                np.array([ciphertext.body], dtype=np.int64),
                ciphertext.key,
            )[0]
        )

    def _trivial(self, message: int) -> LweCiphertext:
        return LweCiphertext(
            mask=np.zeros(self.parameters.large_lwe_dimension, dtype=np.int64),
            body=(message * self._delta) % CIPHERTEXT_MODULUS,
            key=LARGE_KEY,
            trivial=True,
        )

    def _check_messages(self, values: Sequence[int]) -> np.ndarray:
        messages = np.asarray(values, dtype=np.int64)
        if messages.size and (messages.min() < 0 or messages.max() >= self.total_modulus):
            raise EngineFailureError(
                "Plaintext outside engine message space",
                operation="encrypt",
                context={
                    "total_modulus": self.total_modulus,
                    "min_value": int(messages.min()),
                    "max_value": int(messages.max()),
                },
            )
        return messages

    @staticmethod
    def _require_key(key: str, expected: str, operation: str) -> None:
        if key != expected:
            raise EngineFailureError(
                f"Ciphertext under {key} key passed to {operation}",
                operation=operation,
                context={"expected_key": expected},
            )

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------
    def encrypt(self, value: int) -> LweCiphertext:
        messages = self._check_messages([value])
        self._count("encrypt")
        return self._encrypt_one(int(messages[0]), LARGE_KEY)

    def encrypt_batch(self, values: Sequence[int]) -> CiphertextBatch:
        messages = self._check_messages(values)
        self._count("encrypt", len(messages))
        masks, bodies = self._encrypt_many(messages, LARGE_KEY)
        return CiphertextBatch(masks=masks, bodies=bodies, key=LARGE_KEY)

    # ------------------------------------------------------------------
    # Table evaluation
    # ------------------------------------------------------------------
    def keyswitch(self, ciphertext: LweCiphertext) -> LweCiphertext:
        self._require_key(ciphertext.key, LARGE_KEY, "keyswitch")
        self._count("keyswitch")
        return self._encrypt_one(self._decode_one(ciphertext), SMALL_KEY)

    def keyswitch_batch(self, batch: CiphertextBatch) -> CiphertextBatch:
        self._require_key(batch.key, LARGE_KEY, "keyswitch_batch")
        self._count("keyswitch", len(batch))
        messages = self._decode_many(batch.masks, batch.bodies, LARGE_KEY)
        masks, bodies = self._encrypt_many(messages, SMALL_KEY)
        return CiphertextBatch(masks=masks, bodies=bodies, key=SMALL_KEY, placement=batch.placement)

    def _programmable_bootstrap(self, ciphertext: LweCiphertext, table: np.ndarray) -> LweCiphertext:
        self._require_key(ciphertext.key, SMALL_KEY, "bootstrap")
        self._count("bootstrap")
        message = self._decode_one(ciphertext)
        return self._encrypt_one(int(table[message]) % self.total_modulus, LARGE_KEY)

    def bootstrap(self, ciphertext: LweCiphertext, lookup: CompiledLookup) -> LweCiphertext:
        return self._programmable_bootstrap(ciphertext, lookup.tabulate(self.total_modulus))

    def bootstrap_batch(
        self, batch: CiphertextBatch, lookups: Sequence[CompiledLookup]
    ) -> CiphertextBatch:
        self._require_key(batch.key, SMALL_KEY, "bootstrap_batch")
        if len(lookups) != len(batch):
            raise EngineFailureError(
                "Lookup count does not match batch length",
                operation="bootstrap_batch",
                context={"lookups": len(lookups), "batch_length": len(batch)},
            )
        self._count("bootstrap", len(batch))
        messages = self._decode_many(batch.masks, batch.bodies, SMALL_KEY)
        outputs = np.fromiter(
            (
                lookup.tabulate(self.total_modulus)[message]
                for lookup, message in zip(lookups, messages)
            ),
            dtype=np.int64,
            count=len(lookups),
        )
        masks, bodies = self._encrypt_many(outputs % self.total_modulus, LARGE_KEY)
        return CiphertextBatch(masks=masks, bodies=bodies, key=LARGE_KEY, placement=batch.placement)

    def _apply(self, ciphertext: LweCiphertext, table: np.ndarray) -> LweCiphertext:
        """Univariate function evaluation on a large-key block."""
        if ciphertext.trivial:
            return self._trivial(int(table[self._decode_one(ciphertext)]))
        return self._programmable_bootstrap(self.keyswitch(ciphertext), table)

    def _apply_bivariate(
        self,
        lhs: LweCiphertext,
        rhs: LweCiphertext,
        function: Callable[[int, int], int],
    ) -> LweCiphertext:
        """Simulated bivariate bootstrap on two large-key blocks."""
        value = function(self._decode_one(lhs), self._decode_one(rhs))
        if lhs.trivial and rhs.trivial:
            return self._trivial(value)
        self._count("keyswitch")
        self._count("bootstrap")
        return self._encrypt_one(value, LARGE_KEY)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------
    def to_batch(self, ciphertexts: Sequence[LweCiphertext]) -> CiphertextBatch:
        if not ciphertexts:
            raise EngineFailureError("Cannot batch an empty ciphertext list", operation="to_batch")
        keys = {ciphertext.key for ciphertext in ciphertexts}
        if len(keys) != 1:
            raise EngineFailureError(
                "Cannot batch ciphertexts under different keys",
                operation="to_batch",
                context={"keys": sorted(keys)},
            )
        return CiphertextBatch(
            masks=np.stack([ciphertext.mask for ciphertext in ciphertexts]),
            bodies=np.array([ciphertext.body for ciphertext in ciphertexts], dtype=np.int64),
            key=keys.pop(),
        )

    def from_batch(self, batch: CiphertextBatch) -> List[LweCiphertext]:
        return [
            LweCiphertext(mask=batch.masks[index].copy(), body=int(batch.bodies[index]), key=batch.key)
            for index in range(len(batch))
        ]

    # ------------------------------------------------------------------
    # Radix arithmetic
    # ------------------------------------------------------------------
    def _add_blocks(self, lhs: LweCiphertext, rhs: LweCiphertext) -> LweCiphertext:
        self._require_key(lhs.key, rhs.key, "add")
        return LweCiphertext(
            mask=(lhs.mask + rhs.mask) % CIPHERTEXT_MODULUS,
            body=(lhs.body + rhs.body) % CIPHERTEXT_MODULUS,
            key=lhs.key,
            trivial=lhs.trivial and rhs.trivial,
        )

    def trivial_zero(self, width: int) -> RadixCiphertext:
        return RadixCiphertext(tuple(self._trivial(0) for _ in range(width)))

    def extend_with_trivial_zeros(self, value: RadixCiphertext, width: int) -> RadixCiphertext:
        if value.width > width:
            raise EngineFailureError(
                "Radix integer wider than requested width",
                operation="extend_with_trivial_zeros",
                context={"width": value.width, "requested_width": width},
            )
        padding = tuple(self._trivial(0) for _ in range(width - value.width))
        return RadixCiphertext(tuple(value.blocks) + padding)

    def add(self, lhs: RadixCiphertext, rhs: RadixCiphertext) -> RadixCiphertext:
        """
        Add two radix integers and propagate carries.

        Each block sum (at most ``2 * radix - 1`` with the incoming carry) is
        split into a clean digit and an outgoing carry by two bootstraps. The
        final carry is dropped, so the result wraps modulo ``radix ** width``.
        """
        if lhs.width != rhs.width:
            raise EngineFailureError(
                "Radix operands have different widths",
                operation="add",
                context={"lhs_width": lhs.width, "rhs_width": rhs.width},
            )

        blocks = []
        carry = None
        for lhs_block, rhs_block in zip(lhs.blocks, rhs.blocks):
            block_sum = self._add_blocks(lhs_block, rhs_block)
            if carry is not None:
                block_sum = self._add_blocks(block_sum, carry)
            blocks.append(self._apply(block_sum, self._digit_table))
            carry = self._apply(block_sum, self._carry_table)
        return RadixCiphertext(tuple(blocks))

    def compare_greater_or_equal(self, value: RadixCiphertext, scalar: int) -> LweCiphertext:
        """
        Encrypted ``value >= scalar`` for a clear scalar.

        Every block is mapped to 0 (less), 1 (equal) or 2 (greater) against the
        scalar's digit, then the orderings are folded from the least significant
        block upward: a more significant block decides unless it is equal.
        """
        radix = self.message_modulus
        if scalar <= 0:
            return self._trivial(1)
        if scalar >= radix**value.width:
            return self._trivial(0)

        domain = np.arange(self.total_modulus, dtype=np.int64)
        ordering = None
        remaining = scalar
        for block in value.blocks:
            digit = remaining % radix
            remaining //= radix
            table = np.where(domain < digit, 0, np.where(domain == digit, 1, 2))
            block_ordering = self._apply(block, table)
            if ordering is None:
                ordering = block_ordering
            else:
                ordering = self._apply_bivariate(
                    block_ordering, ordering, lambda high, low: low if high == 1 else high
                )

        return self._apply(ordering, (domain >= 1).astype(np.int64))

    # ------------------------------------------------------------------
    # Decryption
    # ------------------------------------------------------------------
    def decrypt(self, ciphertext: LweCiphertext) -> int:
        return self._decode_one(ciphertext)

    def decrypt_radix(self, value: RadixCiphertext) -> int:
        radix = self.message_modulus
        return sum(
            (self.decrypt(block) % radix) * radix**position
            for position, block in enumerate(value.blocks)
        )

    def decrypt_bool(self, ciphertext: LweCiphertext) -> bool:
        return self.decrypt(ciphertext) % self.message_modulus != 0
