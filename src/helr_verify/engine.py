"""
Evaluation engine interface for the HELR-Verify system.

The matching pipeline never touches ciphertext internals. It drives an
EvaluationEngine through the operations below: encryption of probe codes,
key switching and programmable bootstrapping of compiled lookups, radix
addition with carry propagation, a scalar comparison and decryption.

Each operation exists in a per-ciphertext form (host execution) and a batched
form (accelerator execution). Batches are opaque engine values; ``to_batch``
and ``from_batch`` model the transfer between host memory and the device.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Sequence, Tuple

from .data_models import CompiledLookup


class Placement(str, Enum):
    """Where an engine operation runs."""

    HOST = "host"
    ACCELERATOR = "accelerator"


class LookupPrimitive(str, Enum):
    """Programmable bootstrapping flavour used for table evaluation."""

    CLASSIC = "classic"
    MULTI_BIT = "multi_bit"


@dataclass(frozen=True)
class RadixCiphertext:
    """
    An encrypted radix integer.

    Parameters
    ----------
    blocks : tuple
        Engine ciphertexts, one per digit, least significant first.
    """

    blocks: Tuple[Any, ...]

    @property
    def width(self) -> int:
        return len(self.blocks)


class EvaluationEngine(ABC):
    """
    Abstract homomorphic evaluation engine.

    Implementations own key material, noise handling and parameter choice.
    Every operation is a pure function of its ciphertext inputs and the keys,
    so one engine may be shared by concurrent authentications as long as its
    randomness source is thread-safe.
    """

    primitive: LookupPrimitive

    @property
    @abstractmethod
    def message_modulus(self) -> int:
        """Size of the message space of one block (the radix)."""

    @property
    @abstractmethod
    def total_modulus(self) -> int:
        """Message modulus times carry modulus; the domain of a table evaluation."""

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------
    @abstractmethod
    def encrypt(self, value: int) -> Any:
        """Encrypt one code over the full ``total_modulus`` domain."""

    @abstractmethod
    def encrypt_batch(self, values: Sequence[int]) -> Any:
        """Encrypt a contiguous batch of codes directly into device memory."""

    # ------------------------------------------------------------------
    # Table evaluation
    # ------------------------------------------------------------------
    @abstractmethod
    def keyswitch(self, ciphertext: Any) -> Any:
        """Switch a ciphertext from the input key to the bootstrapping key."""

    @abstractmethod
    def keyswitch_batch(self, batch: Any) -> Any:
        """Batched :meth:`keyswitch`."""

    @abstractmethod
    def bootstrap(self, ciphertext: Any, lookup: CompiledLookup) -> Any:
        """Evaluate ``lookup`` on a key-switched ciphertext."""

    @abstractmethod
    def bootstrap_batch(self, batch: Any, lookups: Sequence[CompiledLookup]) -> Any:
        """Evaluate ``lookups[i]`` on ``batch[i]`` for every position."""

    def evaluate_lookup(self, ciphertext: Any, lookup: CompiledLookup) -> Any:
        """Key switch then bootstrap one ciphertext through ``lookup``."""
        return self.bootstrap(self.keyswitch(ciphertext), lookup)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------
    @abstractmethod
    def to_batch(self, ciphertexts: Sequence[Any]) -> Any:
        """Copy host ciphertexts into one contiguous device batch."""

    @abstractmethod
    def from_batch(self, batch: Any) -> List[Any]:
        """Copy a device batch back into individual host ciphertexts."""

    # ------------------------------------------------------------------
    # Radix arithmetic
    # ------------------------------------------------------------------
    @abstractmethod
    def trivial_zero(self, width: int) -> RadixCiphertext:
        """Noiseless encryption of 0 with ``width`` blocks."""

    @abstractmethod
    def extend_with_trivial_zeros(
        self, value: RadixCiphertext, width: int
    ) -> RadixCiphertext:
        """Pad ``value`` with trivial zero blocks at the most significant end."""

    @abstractmethod
    def add(self, lhs: RadixCiphertext, rhs: RadixCiphertext) -> RadixCiphertext:
        """Add two equal-width radix integers modulo ``radix ** width``."""

    @abstractmethod
    def compare_greater_or_equal(self, value: RadixCiphertext, scalar: int) -> Any:
        """Encrypted boolean block for ``value >= scalar``."""

    # ------------------------------------------------------------------
    # Decryption
    # ------------------------------------------------------------------
    @abstractmethod
    def decrypt(self, ciphertext: Any) -> int:
        """Decrypt one block."""

    @abstractmethod
    def decrypt_radix(self, value: RadixCiphertext) -> int:
        """Decrypt and recompose a radix integer."""

    @abstractmethod
    def decrypt_bool(self, ciphertext: Any) -> bool:
        """Decrypt a boolean block."""
