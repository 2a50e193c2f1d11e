"""
Encrypted matching pipeline for the HELR-Verify system.

One authentication runs seven steps:

1. flatten: repeat each probe code once per compiled digit lookup of its
   feature, recording the slice every feature occupies;
2. encrypt the flat probe list;
3. evaluate each position's lookup homomorphically;
4. assemble each feature's digits into a radix integer and pad it with
   trivial zeros up to the sum width;
5. add all feature integers with carry propagation;
6. compare the encrypted total with the offset-adjusted threshold;
7. decrypt the resulting boolean (``verify`` only).

Steps 2 and 3 are scheduled by the ExecutionStrategy; the pipeline itself is
the same for every strategy.
"""

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence, Tuple

import structlog

from .data_models import (
    AuthenticationTrace,
    CompiledLookup,
    CompiledTemplate,
    VerificationResult,
    VerificationStatus,
)
from .engine import EvaluationEngine, RadixCiphertext
from .exceptions import (
    ConfigurationError,
    DomainViolationError,
    EngineFailureError,
    HelrVerifyError,
    MalformedInputError,
)
from .utils import generate_verification_id, timer

if TYPE_CHECKING:
    from .strategies import ExecutionStrategy

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FlatPlan:
    """
    Flattened evaluation order of one authentication.

    Position ``i`` pairs ``probe_codes[i]`` with ``lookups[i]``. Feature ``f``
    occupies ``slices[f]``; its positions are contiguous and in block order.
    Every scheduler re-slices or regroups its outputs with this layout.
    """

    probe_codes: Tuple[int, ...]
    lookups: Tuple[CompiledLookup, ...]
    slices: Tuple[slice, ...]
    feature_indices: Tuple[int, ...]
    block_indices: Tuple[int, ...]

    @property
    def flat_length(self) -> int:
        return len(self.lookups)

    @property
    def feature_count(self) -> int:
        return len(self.slices)

    @property
    def block_counts(self) -> Tuple[int, ...]:
        return tuple(feature_slice.stop - feature_slice.start for feature_slice in self.slices)


def build_flat_plan(probe_codes: Sequence[int], compiled: CompiledTemplate) -> FlatPlan:
    """
    Pair each probe code with every digit lookup of its feature.

    Raises
    ------
    MalformedInputError
        If the probe length differs from the number of compiled features.
    DomainViolationError
        If a probe code is outside its feature's lookup domain. Checked
        before anything is encrypted.
    """
    if len(probe_codes) != compiled.feature_count:
        raise MalformedInputError(
            "Probe length does not match number of compiled features",
            context={
                "probe_length": len(probe_codes),
                "feature_count": compiled.feature_count,
            },
        )

    codes, lookups, slices, feature_indices, block_indices = [], [], [], [], []
    for feature_index, (code, feature_lookups) in enumerate(
        zip(probe_codes, compiled.feature_lookups)
    ):
        probe_code = int(code)
        for lookup in feature_lookups:
            if not 0 <= probe_code < lookup.domain_size:
                raise DomainViolationError(
                    f"Probe code {probe_code} outside lookup domain",
                    feature_index=feature_index,
                    code=probe_code,
                    domain_size=lookup.domain_size,
                )

        start = len(lookups)
        for lookup in feature_lookups:
            codes.append(probe_code)
            lookups.append(lookup)
            feature_indices.append(feature_index)
            block_indices.append(lookup.block_index)
        slices.append(slice(start, len(lookups)))

    return FlatPlan(
        probe_codes=tuple(codes),
        lookups=tuple(lookups),
        slices=tuple(slices),
        feature_indices=tuple(feature_indices),
        block_indices=tuple(block_indices),
    )


@dataclass(frozen=True)
class EncryptedDecision:
    """
    Output of :meth:`MatchingPipeline.authenticate`.

    Parameters
    ----------
    ciphertext : Any
        Encrypted boolean block, ``total >= threshold``.
    elapsed_ms : float
        Wall-clock time of steps 2 to 6.
    trace : AuthenticationTrace, optional
        Decrypted intermediates when authenticated in debug mode.
    """

    ciphertext: Any
    elapsed_ms: float
    trace: Optional[AuthenticationTrace] = None


class MatchingPipeline:
    """
    Runs the encrypted matching protocol with one engine and strategy.

    A pipeline holds no per-authentication state, so concurrent calls on
    the same instance are independent.

    Parameters
    ----------
    engine : EvaluationEngine
        Homomorphic evaluation engine holding the keys.
    strategy : ExecutionStrategy
        Encryption placement and step-3 scheduling.

    Examples
    --------
    >>> strategy = get_strategy("classic_cpu")
    >>> pipeline = MatchingPipeline(strategy.create_engine(BMDB2, seed=1), strategy)
    >>> result = pipeline.verify(probe_codes, compiled)
    >>> result.status
    <VerificationStatus.ACCEPT: 'accept'>
    """

    def __init__(self, engine: EvaluationEngine, strategy: "ExecutionStrategy") -> None:
        self.engine = engine
        self.strategy = strategy

    def _check_compatibility(self, compiled: CompiledTemplate) -> None:
        if compiled.radix != self.engine.message_modulus:
            raise ConfigurationError(
                "Compiled radix does not match engine message modulus",
                config_key="block_length",
                config_value=compiled.radix,
                context={"message_modulus": self.engine.message_modulus},
            )
        for feature_lookups in compiled.feature_lookups:
            for lookup in feature_lookups:
                if lookup.domain_size > self.engine.total_modulus:
                    raise ConfigurationError(
                        "Score table has more probe codes than one table evaluation can index",
                        config_key="block_length",
                        context={
                            "feature_index": lookup.feature_index,
                            "domain_size": lookup.domain_size,
                            "total_modulus": self.engine.total_modulus,
                        },
                    )

    @timer
    def authenticate(
        self,
        probe_codes: Sequence[int],
        compiled: CompiledTemplate,
        debug: bool = False,
    ) -> EncryptedDecision:
        """
        Run steps 1 to 6 and return the encrypted decision.

        Parameters
        ----------
        probe_codes : Sequence[int]
            Quantized probe, one code per feature.
        compiled : CompiledTemplate
            Lookups, threshold and sum width for the claimed template.
        debug : bool, default=False
            Decrypt and log per-feature values and the total. Requires the
            secret key and defeats the protocol's privacy; research use only.

        Raises
        ------
        MalformedInputError
            If the probe does not match the compiled template's shape.
        DomainViolationError
            If a probe code is outside its lookup domain.
        EngineFailureError
            If any engine operation fails.
        """
        self._check_compatibility(compiled)
        plan = build_flat_plan(probe_codes, compiled)
        width = compiled.sum_width

        step = "encrypt"
        feature_values: Dict[int, int] = {}
        start_time = time.perf_counter()
        try:
            encrypted = self.strategy.encrypt(self.engine, plan.probe_codes)

            step = "evaluate"
            total = self.engine.trivial_zero(width)
            for feature_index, digits in self.strategy.scheduler.run(
                self.engine, plan, encrypted
            ):
                step = "sum"
                value = self.engine.extend_with_trivial_zeros(
                    RadixCiphertext(tuple(digits)), width
                )
                if debug:
                    feature_values[feature_index] = self.engine.decrypt_radix(value)
                total = self.engine.add(total, value)
                step = "evaluate"

            step = "compare"
            decision = self.engine.compare_greater_or_equal(total, compiled.threshold)
        except HelrVerifyError:
            raise
        except Exception as exc:
            raise EngineFailureError(
                f"Engine failed during {step}: {exc}",
                operation=step,
                strategy=self.strategy.name,
            ) from exc

        elapsed_ms = (time.perf_counter() - start_time) * 1000

        trace = None
        if debug:
            trace = AuthenticationTrace(
                feature_values=tuple(
                    feature_values[index] for index in range(plan.feature_count)
                ),
                total=self.engine.decrypt_radix(total),
            )
            logger.debug(
                "Decrypted authentication intermediates",
                feature_values=list(trace.feature_values),
                total=trace.total,
                threshold=compiled.threshold,
            )

        logger.info(
            "Authentication completed",
            strategy=self.strategy.name,
            flat_length=plan.flat_length,
            sum_width=width,
            elapsed_ms=elapsed_ms,
        )
        return EncryptedDecision(ciphertext=decision, elapsed_ms=elapsed_ms, trace=trace)

    def verify(
        self,
        probe_codes: Sequence[int],
        compiled: CompiledTemplate,
        dataset_name: str = "",
        debug: bool = False,
    ) -> VerificationResult:
        """
        Run all seven steps and decrypt the decision.

        Engine failures are reported as a FAILED result instead of raising.
        Malformed inputs and domain violations still raise.
        """
        verification_id = generate_verification_id()
        try:
            outcome = self.authenticate(probe_codes, compiled, debug=debug)
            accepted = self.engine.decrypt_bool(outcome.ciphertext)
        except EngineFailureError as e:
            logger.error(
                "Verification failed",
                verification_id=verification_id,
                strategy=self.strategy.name,
                **e.to_dict(),
            )
            return VerificationResult(
                verification_id=verification_id,
                status=VerificationStatus.FAILED,
                dataset_name=dataset_name,
                strategy=self.strategy.name,
                elapsed_ms=0.0,
                error_details=e.to_dict(),
            )

        status = VerificationStatus.ACCEPT if accepted else VerificationStatus.REJECT
        logger.info(
            "Verification completed",
            verification_id=verification_id,
            status=status.value,
            strategy=self.strategy.name,
        )
        return VerificationResult(
            verification_id=verification_id,
            status=status,
            dataset_name=dataset_name,
            strategy=self.strategy.name,
            elapsed_ms=outcome.elapsed_ms,
            trace=outcome.trace,
        )
