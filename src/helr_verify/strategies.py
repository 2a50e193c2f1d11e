"""
Execution strategies for the HELR-Verify matching pipeline.

All strategies run the same seven protocol steps. They differ only in the
bootstrapping primitive and in where encryption, key switching and table
evaluation are placed:

- host placement evaluates each flat position on a worker pool and streams
  results through a queue to a consumer that regroups them by feature;
- accelerator placement runs one batched key switch and one batched table
  evaluation over the whole flat buffer, then re-slices it by position;
- mixed placement key switches on one side and evaluates tables on the other.

Outputs of every scheduler are ``(feature_index, digit_ciphertexts)`` pairs
with the digits of a feature in block order. Features may arrive in any order.
"""

import queue
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import structlog

from .constants import DEFAULT_HOST_WORKERS
from .data_models import MatchConfiguration
from .engine import EvaluationEngine, LookupPrimitive, Placement
from .exceptions import ConfigurationError
from .simulated_engine import SimulatedLweEngine

if TYPE_CHECKING:
    from .pipeline import FlatPlan

logger = structlog.get_logger(__name__)

FeatureDigits = Tuple[int, List[Any]]


def _as_host_list(engine: EvaluationEngine, encrypted: Any) -> List[Any]:
    if isinstance(encrypted, list):
        return encrypted
    return engine.from_batch(encrypted)


def _as_batch(engine: EvaluationEngine, encrypted: Any) -> Any:
    if isinstance(encrypted, list):
        return engine.to_batch(encrypted)
    return encrypted


def _stream_host(
    plan: "FlatPlan", task: Callable[[int], Any], max_workers: int
) -> Iterator[FeatureDigits]:
    """
    Run ``task`` for every flat position on a thread pool.

    Workers push ``(position, result, error)`` onto a queue in completion
    order. The consumer files each result under its originating feature and
    block, and yields a feature as soon as all of its digits have arrived.
    """
    for feature_index, count in enumerate(plan.block_counts):
        if count == 0:
            yield feature_index, []

    if plan.flat_length == 0:
        return

    channel: queue.Queue = queue.Queue()

    def work(position: int) -> None:
        try:
            channel.put((position, task(position), None))
        except Exception as exc:  # forwarded to the consumer
            channel.put((position, None, exc))

    pending: Dict[int, Dict[int, Any]] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        for position in range(plan.flat_length):
            pool.submit(work, position)

        for _ in range(plan.flat_length):
            position, result, error = channel.get()
            if error is not None:
                raise error

            feature_index = plan.feature_indices[position]
            digits = pending.setdefault(feature_index, {})
            digits[plan.block_indices[position]] = result

            if len(digits) == plan.block_counts[feature_index]:
                del pending[feature_index]
                yield feature_index, [digits[block] for block in range(len(digits))]


def _reslice(plan: "FlatPlan", outputs: Sequence[Any]) -> Iterator[FeatureDigits]:
    """Split a positional output buffer back into features using the plan's slices."""
    for feature_index, feature_slice in enumerate(plan.slices):
        yield feature_index, list(outputs[feature_slice])


class Scheduler(ABC):
    """Schedules key switching and table evaluation of a flat plan."""

    @abstractmethod
    def run(
        self, engine: EvaluationEngine, plan: "FlatPlan", encrypted: Any
    ) -> Iterator[FeatureDigits]:
        """Evaluate every position of ``plan`` and yield digits per feature."""


class HostScheduler(Scheduler):
    """Worker pool over flat positions with a feature-regrouping consumer."""

    def __init__(self, max_workers: int = DEFAULT_HOST_WORKERS) -> None:
        self.max_workers = max_workers

    def run(self, engine, plan, encrypted):
        ciphertexts = _as_host_list(engine, encrypted)
        return _stream_host(
            plan,
            lambda position: engine.evaluate_lookup(
                ciphertexts[position], plan.lookups[position]
            ),
            self.max_workers,
        )


class AcceleratorScheduler(Scheduler):
    """One batched key switch and table evaluation over the contiguous buffer."""

    def run(self, engine, plan, encrypted):
        if plan.flat_length == 0:
            return _reslice(plan, [])
        batch = _as_batch(engine, encrypted)
        switched = engine.keyswitch_batch(batch)
        evaluated = engine.bootstrap_batch(switched, plan.lookups)
        return _reslice(plan, engine.from_batch(evaluated))


class MixedScheduler(Scheduler):
    """Key switching and table evaluation on different placements."""

    def __init__(
        self,
        keyswitch_placement: Placement,
        lookup_placement: Placement,
        max_workers: int = DEFAULT_HOST_WORKERS,
    ) -> None:
        if keyswitch_placement is lookup_placement:
            raise ConfigurationError(
                "Mixed scheduling needs distinct placements",
                config_key="placement",
                config_value=keyswitch_placement.value,
            )
        self.keyswitch_placement = keyswitch_placement
        self.lookup_placement = lookup_placement
        self.max_workers = max_workers

    def run(self, engine, plan, encrypted):
        if plan.flat_length == 0:
            return _reslice(plan, [])

        if self.keyswitch_placement is Placement.ACCELERATOR:
            switched = engine.from_batch(engine.keyswitch_batch(_as_batch(engine, encrypted)))
            return _stream_host(
                plan,
                lambda position: engine.bootstrap(switched[position], plan.lookups[position]),
                self.max_workers,
            )

        ciphertexts = _as_host_list(engine, encrypted)
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            switched = list(pool.map(engine.keyswitch, ciphertexts))
        evaluated = engine.bootstrap_batch(engine.to_batch(switched), plan.lookups)
        return _reslice(plan, engine.from_batch(evaluated))


@dataclass(frozen=True)
class ExecutionStrategy:
    """
    A bootstrapping primitive plus a placement for each scheduled step.

    Parameters
    ----------
    name : str
        Strategy identifier.
    primitive : LookupPrimitive
        Classic or multi-bit programmable bootstrapping.
    encrypt_placement : Placement
        Where probe codes are encrypted.
    keyswitch_placement : Placement
        Where key switching runs.
    lookup_placement : Placement
        Where table evaluation runs.
    early_stop : bool, default=False
        Whether templates should be compiled with early-stopped digit counts.
    max_workers : int
        Worker threads for host-placed steps.
    """

    name: str
    primitive: LookupPrimitive
    encrypt_placement: Placement
    keyswitch_placement: Placement
    lookup_placement: Placement
    early_stop: bool = False
    max_workers: int = DEFAULT_HOST_WORKERS

    @property
    def scheduler(self) -> Scheduler:
        if self.keyswitch_placement is self.lookup_placement:
            if self.lookup_placement is Placement.HOST:
                return HostScheduler(self.max_workers)
            return AcceleratorScheduler()
        return MixedScheduler(
            self.keyswitch_placement, self.lookup_placement, self.max_workers
        )

    def is_reduced_assurance(self, configuration: MatchConfiguration) -> bool:
        """Multi-bit bootstrapping on the accelerator with two-bit digits."""
        return (
            self.primitive is LookupPrimitive.MULTI_BIT
            and self.lookup_placement is Placement.ACCELERATOR
            and configuration.block_length == 2
        )

    def check_assurance(
        self, configuration: MatchConfiguration, allow_reduced_assurance: bool = False
    ) -> None:
        """
        Reject the reduced-assurance combination unless explicitly allowed.

        Raises
        ------
        ConfigurationError
            If the combination is reduced-assurance and not allowed.
        """
        if not self.is_reduced_assurance(configuration):
            return

        if not allow_reduced_assurance:
            raise ConfigurationError(
                f"Strategy '{self.name}' with {configuration.block_length}-bit digits "
                "uses parameters below the security target; pass "
                "allow_reduced_assurance=True to run it anyway",
                config_key="strategy",
                config_value=self.name,
                context={"dataset_name": configuration.dataset_name},
            )

        logger.warning(
            "Running reduced-assurance strategy",
            strategy=self.name,
            dataset_name=configuration.dataset_name,
            block_length=configuration.block_length,
        )

    def create_engine(
        self,
        configuration: MatchConfiguration,
        seed: Optional[int] = None,
        allow_reduced_assurance: bool = False,
    ) -> SimulatedLweEngine:
        """Build a simulated engine with parameters for this strategy and configuration."""
        self.check_assurance(configuration, allow_reduced_assurance)
        return SimulatedLweEngine.for_block_length(
            self.primitive,
            configuration.block_length,
            accelerated=self.lookup_placement is Placement.ACCELERATOR,
            seed=seed,
        )

    def encrypt(self, engine: EvaluationEngine, probe_codes: Sequence[int]) -> Any:
        """Encrypt probe codes per ciphertext on the host or as one device batch."""
        if self.encrypt_placement is Placement.ACCELERATOR:
            return engine.encrypt_batch(list(probe_codes))
        return [engine.encrypt(code) for code in probe_codes]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "primitive": self.primitive.value,
            "encrypt_placement": self.encrypt_placement.value,
            "keyswitch_placement": self.keyswitch_placement.value,
            "lookup_placement": self.lookup_placement.value,
            "early_stop": self.early_stop,
            "max_workers": self.max_workers,
        }


_HOST = Placement.HOST
_ACCELERATOR = Placement.ACCELERATOR

STRATEGIES: Mapping[str, ExecutionStrategy] = MappingProxyType(
    {
        strategy.name: strategy
        for strategy in (
            ExecutionStrategy(
                "classic_cpu", LookupPrimitive.CLASSIC, _HOST, _HOST, _HOST, early_stop=True
            ),
            ExecutionStrategy("multibit_cpu", LookupPrimitive.MULTI_BIT, _HOST, _HOST, _HOST),
            ExecutionStrategy(
                "classic_cpu_gpu", LookupPrimitive.CLASSIC, _HOST, _ACCELERATOR, _HOST
            ),
            ExecutionStrategy(
                "classic_gpu", LookupPrimitive.CLASSIC, _ACCELERATOR, _ACCELERATOR, _ACCELERATOR
            ),
            ExecutionStrategy(
                "multibit_gpu_cpu", LookupPrimitive.MULTI_BIT, _ACCELERATOR, _HOST, _ACCELERATOR
            ),
            ExecutionStrategy(
                "multibit_gpu",
                LookupPrimitive.MULTI_BIT,
                _ACCELERATOR,
                _ACCELERATOR,
                _ACCELERATOR,
            ),
        )
    }
)


def get_strategy(name: str, max_workers: Optional[int] = None) -> ExecutionStrategy:
    """
    Look up a named strategy, optionally overriding its host worker count.

    Raises
    ------
    ConfigurationError
        If no strategy has that name.
    """
    strategy = STRATEGIES.get(name.lower())
    if strategy is None:
        raise ConfigurationError(
            f"Unknown strategy '{name}'. Available: {list_strategies()}",
            config_key="strategy",
            config_value=name,
        )
    if max_workers is not None:
        strategy = replace(strategy, max_workers=max_workers)
    return strategy


def list_strategies() -> List[str]:
    return list(STRATEGIES)
