"""
Strategy benchmarking for the HELR-Verify system.

Runs the same probe/template pairs through several execution strategies and
reports, per strategy, the runtime statistics of the encrypted evaluation and
the list of accept/reject outcomes. Outcomes must agree across strategies:
they are scheduling variants of one protocol.
"""

import gc
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import psutil
import structlog

from .data_models import MatchConfiguration, VerificationResult
from .exceptions import BenchmarkError
from .pipeline import MatchingPipeline
from .score_tables import ScoreTableCompiler
from .strategies import ExecutionStrategy

logger = structlog.get_logger(__name__)

CodePair = Tuple[Sequence[int], Sequence[int]]


@dataclass
class BenchmarkResult:
    """
    Benchmark result for a single execution strategy.

    Attributes
    ----------
    strategy : str
        Name of the benchmarked strategy.
    dataset_name : str
        Dataset of the MatchConfiguration used.
    avg_time_ms : float
        Average authentication time in milliseconds.
    std_time_ms : float
        Standard deviation of authentication times.
    min_time_ms : float
        Minimum authentication time.
    max_time_ms : float
        Maximum authentication time.
    median_time_ms : float
        Median authentication time.
    memory_usage_mb : float
        Peak resident memory in MB.
    runs : int
        Number of successful authentications.
    outcomes : list of bool or None
        Accept (True), reject (False) or None for a failed run, one per pair
        in input order.
    failures : int
        Number of runs that ended with an engine failure.
    operation_counts : dict
        Engine operation counters accumulated over all runs.
    """

    strategy: str
    dataset_name: str
    avg_time_ms: float
    std_time_ms: float
    min_time_ms: float
    max_time_ms: float
    median_time_ms: float
    memory_usage_mb: float
    runs: int
    outcomes: List[Optional[bool]] = field(default_factory=list)
    failures: int = 0
    operation_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MemoryProfiler:
    """
    Simple memory profiler for tracking memory usage during operations.

    Examples
    --------
    >>> with MemoryProfiler() as profiler:
    ...     result = pipeline.verify(probe, compiled)
    >>> print(f"Peak memory: {profiler.peak_memory_mb} MB")
    """

    def __init__(self) -> None:
        self.initial_memory_mb = 0.0
        self.peak_memory_mb = 0.0
        self.process = psutil.Process()

    def _current_mb(self) -> float:
        return self.process.memory_info().rss / 1024 / 1024

    def __enter__(self) -> "MemoryProfiler":
        gc.collect()
        self.initial_memory_mb = self._current_mb()
        self.peak_memory_mb = self.initial_memory_mb
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.update_peak()

    def update_peak(self) -> None:
        """Update peak memory usage with current memory."""
        self.peak_memory_mb = max(self.peak_memory_mb, self._current_mb())


class StrategyBenchmarker:
    """
    Benchmarks execution strategies on a fixed set of code pairs.

    Parameters
    ----------
    configuration : MatchConfiguration
        Matching policy shared by all strategies.
    score_tables : Sequence
        Signed HELR score tables of the dataset.
    engine_seed : int, optional
        Seed for every simulated engine created.
    enable_memory_profiling : bool, default=True
        Whether to record peak memory per strategy.
    allow_reduced_assurance : bool, default=False
        Run reduced-assurance strategies instead of skipping them.

    Examples
    --------
    >>> benchmarker = StrategyBenchmarker(BMDB2, tables, engine_seed=3)
    >>> results = benchmarker.run([get_strategy("classic_cpu")], pairs)
    >>> results["classic_cpu"].outcomes
    [True, False]
    """

    def __init__(
        self,
        configuration: MatchConfiguration,
        score_tables: Sequence,
        engine_seed: Optional[int] = None,
        enable_memory_profiling: bool = True,
        allow_reduced_assurance: bool = False,
    ) -> None:
        self.configuration = configuration
        self.compiler = ScoreTableCompiler(configuration, score_tables)
        self.engine_seed = engine_seed
        self.enable_memory_profiling = enable_memory_profiling
        self.allow_reduced_assurance = allow_reduced_assurance

        logger.info(
            "StrategyBenchmarker initialized",
            dataset_name=configuration.dataset_name,
            enable_memory_profiling=enable_memory_profiling,
            allow_reduced_assurance=allow_reduced_assurance,
        )

    def _verify_pair(
        self, pipeline: MatchingPipeline, strategy: ExecutionStrategy, pair: CodePair
    ) -> VerificationResult:
        probe_codes, template_codes = pair
        compiled = self.compiler.compile(template_codes, early_stop=strategy.early_stop)
        return pipeline.verify(
            probe_codes, compiled, dataset_name=self.configuration.dataset_name
        )

    def benchmark_strategy(
        self, strategy: ExecutionStrategy, pairs: Sequence[CodePair]
    ) -> BenchmarkResult:
        """
        Authenticate every ``(probe_codes, template_codes)`` pair with ``strategy``.

        Raises
        ------
        ConfigurationError
            If the strategy is reduced-assurance and not allowed.
        BenchmarkError
            If no run succeeded.
        """
        engine = strategy.create_engine(
            self.configuration,
            seed=self.engine_seed,
            allow_reduced_assurance=self.allow_reduced_assurance,
        )
        pipeline = MatchingPipeline(engine, strategy)

        execution_times = []
        outcomes = []
        failures = 0
        memory_usage_mb = 0.0

        for run_index, pair in enumerate(pairs):
            if self.enable_memory_profiling:
                with MemoryProfiler() as profiler:
                    result = self._verify_pair(pipeline, strategy, pair)
                memory_usage_mb = max(memory_usage_mb, profiler.peak_memory_mb)
            else:
                result = self._verify_pair(pipeline, strategy, pair)

            if result.has_error:
                failures += 1
                logger.warning(
                    f"Benchmark run {run_index} failed for {strategy.name}",
                    error_details=result.error_details,
                )
                outcomes.append(None)
                continue

            execution_times.append(result.elapsed_ms)
            outcomes.append(result.accepted)

        if not execution_times:
            raise BenchmarkError(
                f"All benchmark runs failed for {strategy.name}", strategy=strategy.name
            )

        times = np.array(execution_times)
        result = BenchmarkResult(
            strategy=strategy.name,
            dataset_name=self.configuration.dataset_name,
            avg_time_ms=float(np.mean(times)),
            std_time_ms=float(np.std(times)),
            min_time_ms=float(np.min(times)),
            max_time_ms=float(np.max(times)),
            median_time_ms=float(np.median(times)),
            memory_usage_mb=memory_usage_mb,
            runs=len(execution_times),
            outcomes=outcomes,
            failures=failures,
            operation_counts=dict(engine.operation_counts),
        )

        logger.info(
            f"Benchmark completed for {strategy.name}",
            avg_time_ms=result.avg_time_ms,
            outcomes=outcomes,
            failures=failures,
        )
        return result

    def run(
        self, strategies: Sequence[ExecutionStrategy], pairs: Sequence[CodePair]
    ) -> Dict[str, BenchmarkResult]:
        """
        Benchmark several strategies on the same pairs.

        Reduced-assurance strategies that are not allowed are skipped with a
        warning. Any other configuration error propagates.
        """
        results = {}
        for strategy in strategies:
            if not self.allow_reduced_assurance and strategy.is_reduced_assurance(
                self.configuration
            ):
                logger.warning(
                    "Strategy skipped",
                    strategy=strategy.name,
                    reason="reduced assurance not allowed",
                )
                continue
            results[strategy.name] = self.benchmark_strategy(strategy, pairs)

        outcome_sets = {tuple(result.outcomes) for result in results.values()}
        if len(outcome_sets) > 1:
            logger.warning(
                "Strategies disagree on outcomes",
                outcomes={name: result.outcomes for name, result in results.items()},
            )
        return results


def summarize(results: Dict[str, BenchmarkResult]) -> List[Dict[str, Any]]:
    """Average runtime and outcome list per strategy, in run order."""
    return [
        {
            "strategy": name,
            "average_runtime_ms": result.avg_time_ms,
            "outcomes": result.outcomes,
            "time_range_ms": [round(result.min_time_ms), round(result.max_time_ms)],
            "failures": result.failures,
        }
        for name, result in results.items()
    ]
