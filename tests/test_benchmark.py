"""Tests for strategy benchmarking and result persistence."""

import csv
import gzip
import json

import numpy as np
import pytest

from helr_verify.benchmark import BenchmarkResult, MemoryProfiler, StrategyBenchmarker, summarize
from helr_verify.data_logger import ResultLogger
from helr_verify.data_models import MatchConfiguration, VerificationResult, VerificationStatus
from helr_verify.exceptions import BenchmarkError, ConfigurationError
from helr_verify.pipeline import MatchingPipeline
from helr_verify.presets import BMDB2
from helr_verify.simulated_engine import SimulatedLweEngine
from helr_verify.strategies import get_strategy

from .conftest import ENGINE_SEED, synthetic_table


@pytest.fixture
def pairs(identity_codes):
    """A genuine pair followed by an impostor pair."""
    return [
        (identity_codes, identity_codes),
        (np.full(36, 7, dtype=np.uint8), np.zeros(36, dtype=np.uint8)),
    ]


@pytest.fixture
def benchmarker(bmdb2_tables):
    return StrategyBenchmarker(
        BMDB2, bmdb2_tables, engine_seed=ENGINE_SEED, enable_memory_profiling=False
    )


class TestStrategyBenchmarker:
    def test_outcomes_per_pair(self, benchmarker, pairs):
        result = benchmarker.benchmark_strategy(get_strategy("classic_cpu"), pairs)

        assert result.outcomes == [True, False]
        assert result.runs == 2
        assert result.failures == 0
        assert result.min_time_ms <= result.median_time_ms <= result.max_time_ms
        assert result.operation_counts["bootstrap"] > 0

    def test_strategies_agree(self, benchmarker, pairs):
        results = benchmarker.run(
            [get_strategy("classic_cpu"), get_strategy("classic_gpu"), get_strategy("classic_cpu_gpu")],
            pairs,
        )
        assert list(results) == ["classic_cpu", "classic_gpu", "classic_cpu_gpu"]
        assert {tuple(result.outcomes) for result in results.values()} == {(True, False)}

    def test_reduced_assurance_skipped(self, benchmarker, pairs):
        results = benchmarker.run([get_strategy("multibit_gpu"), get_strategy("classic_cpu")], pairs)
        assert list(results) == ["classic_cpu"]

    def test_reduced_assurance_allowed(self, bmdb2_tables, pairs):
        benchmarker = StrategyBenchmarker(
            BMDB2,
            bmdb2_tables,
            engine_seed=ENGINE_SEED,
            enable_memory_profiling=False,
            allow_reduced_assurance=True,
        )
        results = benchmarker.run([get_strategy("multibit_gpu")], pairs)
        assert results["multibit_gpu"].outcomes == [True, False]

    def test_all_runs_failed(self, benchmarker, pairs, monkeypatch):
        def broken_bootstrap(self, ciphertext, lookup):
            raise RuntimeError("device lost")

        monkeypatch.setattr(SimulatedLweEngine, "bootstrap", broken_bootstrap)
        with pytest.raises(BenchmarkError) as exc_info:
            benchmarker.benchmark_strategy(get_strategy("classic_cpu"), pairs)
        assert exc_info.value.context["strategy"] == "classic_cpu"

    def test_configuration_error_not_swallowed(self):
        """Only the reduced-assurance gate skips a strategy; other errors surface."""
        configuration = MatchConfiguration("WIDE", 2, 6, 6, 1, 0)
        benchmarker = StrategyBenchmarker(
            configuration,
            [synthetic_table(size=20)],
            engine_seed=ENGINE_SEED,
            enable_memory_profiling=False,
        )
        with pytest.raises(ConfigurationError):
            benchmarker.run([get_strategy("classic_cpu")], [([0], [0])])

    def test_failed_run_keeps_outcome_position(self, benchmarker, pairs, monkeypatch):
        verify_calls = []
        original_verify = MatchingPipeline.verify
        original_bootstrap = SimulatedLweEngine.bootstrap

        def counting_verify(self, *args, **kwargs):
            verify_calls.append(1)
            return original_verify(self, *args, **kwargs)

        def bootstrap_failing_on_second_pair(self, ciphertext, lookup):
            if len(verify_calls) > 1:
                raise RuntimeError("device lost")
            return original_bootstrap(self, ciphertext, lookup)

        monkeypatch.setattr(MatchingPipeline, "verify", counting_verify)
        monkeypatch.setattr(SimulatedLweEngine, "bootstrap", bootstrap_failing_on_second_pair)
        result = benchmarker.benchmark_strategy(get_strategy("classic_cpu"), pairs)

        assert result.outcomes == [True, None]
        assert result.runs == 1
        assert result.failures == 1

    def test_memory_profiling(self, bmdb2_tables, pairs):
        benchmarker = StrategyBenchmarker(BMDB2, bmdb2_tables, engine_seed=ENGINE_SEED)
        result = benchmarker.benchmark_strategy(get_strategy("classic_gpu"), pairs[:1])
        assert result.memory_usage_mb > 0

    def test_summarize(self, benchmarker, pairs):
        summary = summarize(benchmarker.run([get_strategy("classic_cpu")], pairs))
        assert summary[0]["strategy"] == "classic_cpu"
        assert summary[0]["outcomes"] == [True, False]
        assert summary[0]["failures"] == 0
        assert summary[0]["average_runtime_ms"] > 0


class TestMemoryProfiler:
    def test_peak_not_below_initial(self):
        with MemoryProfiler() as profiler:
            buffer = np.ones(1_000_000)
        assert buffer.sum() == 1_000_000
        assert profiler.peak_memory_mb >= profiler.initial_memory_mb > 0


class TestResultLogger:
    def _result(self):
        return VerificationResult(
            verification_id="verify_test",
            status=VerificationStatus.ACCEPT,
            dataset_name="BMDB2",
            strategy="classic_cpu",
            elapsed_ms=12.5,
        )

    def test_log_verification(self, tmp_path):
        path = ResultLogger(tmp_path / "out").log_verification(self._result(), BMDB2)

        data = json.loads(path.read_text())
        assert data["result"]["status"] == "accept"
        assert data["result"]["accepted"] is True
        assert data["metadata"]["configuration"]["dataset_name"] == "BMDB2"

    def test_compressed_verification(self, tmp_path):
        path = ResultLogger(tmp_path, compress_results=True).log_verification(
            self._result(), BMDB2, file_name="result.json"
        )
        assert path.name == "result.json.gz"
        with gzip.open(path, "rt", encoding="utf-8") as f:
            assert json.load(f)["result"]["verification_id"] == "verify_test"

    def test_log_benchmark_json_and_csv(self, tmp_path):
        results = {
            "classic_cpu": BenchmarkResult(
                strategy="classic_cpu",
                dataset_name="BMDB2",
                avg_time_ms=10.0,
                std_time_ms=1.0,
                min_time_ms=9.0,
                max_time_ms=11.0,
                median_time_ms=10.0,
                memory_usage_mb=0.0,
                runs=2,
                outcomes=[True, False],
            )
        }
        path = ResultLogger(tmp_path).log_benchmark(results, BMDB2)

        data = json.loads(path.read_text())
        assert data["strategies"][0]["outcomes"] == [True, False]

        with open(path.with_suffix(".csv"), newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 1
        assert rows[0]["strategy"] == "classic_cpu"
        assert json.loads(rows[0]["outcomes"]) == [True, False]
