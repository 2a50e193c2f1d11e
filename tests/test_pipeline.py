"""End-to-end tests of the encrypted matching pipeline."""

import time

import numpy as np
import pytest

from helr_verify.data_models import MatchConfiguration, VerificationStatus
from helr_verify.exceptions import (
    ConfigurationError,
    DomainViolationError,
    EngineFailureError,
    MalformedInputError,
)
from helr_verify.pipeline import MatchingPipeline, build_flat_plan
from helr_verify.presets import BMDB2
from helr_verify.score_tables import ScoreTableCompiler
from helr_verify.simulated_engine import SimulatedLweEngine
from helr_verify.strategies import get_strategy

from .conftest import ENGINE_SEED, TABLE_SIZE, synthetic_table

ALL_SAFE_STRATEGIES = ["classic_cpu", "multibit_cpu", "classic_cpu_gpu", "classic_gpu"]


class DelayedFirstDigitEngine(SimulatedLweEngine):
    """Holds back digit 0 of every feature so host results arrive out of block order."""

    def bootstrap(self, ciphertext, lookup):
        if lookup.block_index == 0:
            time.sleep(0.02 * (lookup.feature_index + 1))
        return super().bootstrap(ciphertext, lookup)


class FaultyEngine(SimulatedLweEngine):
    def bootstrap(self, ciphertext, lookup):
        raise RuntimeError("device lost")

    def bootstrap_batch(self, batch, lookups):
        raise RuntimeError("device lost")


class TestFlatPlan:
    def test_repeat_and_flatten(self, mixed_width_configuration, mixed_width_tables):
        compiler = ScoreTableCompiler(mixed_width_configuration, mixed_width_tables)
        compiled = compiler.compile([1, 2], early_stop=True)
        plan = build_flat_plan([5, 6], compiled)

        assert plan.block_counts == (2, 3)
        assert plan.flat_length == 5
        assert plan.probe_codes == (5, 5, 6, 6, 6)
        assert plan.feature_indices == (0, 0, 1, 1, 1)
        assert plan.block_indices == (0, 1, 0, 1, 2)
        assert plan.slices == (slice(0, 2), slice(2, 5))
        assert plan.lookups[2] is compiled.feature_lookups[1][0]

    def test_probe_length_mismatch(self, bmdb2_compiler, identity_codes):
        compiled = bmdb2_compiler.compile(identity_codes)
        with pytest.raises(MalformedInputError):
            build_flat_plan(identity_codes[:-1], compiled)

    def test_probe_code_outside_domain(self, bmdb2_compiler, identity_codes):
        compiled = bmdb2_compiler.compile(identity_codes)
        probe = identity_codes.copy()
        probe[4] = TABLE_SIZE
        with pytest.raises(DomainViolationError) as exc_info:
            build_flat_plan(probe, compiled)
        assert exc_info.value.context["feature_index"] == 4


class TestEndToEnd:
    @pytest.mark.parametrize("strategy_name", ALL_SAFE_STRATEGIES)
    def test_matching_probe_accepted(self, make_pipeline, bmdb2_compiler, identity_codes, strategy_name):
        """Identity probe: 36 * 7 = 252 >= 14 + 144."""
        pipeline = make_pipeline(strategy_name)
        compiled = bmdb2_compiler.compile(identity_codes, early_stop=pipeline.strategy.early_stop)
        result = pipeline.verify(identity_codes, compiled, dataset_name="BMDB2")

        assert result.status is VerificationStatus.ACCEPT
        assert result.accepted
        assert result.strategy == strategy_name
        assert result.elapsed_ms > 0

    @pytest.mark.parametrize("strategy_name", ALL_SAFE_STRATEGIES)
    def test_non_matching_probe_rejected(self, make_pipeline, bmdb2_compiler, strategy_name):
        """Template all 0, probe all 7: every normalized score is 0."""
        pipeline = make_pipeline(strategy_name)
        template = np.zeros(36, dtype=np.uint8)
        probe = np.full(36, 7, dtype=np.uint8)
        compiled = bmdb2_compiler.compile(template, early_stop=pipeline.strategy.early_stop)
        result = pipeline.verify(probe, compiled)

        assert result.status is VerificationStatus.REJECT
        assert not result.accepted

    @pytest.mark.parametrize(
        "source_threshold, expected",
        [(108, VerificationStatus.ACCEPT), (109, VerificationStatus.REJECT)],
    )
    def test_threshold_boundary(self, make_pipeline, bmdb2_tables, identity_codes, source_threshold, expected):
        """Offset-domain total 252 against thresholds 252 and 253."""
        configuration = MatchConfiguration("BMDB2", 2, 6, 6, 36, source_threshold)
        compiled = ScoreTableCompiler(configuration, bmdb2_tables).compile(identity_codes)
        result = make_pipeline("classic_cpu").verify(identity_codes, compiled)
        assert result.status is expected

    @pytest.mark.parametrize("strategy_name", ["multibit_gpu", "multibit_gpu_cpu"])
    def test_reduced_assurance_strategy_agrees(self, bmdb2_compiler, identity_codes, strategy_name):
        strategy = get_strategy(strategy_name)
        engine = strategy.create_engine(BMDB2, seed=ENGINE_SEED, allow_reduced_assurance=True)
        assert engine.parameters.reduced_assurance

        pipeline = MatchingPipeline(engine, strategy)
        compiled = bmdb2_compiler.compile(identity_codes)
        assert pipeline.verify(identity_codes, compiled).accepted


class TestDebugTrace:
    @pytest.mark.parametrize("strategy_name", ALL_SAFE_STRATEGIES)
    def test_trace_matches_cleartext(self, make_pipeline, bmdb2_compiler, identity_codes, strategy_name):
        pipeline = make_pipeline(strategy_name)
        template = np.roll(identity_codes, 3)
        compiled = bmdb2_compiler.compile(template)
        result = pipeline.verify(identity_codes, compiled, debug=True)

        expected = [
            int(bmdb2_compiler.normalized_tables[f][template[f], identity_codes[f]])
            for f in range(36)
        ]
        assert list(result.trace.feature_values) == expected
        assert result.trace.total == bmdb2_compiler.cleartext_score(template, identity_codes)
        assert result.accepted is (result.trace.total >= compiled.threshold)

    def test_no_trace_without_debug(self, make_pipeline, bmdb2_compiler, identity_codes):
        result = make_pipeline().verify(identity_codes, bmdb2_compiler.compile(identity_codes))
        assert result.trace is None


class TestEarlyStopEquivalence:
    @pytest.mark.parametrize("strategy_name", ["classic_cpu", "classic_gpu"])
    def test_same_total_with_and_without_early_stop(
        self, make_pipeline, bmdb2_compiler, identity_codes, strategy_name
    ):
        pipeline = make_pipeline(strategy_name)
        template = np.roll(identity_codes, 1)
        full = pipeline.verify(identity_codes, bmdb2_compiler.compile(template), debug=True)
        short = pipeline.verify(
            identity_codes, bmdb2_compiler.compile(template, early_stop=True), debug=True
        )
        assert full.trace.total == short.trace.total
        assert full.status is short.status


class TestDigitAlignment:
    @pytest.mark.parametrize(
        "strategy_name", ["classic_cpu", "classic_cpu_gpu", "classic_gpu", "multibit_cpu"]
    )
    def test_mixed_widths_padded_at_most_significant_end(
        self, make_pipeline, mixed_width_configuration, mixed_width_tables, strategy_name
    ):
        """Features with 2 and 3 digits both recompose to their table entries."""
        compiler = ScoreTableCompiler(mixed_width_configuration, mixed_width_tables)
        compiled = compiler.compile([2, 2], early_stop=True)
        assert compiled.block_counts == (2, 3)

        result = make_pipeline(strategy_name).verify([2, 5], compiled, debug=True)

        expected = [int(compiler.normalized_tables[0][2, 2]), int(compiler.normalized_tables[1][2, 5])]
        assert expected == [7, 16]
        assert list(result.trace.feature_values) == expected
        assert result.trace.total == 23

    @pytest.mark.parametrize(
        "strategy_name", ["classic_cpu", "classic_cpu_gpu", "classic_gpu", "multibit_cpu"]
    )
    def test_three_widths_recompose(self, make_pipeline, strategy_name):
        """Widths 2, 3 and 6 give nontrivial shifts for every feature after the first."""
        configuration = MatchConfiguration("MIXED3", 2, 6, 6, 3, 0)
        tables = [synthetic_table(), synthetic_table(scale=4), synthetic_table(scale=256)]
        compiler = ScoreTableCompiler(configuration, tables)
        compiled = compiler.compile([2, 2, 2], early_stop=True)
        assert compiled.block_counts == (2, 3, 6)

        probe = [2, 5, 1]
        result = make_pipeline(strategy_name).verify(probe, compiled, debug=True)

        expected = [int(compiler.normalized_tables[f][2, probe[f]]) for f in range(3)]
        assert expected == [7, 16, 1536]
        assert list(result.trace.feature_values) == expected
        assert result.trace.total == 1559

    def test_out_of_order_host_results_regrouped(
        self, make_pipeline, mixed_width_configuration, mixed_width_tables
    ):
        """Digit 0 finishes last; the consumer must still place it in block 0."""
        compiler = ScoreTableCompiler(mixed_width_configuration, mixed_width_tables)
        compiled = compiler.compile([0, 0])
        pipeline = make_pipeline("classic_cpu", engine_class=DelayedFirstDigitEngine, max_workers=8)

        result = pipeline.verify([1, 3], compiled, debug=True)

        expected = [
            int(compiler.normalized_tables[0][0, 1]),
            int(compiler.normalized_tables[1][0, 3]),
        ]
        assert list(result.trace.feature_values) == expected
        assert result.trace.total == sum(expected)

    def test_feature_without_digits(self, make_pipeline):
        """A table of zeros compiles to no lookups and contributes trivial zeros."""
        configuration = MatchConfiguration("ZERO", 2, 6, 6, 2, 0)
        tables = [synthetic_table(), [[0] * TABLE_SIZE] * TABLE_SIZE]
        compiled = ScoreTableCompiler(configuration, tables).compile([1, 1], early_stop=True)
        assert compiled.block_counts == (2, 0)

        result = make_pipeline("classic_cpu").verify([4, 1], compiled, debug=True)
        assert list(result.trace.feature_values) == [4, 0]
        assert result.trace.total == 4


class TestFailures:
    def test_engine_fault_reported_as_failed(self, make_pipeline, bmdb2_compiler, identity_codes):
        pipeline = make_pipeline("classic_cpu", engine_class=FaultyEngine)
        result = pipeline.verify(identity_codes, bmdb2_compiler.compile(identity_codes))

        assert result.status is VerificationStatus.FAILED
        assert result.has_error
        assert result.error_details["error_code"] == "ENGINE_001"
        assert result.error_details["context"]["engine_operation"] == "evaluate"

    @pytest.mark.parametrize("strategy_name", ["classic_cpu", "classic_gpu"])
    def test_authenticate_raises_engine_failure(
        self, make_pipeline, bmdb2_compiler, identity_codes, strategy_name
    ):
        pipeline = make_pipeline(strategy_name, engine_class=FaultyEngine)
        with pytest.raises(EngineFailureError) as exc_info:
            pipeline.authenticate(identity_codes, bmdb2_compiler.compile(identity_codes))
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_domain_violation_before_encryption(self, make_pipeline, bmdb2_compiler, identity_codes):
        pipeline = make_pipeline()
        probe = identity_codes.copy()
        probe[0] = 200
        with pytest.raises(DomainViolationError):
            pipeline.verify(probe, bmdb2_compiler.compile(identity_codes))
        assert pipeline.engine.operation_counts["encrypt"] == 0

    def test_radix_mismatch(self, make_pipeline, bmdb2_compiler, identity_codes):
        pipeline = make_pipeline(block_length=3)
        with pytest.raises(ConfigurationError):
            pipeline.verify(identity_codes, bmdb2_compiler.compile(identity_codes))

    def test_table_wider_than_plaintext_domain(self, make_pipeline):
        configuration = MatchConfiguration("WIDE", 2, 6, 6, 1, 0)
        wide_table = synthetic_table(size=20)
        compiled = ScoreTableCompiler(configuration, [wide_table]).compile([0])
        with pytest.raises(ConfigurationError):
            make_pipeline().verify([0], compiled)
