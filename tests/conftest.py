"""
Shared fixtures for the HELR-Verify test suite.

The synthetic score table used throughout is ``entry(t, p) = 3 - |t - p|``
on an 8 x 8 grid: the maximum 3 sits on the diagonal (including [0][0]) and
the minimum -4 at [0][7], so the offset is 4 and normalized entries span 0..7.
"""

from pathlib import Path
from typing import List

import numpy as np
import pytest

from helr_verify.data_models import MatchConfiguration
from helr_verify.pipeline import MatchingPipeline
from helr_verify.presets import BMDB2
from helr_verify.score_tables import ScoreTableCompiler
from helr_verify.simulated_engine import SimulatedLweEngine, parameter_set_for
from helr_verify.strategies import get_strategy

TABLE_SIZE = 8
ENGINE_SEED = 1234


def synthetic_table(size: int = TABLE_SIZE, scale: int = 1) -> List[List[int]]:
    return [[scale * (3 - abs(t - p)) for p in range(size)] for t in range(size)]


@pytest.fixture
def bmdb2_tables():
    return [synthetic_table() for _ in range(BMDB2.number_of_features)]


@pytest.fixture
def bmdb2_compiler(bmdb2_tables):
    return ScoreTableCompiler(BMDB2, bmdb2_tables)


@pytest.fixture
def identity_codes():
    return np.arange(BMDB2.number_of_features, dtype=np.uint8) % TABLE_SIZE


@pytest.fixture
def mixed_width_configuration():
    """Two features whose tables need 2 and 3 base-4 digits respectively."""
    return MatchConfiguration(
        dataset_name="MIXED",
        block_length=2,
        block_count=6,
        sum_width=6,
        number_of_features=2,
        threshold=0,
    )


@pytest.fixture
def mixed_width_tables():
    return [synthetic_table(), synthetic_table(scale=4)]


@pytest.fixture
def make_pipeline():
    """Factory building a pipeline for a named strategy, optionally with a custom engine class."""

    def factory(
        strategy_name: str = "classic_cpu",
        block_length: int = 2,
        engine_class=SimulatedLweEngine,
        max_workers: int = 4,
    ) -> MatchingPipeline:
        strategy = get_strategy(strategy_name, max_workers=max_workers)
        engine = engine_class(
            parameter_set_for(strategy.primitive, block_length), seed=ENGINE_SEED
        )
        return MatchingPipeline(engine, strategy)

    return factory


@pytest.fixture
def classifier_data_root(tmp_path: Path) -> Path:
    """
    On-disk BMDB2 classifier artefacts.

    Bins 0.5, 1.5, ..., 6.5 quantize a feature value v in 0..7 to code v.
    Sample 1 has features 0..7 repeating, sample 2 is sample 1 reversed,
    sample 3 is all zeros.
    """
    features = BMDB2.number_of_features
    tables_dir = tmp_path / "lookupTables" / "BMDB2"
    tables_dir.mkdir(parents=True)

    (tables_dir / "BMDB2_qbins.csv").write_text(
        ",".join(f"{boundary + 0.5}" for boundary in range(TABLE_SIZE - 1)) + "\n"
    )
    for feature_index in range(features):
        rows = synthetic_table()
        (tables_dir / f"HELR{feature_index}.csv").write_text(
            "\n".join(",".join(str(entry) for entry in row) for row in rows) + "\n"
        )

    first = [float(index % TABLE_SIZE) for index in range(features)]
    samples = [first, list(reversed(first)), [0.0] * features]
    (tmp_path / "BMDB2.csv").write_text(
        "\n".join(
            ",".join([str(sample_id)] + [str(value) for value in sample])
            for sample_id, sample in enumerate(samples, start=1)
        )
        + "\n"
    )
    return tmp_path
