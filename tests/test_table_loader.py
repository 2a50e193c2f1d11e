"""Tests for reading classifier bins, score tables and samples from disk."""

import numpy as np
import pytest

from helr_verify.exceptions import MalformedInputError, TableNotFoundError
from helr_verify.presets import BMDB2
from helr_verify.table_loader import (
    ClassifierTableProvider,
    TableLayout,
    read_dataset,
    read_qbins,
    read_sample,
    read_score_tables,
)

from .conftest import TABLE_SIZE, synthetic_table


class TestTableLayout:
    def test_paths(self, tmp_path):
        layout = TableLayout(tmp_path)
        assert layout.dataset_path("PUT") == tmp_path / "PUT.csv"
        assert layout.qbins_path("PUT") == tmp_path / "lookupTables" / "PUT" / "PUT_qbins.csv"
        assert str(layout.score_table_prefix("PUT")).endswith("lookupTables/PUT/HELR")


class TestReadQbins:
    def test_trailing_tokens_ignored(self, tmp_path):
        path = tmp_path / "bins.csv"
        path.write_text("-1.5, 0.0,2.25,\n")
        assert read_qbins(path) == [-1.5, 0.0, 2.25]

    def test_missing_file(self, tmp_path):
        with pytest.raises(TableNotFoundError) as exc_info:
            read_qbins(tmp_path / "absent.csv")
        assert exc_info.value.error_code == "INPUT_002"
        assert exc_info.value.context["table_type"] == "qbins"

    def test_bad_token(self, tmp_path):
        path = tmp_path / "bins.csv"
        path.write_text("0.5,abc,1.5")
        with pytest.raises(MalformedInputError):
            read_qbins(path)


class TestReadScoreTables:
    def test_reads_each_feature(self, classifier_data_root):
        prefix = TableLayout(classifier_data_root).score_table_prefix("BMDB2")
        tables = read_score_tables(prefix, 3)
        assert len(tables) == 3
        assert tables[0].shape == (TABLE_SIZE, TABLE_SIZE)
        assert tables[0].dtype == np.int64
        assert tables[2].tolist() == synthetic_table()

    def test_missing_table(self, classifier_data_root):
        prefix = TableLayout(classifier_data_root).score_table_prefix("BMDB2")
        with pytest.raises(TableNotFoundError):
            read_score_tables(prefix, BMDB2.number_of_features + 1)

    def test_non_integer_table(self, tmp_path):
        (tmp_path / "T0.csv").write_text("1,2\n3,x\n")
        with pytest.raises(MalformedInputError):
            read_score_tables(tmp_path / "T", 1)


class TestReadSamples:
    def test_dataset_rows(self, classifier_data_root):
        dataset = read_dataset(classifier_data_root / "BMDB2.csv")
        assert [sample_id for sample_id, _ in dataset] == [1, 2, 3]
        assert len(dataset[0][1]) == BMDB2.number_of_features

    def test_sample_ids_wrap(self, classifier_data_root):
        path = classifier_data_root / "BMDB2.csv"
        first_id, first = read_sample(path, 1)
        wrapped_id, wrapped = read_sample(path, 4)
        assert first_id == wrapped_id == 1
        assert np.array_equal(first, wrapped)

    def test_sample_ids_start_at_one(self, classifier_data_root):
        with pytest.raises(MalformedInputError):
            read_sample(classifier_data_root / "BMDB2.csv", 0)

    def test_missing_dataset(self, tmp_path):
        with pytest.raises(TableNotFoundError):
            read_dataset(tmp_path / "NONE.csv")


class TestClassifierTableProvider:
    def test_probe_and_template_codes(self, classifier_data_root):
        provider = ClassifierTableProvider(BMDB2, TableLayout(classifier_data_root))
        probe, template = provider.prepare_probe_and_template(1, 2)

        expected = [index % TABLE_SIZE for index in range(BMDB2.number_of_features)]
        assert probe.dtype == np.uint8
        assert probe.tolist() == expected
        assert template.tolist() == list(reversed(expected))

    def test_bins_cached(self, classifier_data_root):
        provider = ClassifierTableProvider(BMDB2, TableLayout(classifier_data_root))
        assert provider.load_bins() is provider.load_bins()

    def test_dataset_parsed_once(self, classifier_data_root):
        provider = ClassifierTableProvider(BMDB2, TableLayout(classifier_data_root))
        first = provider.quantized_sample(1)
        assert provider.load_dataset() is provider.load_dataset()

        (classifier_data_root / "BMDB2.csv").write_text("1,0.0\n")
        assert np.array_equal(provider.quantized_sample(4), first)

    def test_score_tables_for_configuration(self, classifier_data_root):
        provider = ClassifierTableProvider(BMDB2, TableLayout(classifier_data_root))
        assert len(provider.load_score_tables()) == BMDB2.number_of_features

    def test_feature_count_mismatch(self, classifier_data_root):
        (classifier_data_root / "BMDB2.csv").write_text("1,0.0,1.0\n")
        provider = ClassifierTableProvider(BMDB2, TableLayout(classifier_data_root))
        with pytest.raises(MalformedInputError):
            provider.quantized_sample(1)
