"""
Classifier table loading for the HELR-Verify system.

Reads the artefacts produced by the offline HELR classifier training:

- ``<data>/<DATASET>.csv``: raw feature vectors, one ``id, f1, f2, ...`` row
  per sample;
- ``<data>/lookupTables/<DATASET>/<DATASET>_qbins.csv``: comma-separated
  quantization bin boundaries shared by all features;
- ``<data>/lookupTables/<DATASET>/HELR<i>.csv``: the integer score table of
  feature ``i``.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np
import structlog

from .constants import (
    LOOKUP_TABLES_FOLDER,
    QBIN_SUFFIX,
    TABLE_FILE_EXTENSION,
    TABLE_PREFIX,
)
from .data_models import MatchConfiguration
from .exceptions import MalformedInputError, TableNotFoundError
from .quantization import quantize_vector

logger = structlog.get_logger(__name__)

Sample = Tuple[int, np.ndarray]


@dataclass(frozen=True)
class TableLayout:
    """
    File layout of the classifier artefacts under one data root.

    Parameters
    ----------
    data_root : Path
        Directory holding the dataset CSVs and the lookup-tables folder.
    lookup_tables_folder : str
        Sub-directory with one folder of tables per dataset.
    table_prefix : str
        File name prefix of the per-feature score tables.
    qbins_suffix : str
        Suffix appended to the dataset name for the bins file.
    """

    data_root: Path
    lookup_tables_folder: str = LOOKUP_TABLES_FOLDER
    table_prefix: str = TABLE_PREFIX
    qbins_suffix: str = QBIN_SUFFIX

    def dataset_path(self, dataset_name: str) -> Path:
        return Path(self.data_root) / f"{dataset_name}{TABLE_FILE_EXTENSION}"

    def tables_dir(self, dataset_name: str) -> Path:
        return Path(self.data_root) / self.lookup_tables_folder / dataset_name

    def qbins_path(self, dataset_name: str) -> Path:
        return self.tables_dir(dataset_name) / (
            f"{dataset_name}{self.qbins_suffix}{TABLE_FILE_EXTENSION}"
        )

    def score_table_prefix(self, dataset_name: str) -> Path:
        return self.tables_dir(dataset_name) / self.table_prefix


def _require_file(path: Path, table_type: str) -> None:
    if not path.is_file():
        raise TableNotFoundError(str(path), table_type=table_type)


def read_qbins(path: Union[str, Path]) -> List[float]:
    """
    Read comma-separated quantization bin boundaries.

    Empty tokens (such as a trailing newline) are ignored.

    Raises
    ------
    TableNotFoundError
        If the file does not exist.
    MalformedInputError
        If a token is not a real number.
    """
    path = Path(path)
    _require_file(path, "qbins")

    bins = []
    for token in path.read_text().split(","):
        token = token.strip()
        if not token:
            continue
        try:
            bins.append(float(token))
        except ValueError:
            raise MalformedInputError(
                f"Unparseable quantization bin '{token}'", file_path=str(path)
            ) from None

    logger.debug("Quantization bins loaded", path=str(path), bin_count=len(bins))
    return bins


def _load_csv(path: Path, dtype, table_type: str) -> np.ndarray:
    _require_file(path, table_type)
    try:
        return np.loadtxt(path, delimiter=",", dtype=dtype, ndmin=2)
    except ValueError as e:
        raise MalformedInputError(
            f"Unparseable {table_type} file: {e}", file_path=str(path)
        ) from e


def read_score_tables(path_prefix: Union[str, Path], count: int) -> List[np.ndarray]:
    """
    Read ``count`` integer score tables named ``{path_prefix}{i}.csv``.

    Raises
    ------
    TableNotFoundError
        If a table file is missing.
    MalformedInputError
        If a table is not a rectangular integer CSV.
    """
    tables = []
    for feature_index in range(count):
        path = Path(f"{path_prefix}{feature_index}{TABLE_FILE_EXTENSION}")
        tables.append(_load_csv(path, np.int64, "score_table"))

    logger.info("Score tables loaded", path_prefix=str(path_prefix), count=count)
    return tables


def read_dataset(path: Union[str, Path]) -> List[Sample]:
    """
    Read a raw feature dataset of ``id, f1, f2, ...`` rows.

    Returns
    -------
    List[Tuple[int, np.ndarray]]
        Sample identifier and feature vector per row, in file order.
    """
    rows = _load_csv(Path(path), np.float64, "dataset")
    if rows.shape[1] < 2:
        raise MalformedInputError(
            "Dataset rows need an identifier and at least one feature",
            file_path=str(path),
        )
    return [(int(row[0]), row[1:].copy()) for row in rows]


def select_sample(dataset: List[Sample], sample_id: int, path: Union[str, Path] = "") -> Sample:
    """
    Pick the sample on 1-based line ``sample_id`` of a parsed dataset.

    Identifiers beyond the dataset wrap around, so ``len(dataset) + 1``
    returns the first row again.
    """
    if sample_id < 1:
        raise MalformedInputError(
            f"Sample identifiers start at 1, got {sample_id}",
            file_path=str(path),
        )
    wrapped_id = ((sample_id - 1) % len(dataset)) + 1
    return dataset[wrapped_id - 1]


def read_sample(path: Union[str, Path], sample_id: int) -> Sample:
    """Read the sample on 1-based line ``sample_id``, wrapping like ``select_sample``."""
    return select_sample(read_dataset(path), sample_id, path)


class ClassifierTableProvider:
    """
    Loads bins, score tables and samples for one MatchConfiguration.

    Parameters
    ----------
    configuration : MatchConfiguration
        Dataset name and number of features to load.
    layout : TableLayout
        File layout under the data root.

    Examples
    --------
    >>> provider = ClassifierTableProvider(BMDB, TableLayout(Path("data")))
    >>> probe, template = provider.prepare_probe_and_template(3, 1)
    """

    def __init__(self, configuration: MatchConfiguration, layout: TableLayout) -> None:
        self.configuration = configuration
        self.layout = layout
        self._bins: Optional[List[float]] = None
        self._dataset: Optional[List[Sample]] = None

    def load_bins(self) -> List[float]:
        if self._bins is None:
            self._bins = read_qbins(self.layout.qbins_path(self.configuration.dataset_name))
        return self._bins

    def load_dataset(self) -> List[Sample]:
        """Parsed raw dataset, read once per provider."""
        if self._dataset is None:
            self._dataset = read_dataset(self.layout.dataset_path(self.configuration.dataset_name))
            logger.debug(
                "Dataset loaded",
                dataset_name=self.configuration.dataset_name,
                sample_count=len(self._dataset),
            )
        return self._dataset

    def load_score_tables(self) -> List[np.ndarray]:
        return read_score_tables(
            self.layout.score_table_prefix(self.configuration.dataset_name),
            self.configuration.number_of_features,
        )

    def quantized_sample(self, sample_id: int) -> np.ndarray:
        """Quantized feature vector of the sample on 1-based line ``sample_id``."""
        _, features = select_sample(
            self.load_dataset(),
            sample_id,
            self.layout.dataset_path(self.configuration.dataset_name),
        )
        if len(features) != self.configuration.number_of_features:
            raise MalformedInputError(
                "Sample feature count does not match configuration",
                context={
                    "sample_id": sample_id,
                    "features": len(features),
                    "number_of_features": self.configuration.number_of_features,
                },
            )
        return quantize_vector(features, self.load_bins())

    def prepare_probe_and_template(
        self, probe_id: int, template_id: int
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Quantized probe and template codes for two dataset samples.

        Returns
        -------
        Tuple[np.ndarray, np.ndarray]
            ``(probe_codes, template_codes)`` as ``uint8`` arrays.
        """
        probe = self.quantized_sample(probe_id)
        template = self.quantized_sample(template_id)
        logger.debug(
            "Probe and template prepared",
            dataset_name=self.configuration.dataset_name,
            probe_id=probe_id,
            template_id=template_id,
        )
        return probe, template
