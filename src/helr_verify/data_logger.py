"""
Result persistence for the HELR-Verify system.

Verification results and strategy benchmarks are written as JSON documents
with a metadata header, and benchmarks additionally as one CSV row per
strategy for spreadsheet analysis.
"""

import csv
import gzip
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from .benchmark import BenchmarkResult
from .constants import DEFAULT_BENCHMARK_FILE
from .data_models import MatchConfiguration, VerificationResult

logger = structlog.get_logger(__name__)


class ResultLogger:
    """
    Writes verification and benchmark results under one output directory.

    Parameters
    ----------
    output_directory : Path
        Directory for output files. Created on first write.
    compress_results : bool, default=False
        Whether to gzip JSON files.

    Examples
    --------
    >>> result_logger = ResultLogger(Path("./results"))
    >>> path = result_logger.log_verification(result, BMDB2)
    """

    def __init__(self, output_directory: Path, compress_results: bool = False) -> None:
        self.output_directory = Path(output_directory)
        self.compress_results = compress_results

        logger.debug(
            "ResultLogger initialized",
            output_directory=str(self.output_directory),
            compress_results=compress_results,
        )

    def _generate_filename(self, base_name: str, extension: str = ".json") -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        return f"{base_name}_{timestamp}{extension}"

    def _metadata(self, configuration: MatchConfiguration) -> Dict[str, Any]:
        return {
            "logging_timestamp": datetime.now(timezone.utc).isoformat(),
            "configuration": configuration.to_dict(),
            "results_version": "1.0",
        }

    def _save_json(self, data: Dict[str, Any], file_path: Path) -> Path:
        """
        Save data as JSON, gzipped when compression is enabled.

        Returns
        -------
        Path
            Path of the file actually written.
        """
        file_path.parent.mkdir(parents=True, exist_ok=True)
        json_str = json.dumps(data, indent=2, default=str, ensure_ascii=False)

        if self.compress_results:
            compressed_path = file_path.with_suffix(file_path.suffix + ".gz")
            with gzip.open(compressed_path, "wt", encoding="utf-8") as f:
                f.write(json_str)
            logger.debug(f"Saved compressed JSON: {compressed_path}")
            return compressed_path

        with open(file_path, "w", encoding="utf-8") as f:
            f.write(json_str)
        logger.debug(f"Saved JSON: {file_path}")
        return file_path

    def _save_csv(self, rows: List[Dict[str, Any]], file_path: Path) -> Path:
        """Save a list of flat dictionaries as CSV; list and dict values become JSON."""
        if not rows:
            logger.warning("No data provided for CSV export")
            return file_path

        file_path.parent.mkdir(parents=True, exist_ok=True)
        fieldnames = sorted({key for row in rows for key in row})

        with open(file_path, "w", newline="", encoding="utf-8") as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=fieldnames)
            writer.writeheader()
            for row in rows:
                writer.writerow(
                    {
                        key: json.dumps(value, default=str)
                        if isinstance(value, (dict, list))
                        else ("" if value is None else str(value))
                        for key, value in ((key, row.get(key)) for key in fieldnames)
                    }
                )

        logger.debug(f"Saved CSV: {file_path}")
        return file_path

    def log_verification(
        self,
        result: VerificationResult,
        configuration: MatchConfiguration,
        file_name: Optional[str] = None,
    ) -> Path:
        """
        Persist one verification result.

        Returns
        -------
        Path
            Path to the saved JSON file.
        """
        file_path = self.output_directory / (
            file_name or self._generate_filename(f"verification_{result.verification_id}")
        )
        path = self._save_json(
            {"metadata": self._metadata(configuration), "result": result.to_dict()},
            file_path,
        )
        logger.info("Verification result saved", path=str(path), status=result.status.value)
        return path

    def log_benchmark(
        self,
        results: Dict[str, BenchmarkResult],
        configuration: MatchConfiguration,
        base_name: str = DEFAULT_BENCHMARK_FILE,
    ) -> Path:
        """
        Persist strategy benchmark results as JSON and CSV.

        Returns
        -------
        Path
            Path to the saved JSON file.
        """
        file_path = self.output_directory / self._generate_filename(base_name)
        rows = [result.to_dict() for result in results.values()]

        path = self._save_json(
            {"metadata": self._metadata(configuration), "strategies": rows}, file_path
        )
        self._save_csv(rows, file_path.with_suffix(".csv"))

        logger.info("Benchmark results saved", path=str(path), strategies=list(results))
        return path
