import sys
import json
import argparse
from pathlib import Path
from typing import List, Optional

import structlog

from . import config
from .benchmark import StrategyBenchmarker, summarize
from .data_logger import ResultLogger
from .exceptions import HelrVerifyError
from .pipeline import MatchingPipeline
from .presets import get_preset, list_presets, PRESETS
from .score_tables import ScoreTableCompiler
from .strategies import get_strategy, list_strategies
from .table_loader import ClassifierTableProvider, TableLayout
from .utils import configure_logging

logger = structlog.get_logger(__name__)


class HelrVerifyCLI:
    """Main command-line interface for the HELR-Verify system."""

    def __init__(self) -> None:
        self.parser = self._create_argument_parser()

    def _create_argument_parser(self) -> argparse.ArgumentParser:
        """Creates the argument parser for the CLI."""
        parser = argparse.ArgumentParser(
            prog="helr-verify",
            description="HELR-Verify - Encrypted Biometric Verification",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--log-level",
            default=config.LOG_LEVEL,
            help=f"Logging level. Default: {config.LOG_LEVEL}.",
        )

        subparsers = parser.add_subparsers(dest="command", required=True)
        self._add_verify_command(subparsers)
        self._add_benchmark_command(subparsers)
        subparsers.add_parser("presets", help="List the dataset presets.")
        subparsers.add_parser("config", help="Validate and show the environment configuration.")

        return parser

    def _add_common_arguments(self, command_parser) -> None:
        command_parser.add_argument(
            "--dataset",
            default=config.DEFAULT_DATASET,
            choices=list_presets(),
            help=f"Dataset preset. Default: {config.DEFAULT_DATASET}.",
        )
        command_parser.add_argument(
            "--data-path",
            type=Path,
            default=config.DATA_PATH,
            help="Root directory of datasets and lookup tables.",
        )
        command_parser.add_argument(
            "--seed",
            type=int,
            default=config.ENGINE_SEED,
            help="Seed for the simulated engine.",
        )
        command_parser.add_argument(
            "--workers",
            type=int,
            default=config.MAX_WORKERS,
            help=f"Host worker threads. Default: {config.MAX_WORKERS}.",
        )
        command_parser.add_argument(
            "--allow-reduced-assurance",
            action="store_true",
            help="Allow multi-bit accelerator strategies with two-bit digits.",
        )
        command_parser.add_argument(
            "--output",
            type=Path,
            default=None,
            help="Directory to save results in. Results are not saved if omitted.",
        )

    def _add_verify_command(self, subparsers) -> None:
        """Add the 'verify' command and its arguments."""
        verify_parser = subparsers.add_parser(
            "verify", help="Verify one probe sample against one template sample."
        )
        self._add_common_arguments(verify_parser)
        verify_parser.add_argument("probe_id", type=int, help="1-based probe sample line.")
        verify_parser.add_argument("template_id", type=int, help="1-based template sample line.")
        verify_parser.add_argument(
            "--strategy",
            default=config.DEFAULT_STRATEGY,
            choices=list_strategies(),
            help=f"Execution strategy. Default: {config.DEFAULT_STRATEGY}.",
        )
        verify_parser.add_argument(
            "--debug",
            action="store_true",
            default=config.DEBUG_MODE,
            help="Decrypt and report per-feature values and the total.",
        )

    def _add_benchmark_command(self, subparsers) -> None:
        """Add the 'benchmark' command and its arguments."""
        benchmark_parser = subparsers.add_parser(
            "benchmark", help="Compare execution strategies on sample pairs."
        )
        self._add_common_arguments(benchmark_parser)
        benchmark_parser.add_argument(
            "--probes", type=int, nargs="+", required=True, help="1-based probe sample lines."
        )
        benchmark_parser.add_argument(
            "--templates",
            type=int,
            nargs="+",
            required=True,
            help="1-based template sample lines, paired with --probes.",
        )
        benchmark_parser.add_argument(
            "--strategies",
            nargs="+",
            default=list_strategies(),
            choices=list_strategies(),
            help="Strategies to benchmark. Default: all.",
        )

    def _execute_verify_command(self, args: argparse.Namespace) -> int:
        configuration = get_preset(args.dataset)
        provider = ClassifierTableProvider(configuration, TableLayout(args.data_path))
        probe, template = provider.prepare_probe_and_template(args.probe_id, args.template_id)

        strategy = get_strategy(args.strategy, max_workers=args.workers)
        compiler = ScoreTableCompiler(configuration, provider.load_score_tables())
        compiled = compiler.compile(template, early_stop=strategy.early_stop)

        engine = strategy.create_engine(
            configuration,
            seed=args.seed,
            allow_reduced_assurance=args.allow_reduced_assurance,
        )
        pipeline = MatchingPipeline(engine, strategy)
        result = pipeline.verify(
            probe, compiled, dataset_name=configuration.dataset_name, debug=args.debug
        )

        print(f"Verification ID: {result.verification_id}")
        print(f"Strategy: {result.strategy}")
        print(f"Status: {result.status.value.upper()}")
        print(f"Evaluation time: {result.elapsed_ms:.1f} ms")
        if result.trace is not None:
            print(f"Decrypted total: {result.trace.total} (threshold {compiled.threshold})")
            print(f"Clear total: {compiler.cleartext_score(template, probe)}")

        if args.output is not None:
            ResultLogger(args.output).log_verification(result, configuration)

        return 1 if result.has_error else 0

    def _execute_benchmark_command(self, args: argparse.Namespace) -> int:
        if len(args.probes) != len(args.templates):
            print("\n[ERROR] --probes and --templates must have the same length", file=sys.stderr)
            return 2

        configuration = get_preset(args.dataset)
        provider = ClassifierTableProvider(configuration, TableLayout(args.data_path))
        pairs = [
            provider.prepare_probe_and_template(probe_id, template_id)
            for probe_id, template_id in zip(args.probes, args.templates)
        ]

        benchmarker = StrategyBenchmarker(
            configuration,
            provider.load_score_tables(),
            engine_seed=args.seed,
            allow_reduced_assurance=args.allow_reduced_assurance,
        )
        strategies = [get_strategy(name, max_workers=args.workers) for name in args.strategies]
        results = benchmarker.run(strategies, pairs)

        print("\n" + "=" * 80)
        print(f"HELR-VERIFY - STRATEGY BENCHMARK ({configuration.dataset_name})")
        print("=" * 80)
        for entry in summarize(results):
            print(f"Results: {entry['strategy']}")
            print(f"  Average runtime: {entry['average_runtime_ms']:.1f} ms")
            print(f"  Auth: {entry['outcomes']}")
        print("=" * 80)

        if args.output is not None:
            ResultLogger(args.output).log_benchmark(results, configuration)

        return 0 if results else 1

    def _execute_presets_command(self) -> int:
        for name in list_presets():
            preset = PRESETS[name]
            print(
                f"{name}: block_length={preset.block_length} block_count={preset.block_count} "
                f"sum_width={preset.sum_width} features={preset.number_of_features} "
                f"threshold={preset.threshold}"
            )
        return 0

    def _execute_config_command(self) -> int:
        try:
            config.validate_configuration()
        except ValueError as e:
            print(f"\n[ERROR] {e}", file=sys.stderr)
            return 1
        print(json.dumps(config.get_config_summary(), indent=2))
        return 0

    def run_from_args(self, args_list: Optional[List[str]] = None) -> int:
        """Run the CLI with provided arguments."""
        try:
            args = self.parser.parse_args(args_list)
            configure_logging(args.log_level)

            if args.command == "verify":
                return self._execute_verify_command(args)
            if args.command == "benchmark":
                return self._execute_benchmark_command(args)
            if args.command == "presets":
                return self._execute_presets_command()
            if args.command == "config":
                return self._execute_config_command()

            self.parser.print_help()
            return 1
        except HelrVerifyError as e:
            logger.error("A known application error occurred", **e.to_dict())
            print(f"\n[ERROR] {e}", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            print("\nOperation cancelled by user.", file=sys.stderr)
            return 130


def main() -> int:
    """Main entry point for the CLI."""
    cli = HelrVerifyCLI()
    return cli.run_from_args()


if __name__ == "__main__":
    sys.exit(main())
