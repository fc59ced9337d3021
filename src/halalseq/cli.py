"""
Command line interface: ``halalseq analyze | inspect | estimate``.
"""

import argparse
import logging
import sys
from typing import List, Optional

import pandas as pd
from pydantic import ValidationError
from tqdm import tqdm

from .config import AnalysisConfig
from .exceptions import HalalSeqError
from .index import open_index
from .logging_config import setup_logging
from .pipeline import AnalysisContext, PipelineState, RunStatus, start
from .reader import check_memory_budget, estimate_memory
from .report import format_report, friendly_species_name, write_report
from .samples import detect_samples

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="halalseq",
        description="halalseq: species identification and halal verdicts from food DNA reads.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--verbose", help="Enable verbose logging", action="store_true", default=False
    )
    parser.add_argument("--log-file", help="Also log to this file", type=str, default=None)
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze = subparsers.add_parser(
        "analyze",
        help="Classify reads and produce a report per sample",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    analyze.add_argument("files", help="Sample files (FASTQ/FASTA, possibly gzipped)", nargs="+")
    analyze.add_argument("--index", help="Path to the classification index", required=True)
    analyze.add_argument("--out", help="Output directory", default="halalseq_out")
    analyze.add_argument("--config", help="JSON or TOML configuration file", default=None)
    analyze.add_argument(
        "--subsample",
        help="Cap each sample with reservoir sampling",
        action="store_true",
        default=None,
    )
    analyze.add_argument("--threads", help="Worker processes for classification", type=int, default=None)
    analyze.add_argument("--seed", help="Seed for subsampling and bootstrap", type=int, default=None)
    analyze.add_argument(
        "--continue-on-error",
        help="Skip unreadable samples instead of stopping",
        action="store_true",
        default=None,
    )
    analyze.add_argument(
        "--verbose", help="Enable verbose logging", action="store_true", default=argparse.SUPPRESS
    )

    inspect = subparsers.add_parser("inspect", help="Show the contents of an index")
    inspect.add_argument("--index", help="Path to the classification index", required=True)

    estimate = subparsers.add_parser("estimate", help="Estimate memory use per sample")
    estimate.add_argument("files", help="Sample files", nargs="+")
    estimate.add_argument("--budget-mb", help="Memory budget in MB", type=float, default=None)
    return parser


def load_config(args: argparse.Namespace) -> AnalysisConfig:
    """Builds the run configuration from the config file and CLI overrides."""
    config = AnalysisConfig.from_file(args.config) if args.config else AnalysisConfig()
    return config.with_overrides(
        subsample=args.subsample,
        workers=args.threads,
        subsample_seed=args.seed,
        bootstrap_seed=args.seed,
        continue_on_file_error=args.continue_on_error,
    )


class ProgressBar:
    """Shows the reads processed for the current sample as a tqdm bar."""

    def __init__(self, disable: Optional[bool] = None):
        self.disable = disable
        self._bar: Optional[tqdm] = None
        self._sample: Optional[int] = None

    def __call__(self, status: RunStatus) -> None:
        if status.state is not PipelineState.CLASSIFYING:
            if not status.is_running:
                self.close()
            return
        if status.sample_index != self._sample:
            self.close()
            self._sample = status.sample_index
            self._bar = tqdm(
                desc=f"Classifying {status.sample_name} ({status.sample_index + 1}/{status.sample_count})",
                unit=" reads",
                disable=self.disable,
            )
        self._bar.update(status.reads_processed - self._bar.n)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def run_analyze(args: argparse.Namespace) -> int:
    config = load_config(args)
    samples = detect_samples(args.files)
    logger.info(f"Detected {len(samples)} sample(s): {', '.join(s.label for s in samples)}")

    progress = ProgressBar()
    context = AnalysisContext(
        samples=samples, index_path=args.index, config=config, on_progress=progress
    )
    pipeline = start(context)
    try:
        context.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, cancelling analysis")
        pipeline.cancel()
        context.wait()
        return 130
    finally:
        progress.close()

    parameters = config.model_dump(mode="json")
    parameters["index"] = str(args.index)
    for report in context.reports:
        write_report(report, args.out, parameters)
        print(format_report(report))
        print()
    for failure in pipeline.failures:
        print(f"Skipped: {failure}", file=sys.stderr)

    status = context.status()
    if status.state is PipelineState.ERROR:
        logger.error(f"Analysis stopped: {status.error}")
        return 1
    return 0


def _amplicon_length(database, species_id: str, marker_id: str) -> int:
    amplicon = database.get_amplicon(species_id, marker_id)
    return amplicon.seq_len if amplicon is not None else 0


def run_inspect(args: argparse.Namespace) -> int:
    database, index = open_index(args.index)
    summary = database.summary()
    print(f"Index: {args.index}")
    print(
        f"{summary['species']} species, {summary['markers']} markers, "
        f"{summary['references']} reference amplicons (k={index.k}, primer k={index.primer_k})"
    )

    species = pd.DataFrame(
        [
            {
                "species_id": s.species_id,
                "name": friendly_species_name(s.species_id),
                "status": s.status.label,
                "mito_copy_number": s.mito_copy_number,
            }
            for s in database.species
        ]
    ).set_index("species_id")
    print("\nSpecies:")
    print(species.to_string())

    markers = pd.DataFrame(
        [
            {
                "marker_id": m.marker_id,
                "primer_forward": m.primer_forward or "-",
                "primer_reverse": m.primer_reverse or "-",
            }
            for m in database.markers
        ]
    ).set_index("marker_id")
    print("\nMarkers:")
    print(markers.to_string())

    coverage = pd.DataFrame(
        [[_amplicon_length(database, s.species_id, m.marker_id) for m in database.markers]
         for s in database.species],
        index=database.species_ids,
        columns=database.marker_ids,
    )
    print("\nAmplicon length per species and marker (0 = missing):")
    print(coverage.to_string())
    return 0


def run_estimate(args: argparse.Namespace) -> int:
    budget = args.budget_mb if args.budget_mb is not None else AnalysisConfig().memory_budget_mb
    for sample in detect_samples(args.files):
        estimate = estimate_memory(sample)
        print(
            f"{sample.label}: {estimate.file_bytes / 1e6:.1f} MB on disk, "
            f"~{estimate.estimated_reads:,} reads, ~{estimate.estimated_ram_mb:.0f} MB RAM"
        )
        warning = check_memory_budget(sample, estimate, budget)
        if warning is not None:
            print(f"  Warning: {warning}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the halalseq command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, log_file=args.log_file)

    commands = {"analyze": run_analyze, "inspect": run_inspect, "estimate": run_estimate}
    try:
        return commands[args.command](args)
    except (ValidationError, FileNotFoundError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    except HalalSeqError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
