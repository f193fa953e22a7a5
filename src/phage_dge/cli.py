"""Command-line entry point for the phage DGE pipeline."""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import CONFIG_TEMPLATE, Config, set_config
from .glm import DGEError
from .pipeline import run_pipeline
from .validation import ValidationError


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phage-dge",
        description="Differential expression of phage treatments versus an untreated control."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run the full analysis")
    run.add_argument("counts", type=Path, help="Gene x sample count matrix (CSV/TSV/XLSX)")
    run.add_argument("--metadata", type=Path, help="Sample sheet mapping samples to groups")
    run.add_argument("--config", type=Path, help="YAML configuration file")
    run.add_argument("--output-dir", type=Path, help="Directory for tables and plots")
    run.add_argument("--engine", choices=["native", "edger"], help="Statistics backend")
    run.add_argument("--plot-format", choices=["html", "png", "svg", "pdf"])
    run.add_argument("--drop-column", action="append", dest="drop_columns",
                     help="Non-sample column to remove from the count matrix (repeatable)")
    run.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    init = subparsers.add_parser("init-config", help="Write an example configuration file")
    init.add_argument("path", type=Path)

    return parser


def _load_config(args: argparse.Namespace) -> Config:
    config = Config.from_yaml(args.config) if args.config else Config()
    if args.output_dir is not None:
        # Only directories derived from the old output_dir move with it
        paths = config.paths
        derived = type(paths)(output_dir=paths.output_dir)
        config.paths = type(paths)(
            output_dir=args.output_dir,
            tables_dir=None if paths.tables_dir == derived.tables_dir else paths.tables_dir,
            plots_dir=None if paths.plots_dir == derived.plots_dir else paths.plots_dir
        )
    if args.engine is not None:
        config.engine = args.engine
    if args.plot_format is not None:
        config.plot_format = args.plot_format
    if args.drop_columns:
        config.drop_columns = args.drop_columns
    return config


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    if args.command == "init-config":
        args.path.write_text(CONFIG_TEMPLATE.lstrip())
        logger.info(f"Wrote example configuration to {args.path}")
        return 0

    config = _load_config(args)
    set_config(config)

    try:
        analysis = run_pipeline(args.counts, config, metadata_path=args.metadata)
    except (ValidationError, DGEError) as e:
        logger.error(f"Analysis failed: {e}")
        return 1
    except FileNotFoundError as e:
        logger.error(f"Input file not found: {e.filename}")
        return 1

    print(analysis.summary.to_string())
    return 0


if __name__ == "__main__":
    sys.exit(main())
