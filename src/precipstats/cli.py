"""
Command line interface for precipstats.

Runs the per-pixel Welford statistics job over a monthly raster series and
offers a few information commands for planning a run on a cluster node.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from . import __version__
from .config import SOURCE_KINDS, RunConfig, load_config
from .errors import PrecipStatsError
from .io_utils import BACKINGS, estimate_accumulator_mb, get_available_memory_mb
from .pipeline import run_from_config
from .sources import inspect_raster


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="precipstats",
        description="Per-pixel running mean, coefficient of variation and count "
        "over a monthly precipitation raster series",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Full CHELSAcruts job, GeoTIFFs staged in /tmp
  precipstats --input-dir /tmp --output-dir results

  # Job described by a TOML file, overriding the output directory
  precipstats --config job.toml --output-dir /scratch/out

  # Small test run over the first two years
  precipstats --input-dir data --steps 24 --width 4320 --height 2088

  # Planning helpers
  precipstats --estimate-memory
  precipstats --list-steps 13
  precipstats --inspect CHELSAcruts_prec_1_1901_V.1.0.tif
        """,
    )

    parser.add_argument("-c", "--config", help="TOML job file ([job] table)")

    # Information commands
    parser.add_argument(
        "--inspect", metavar="RASTER", help="Print raster header information and exit"
    )
    parser.add_argument(
        "--list-steps",
        type=int,
        metavar="N",
        help="List the first N time steps with their input names and exit",
    )
    parser.add_argument(
        "--estimate-memory",
        action="store_true",
        help="Show accumulator memory needs against available RAM and exit",
    )
    parser.add_argument(
        "--version", action="version", version=f"precipstats {__version__}"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    grid_group = parser.add_argument_group("Grid and time series")
    grid_group.add_argument("--width", type=int, help="Pixels per row (default: 43200)")
    grid_group.add_argument("--height", type=int, help="Number of rows (default: 20880)")
    grid_group.add_argument("--steps", dest="n_steps", type=int, help="Number of monthly steps (default: 1392)")
    grid_group.add_argument("--start-year", type=int, help="Year of step 1 (default: 1901)")
    grid_group.add_argument("--first-step", type=int, help="Index of the first step to process (default: 1)")

    source_group = parser.add_argument_group("Input")
    source_group.add_argument("--source", choices=SOURCE_KINDS, help="Raster source type (default: geotiff)")
    source_group.add_argument("--input-dir", help="Directory holding the input rasters")
    source_group.add_argument("--template", dest="filename_template", help="Input filename template using {month}, {year}, {index}")
    source_group.add_argument("--url-template", help="Download URL template for the remote source")
    source_group.add_argument("--workdir", help="Temporary directory for downloads and conversions")

    output_group = parser.add_argument_group("Output")
    output_group.add_argument("-o", "--output-dir", help="Directory for the output streams")
    output_group.add_argument("--output-prefix", help="Output filename prefix (default: Chelsa20C)")
    output_group.add_argument("--count-dtype", choices=["int16", "int32"], help="Integer type of the count stream (default: int32)")
    output_group.add_argument("--write-headers", action="store_true", default=None, help="Also write ESRI .hdr sidecars")

    advanced_group = parser.add_argument_group("Advanced Options")
    advanced_group.add_argument("--dtype", choices=["float64", "float32"], help="Accumulator float type (default: float64)")
    advanced_group.add_argument("--backing", choices=BACKINGS, help="Accumulator storage (default: ram)")
    advanced_group.add_argument("--scratch-dir", help="Directory for disk-backed accumulator buffers")
    advanced_group.add_argument("--progress-every", type=int, help="Log progress every N steps (default: 40)")

    return parser


def build_config(args: argparse.Namespace) -> RunConfig:
    """Job file (if any) with command line overrides applied."""
    config = load_config(args.config) if args.config else RunConfig()
    return config.with_overrides(
        width=args.width,
        height=args.height,
        n_steps=args.n_steps,
        start_year=args.start_year,
        first_step=args.first_step,
        source=args.source,
        input_dir=args.input_dir,
        filename_template=args.filename_template,
        url_template=args.url_template,
        workdir=args.workdir,
        output_dir=args.output_dir,
        output_prefix=args.output_prefix,
        count_dtype=args.count_dtype,
        write_headers=args.write_headers,
        dtype=args.dtype,
        backing=args.backing,
        scratch_dir=args.scratch_dir,
        progress_every=args.progress_every,
    )


def _setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv=None):
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if args.inspect:
        try:
            info = inspect_raster(args.inspect)
        except PrecipStatsError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        for line in info.to_lines():
            print(line)
        sys.exit(0)

    try:
        config = build_config(args).validate()
    except (ValueError, TypeError, OSError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if args.list_steps is not None:
        steps = config.time_steps()[: args.list_steps]
        for step in steps:
            name = step.format(config.url_template if config.source == "remote" else config.filename_template)
            print(f"  {step.index:>5}  {step.label}  {name}")
        sys.exit(0)

    if args.estimate_memory:
        required = {
            dtype: estimate_accumulator_mb(config.width, config.height, dtype)
            for dtype in ("float64", "float32")
        }
        print(f"Grid: {config.width}x{config.height}")
        for dtype, mb in required.items():
            print(f"  accumulator ({dtype}): {mb:,.1f} MB")
        print(f"  available RAM:        {get_available_memory_mb():,.1f} MB")
        sys.exit(0)

    if args.verbose:
        print("precipstats job configuration:")
        for key, value in config.to_dict().items():
            print(f"  {key}: {value}")

    try:
        result = run_from_config(config)
    except (PrecipStatsError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)

    summary = result.get_summary()
    if args.verbose:
        print(json.dumps(summary, indent=2))
    print(
        f"Successfully processed {summary['steps_completed']} steps -> "
        f"{Path(config.output_dir).resolve()}"
    )


if __name__ == "__main__":
    main()
