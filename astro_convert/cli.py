"""Command-line interface for astronomical image conversion."""

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from . import __version__
from .batch import BatchOrchestrator, find_images, print_summary
from .colormaps import COLORMAP_NAMES
from .config import (
    DEFAULTS,
    FITS_BITPIX,
    FITS_COLOR_LAYOUTS,
    FITS_COMPRESSIONS,
    FITS_MODES,
    FORMATS,
    PRESETS,
    STRETCH_KINDS,
    TIFF_COMPRESSIONS,
    TIFF_MULTIPAGE,
    ExportOptions,
    merge_overrides,
    validate_options,
    with_overrides,
)
from .converter import get_output_path
from .detect import is_supported_filename
from .encoder import estimate_channels, estimate_file_size
from .errors import ConversionError
from .job_config import JobConfig, load_settings, validate_job_file
from .logger import create_logger
from .models import SOURCE_FITS, TASK_CANCELLED, BatchTask
from .naming import NAMING_RULES, NamingOptions
from .reader import load

# Task interrupted by SIGINT/SIGTERM
_active: dict = {}


def setup_logging(verbose: bool, log_file: Optional[Path] = None) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def _signal_handler(signum, frame):
    """Cancel the running task; the current file's output is discarded."""
    orchestrator = _active.get("orchestrator")
    task_id = _active.get("task_id")
    if orchestrator is not None and task_id is not None:
        logging.warning("Shutdown requested, cancelling...")
        orchestrator.cancel_task(task_id)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="astro-convert",
        description="Convert FITS and raster images to FITS, PNG, JPEG, WebP, TIFF or BMP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Stretch every FITS file in a directory to PNG
    astro-convert lights/ -O exports/ --stretch asinh

    # Web-ready JPEGs with sequence names
    astro-convert lights/ -O web/ --preset web --naming sequence

    # Re-encode as gzip-compressed 16-bit scientific FITS
    astro-convert M42.fits -O out/ -f fits --bitpix 16 --fits-compression gzip

    # Run a job file, or just check it
    astro-convert --job jobs/m42_web.json
    astro-convert --job jobs/m42_web.json --validate

    # Preview outputs and estimated sizes
    astro-convert lights/ -O exports/ -f tiff --bit-depth 16 --estimate
        """,
    )

    parser.add_argument("inputs", nargs="*", type=Path, help="Image files or directories")
    parser.add_argument("--output-dir", "-O", type=Path, default=None,
                        help="Output directory (default: next to each input)")
    parser.add_argument("--job", "-j", type=Path, default=None, help="JSON job file")
    parser.add_argument("--validate", action="store_true", help="Validate the job file and exit")
    parser.add_argument("--preset", choices=sorted(PRESETS), default=None, help="Built-in option preset")

    fmt = parser.add_argument_group("output format")
    fmt.add_argument("--format", "-f", choices=FORMATS, default=None, help="Target format")
    fmt.add_argument("--quality", "-q", type=int, default=None, help="JPEG/WebP quality 1-100")
    fmt.add_argument("--bit-depth", type=int, choices=(8, 16, 32), default=None,
                     help="Sample width where the format allows it")
    fmt.add_argument("--dpi", type=int, default=None, help="Resolution recorded in PNG/JPEG/TIFF")
    fmt.add_argument("--frame", type=int, default=None, help="Frame of a cube to render")

    render = parser.add_argument_group("rendering")
    render.add_argument("--stretch", "-s", choices=STRETCH_KINDS, default=None, help="Stretch function")
    render.add_argument("--black-point", type=float, default=None, help="Black point, 0-1 of range")
    render.add_argument("--white-point", type=float, default=None, help="White point, 0-1 of range")
    render.add_argument("--gamma", type=float, default=None, help="Gamma exponent")
    render.add_argument("--colormap", "-c", choices=COLORMAP_NAMES, default=None, help="Colormap")
    render.add_argument("--watermark", type=str, default=None,
                        help="Add a watermark (empty string for the default text)")
    render.add_argument("--annotations", action="store_true", help="Draw star and astrometry annotations")

    fits_group = parser.add_argument_group("FITS / TIFF")
    fits_group.add_argument("--fits-mode", choices=FITS_MODES, default=None,
                            help="scientific keeps physical samples, rendered writes the stretched image")
    fits_group.add_argument("--fits-compression", choices=FITS_COMPRESSIONS, default=None)
    fits_group.add_argument("--bitpix", type=int, choices=FITS_BITPIX, default=None)
    fits_group.add_argument("--color-layout", choices=FITS_COLOR_LAYOUTS, default=None)
    fits_group.add_argument("--no-wcs", action="store_true", help="Drop WCS keywords")
    fits_group.add_argument("--tiff-compression", choices=TIFF_COMPRESSIONS, default=None)
    fits_group.add_argument("--multipage", choices=TIFF_MULTIPAGE, default=None)

    naming = parser.add_argument_group("naming")
    naming.add_argument("--naming", choices=NAMING_RULES, default=None, help="Output naming rule")
    naming.add_argument("--prefix", type=str, default=None)
    naming.add_argument("--suffix", type=str, default=None)
    naming.add_argument("--template", type=str, default=None,
                        help="Template, e.g. \"{object}_{filter}_{exptime}s_{seq}\"")
    naming.add_argument("--sequence-start", type=int, default=None)

    parser.add_argument("--no-recursive", "-n", action="store_true", help="Do not search subdirectories")
    parser.add_argument("--pattern", "-p", type=str, default=None, help='Filename pattern, e.g. "Light_*"')
    parser.add_argument("--exclude", "-e", type=str, action="append", default=None,
                        help="Exclude paths containing string (repeatable)")
    parser.add_argument("--overwrite", "-o", action="store_true", help="Overwrite existing outputs")
    parser.add_argument("--dry-run", "-d", action="store_true", help="Show outputs without converting")
    parser.add_argument("--estimate", action="store_true", help="Show estimated output sizes and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--log-file", "-l", type=Path, default=None, help="Write log to file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def cli_overrides(args: argparse.Namespace) -> dict:
    """Option overrides for every flag given on the command line."""
    top = {
        "format": args.format,
        "quality": args.quality,
        "bit_depth": args.bit_depth,
        "dpi": args.dpi,
        "colormap": args.colormap,
        "frame": args.frame,
        "overwrite": True if args.overwrite else None,
    }
    sections = {
        "stretch": {
            "kind": args.stretch,
            "black_point": args.black_point,
            "white_point": args.white_point,
            "gamma": args.gamma,
        },
        "fits": {
            "mode": args.fits_mode,
            "compression": args.fits_compression,
            "bitpix": args.bitpix,
            "color_layout": args.color_layout,
            "preserve_wcs": False if args.no_wcs else None,
        },
        "tiff": {"compression": args.tiff_compression, "multipage": args.multipage},
        "render": {
            "include_annotations": True if args.annotations else None,
            "include_watermark": True if args.watermark is not None else None,
            "watermark_text": args.watermark,
        },
    }
    overrides = {k: v for k, v in top.items() if v is not None}
    for name, values in sections.items():
        given = {k: v for k, v in values.items() if v is not None}
        if given:
            overrides[name] = given
    return overrides


def cli_naming(args: argparse.Namespace, base: NamingOptions) -> NamingOptions:
    changes = {
        "rule": args.naming,
        "prefix": args.prefix,
        "suffix": args.suffix,
        "template": args.template,
        "sequence_start": args.sequence_start,
    }
    values = vars(base).copy()
    values.update({k: v for k, v in changes.items() if v is not None})
    if args.template is not None and args.naming is None:
        values["rule"] = "template"
    return NamingOptions(**values)


def collect_inputs(inputs: list[Path], recursive: bool, pattern: Optional[str],
                   exclude: Optional[list[str]]) -> list[Path]:
    files: list[Path] = []
    for entry in inputs:
        if entry.is_dir():
            files.extend(find_images(entry, recursive, pattern, exclude))
        elif entry.exists() and is_supported_filename(entry.name):
            files.append(entry)
        else:
            logging.warning(f"Skipping {entry}: not found or not a supported image")
    return list(dict.fromkeys(files))


def _run_dry_run(files: list[Path], options: ExportOptions, output_dir: Optional[Path],
                 naming: NamingOptions) -> None:
    """Show what would be converted."""
    new_count = 0
    exists_count = 0
    total_size = 0

    print("\nDry run - files that would be converted:\n")
    for index, path in enumerate(files):
        metadata = None
        if naming.rule == "template":
            try:
                metadata = load(path.read_bytes(), path.name, str(path)).metadata
            except (ConversionError, OSError) as e:
                print(f"  {path.name}\n    -> [unreadable: {e}]")
                continue
        output_path = get_output_path(path, options, output_dir, naming, index, metadata)
        total_size += path.stat().st_size

        if output_path.exists():
            exists_count += 1
            status = "[exists - skip]" if not options.overwrite else "[exists - overwrite]"
        else:
            new_count += 1
            status = "[new]"

        print(f"  {path.name}")
        print(f"    -> {output_path} {status}")

    print(f"\n{'=' * 50}")
    print("DRY RUN SUMMARY")
    print(f"{'=' * 50}")
    print(f"  Total files:     {len(files)}")
    print(f"  To convert:      {new_count if not options.overwrite else len(files)}")
    print(f"  Already exist:   {exists_count}")
    print(f"  Input size:      {total_size / (1024 * 1024):.1f} MB")
    if exists_count > 0 and not options.overwrite:
        print("\n  Use --overwrite to reconvert existing files")


def _run_estimate(files: list[Path], options: ExportOptions) -> None:
    """Print the estimated output size of every file."""
    total = 0
    print(f"\nEstimated {options.format} output sizes:\n")
    for path in files:
        try:
            metadata = load(path.read_bytes(), path.name, str(path)).metadata
        except (ConversionError, OSError) as e:
            print(f"  {path.name}: unreadable ({e})")
            continue
        channels = estimate_channels(options, metadata.source_type == SOURCE_FITS)
        size = estimate_file_size(metadata.width, metadata.height, options, channels)
        total += size
        print(f"  {path.name}: {metadata.width}x{metadata.height} -> ~{size / 1024:.0f} KB")
    print(f"\n  Total: ~{total / (1024 * 1024):.1f} MB")


def run_conversion(files: list[Path], options: ExportOptions, output_dir: Optional[Path],
                   naming: NamingOptions, run_name: str = "convert") -> int:
    """Convert files with a progress bar; returns the process exit code."""
    pbar = tqdm(total=len(files), desc="Converting", unit="file",
                bar_format="{desc}: {percentage:3.0f}%|{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]")

    def on_progress(task: BatchTask) -> None:
        pbar.n = task.processed
        pbar.refresh()

    orchestrator = BatchOrchestrator(output_dir, options, naming, on_progress=on_progress,
                                     max_workers=1)
    log_dir = output_dir if output_dir is not None else Path.cwd()
    with create_logger(log_dir, run_name, echo=False) as run_log:
        run_log.info(f"Converting {len(files)} file(s) to {options.format}")
        try:
            with run_log.timed_operation("Batch conversion"):
                task_id = orchestrator.start_batch_convert(files)
                _active.update(orchestrator=orchestrator, task_id=task_id)
                task = orchestrator.wait(task_id)
                results = orchestrator.get_results(task_id)
        finally:
            _active.clear()
            pbar.close()
            orchestrator.shutdown()

        for result in results:
            run_log.file_result(result)
        run_log.results_table(results)
        run_log.task_status(task)
        if task.status == TASK_CANCELLED:
            run_log.warning("Cancelled before all files were processed")

    summary = print_summary(results)
    if task.status == TASK_CANCELLED:
        print("\nCancelled before all files were processed")
        return 130
    return 1 if summary["failed"] > 0 else 0


def main(argv: Optional[list[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_file)
    signal.signal(signal.SIGINT, _signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _signal_handler)

    if args.validate:
        if args.job is None:
            parser.error("--validate requires --job")
        valid, error = validate_job_file(args.job)
        print(f"{args.job}: {'valid' if valid else 'INVALID - ' + error}")
        sys.exit(0 if valid else 1)

    job = None
    if args.job is not None:
        try:
            job = JobConfig.from_file(args.job, load_settings(Path.cwd()))
        except Exception as e:
            logging.error(f"Cannot load job {args.job}: {e}")
            sys.exit(1)

    try:
        base = job.options if job else DEFAULTS
        preset = PRESETS[args.preset] if args.preset else {}
        options = with_overrides(merge_overrides(preset, cli_overrides(args)), base)
        validate_options(options)
    except ValueError as e:
        logging.error(str(e))
        sys.exit(2)

    naming = cli_naming(args, job.naming if job else NamingOptions())
    output_dir = args.output_dir or (Path(job.output) if job else None)

    recursive = not args.no_recursive
    files = collect_inputs(args.inputs, recursive, args.pattern, args.exclude)
    if job:
        files = list(dict.fromkeys(job.collect_files() + files))

    if not files:
        print("No supported image files found")
        sys.exit(0)
    print(f"Found {len(files)} image file(s)")
    print(f"Output: {options.format} -> {output_dir or 'next to inputs'} (naming={naming.rule})")

    if args.estimate:
        _run_estimate(files, options)
        sys.exit(0)

    if args.dry_run:
        _run_dry_run(files, options, output_dir, naming)
        sys.exit(0)

    if output_dir and not output_dir.exists():
        try:
            output_dir.mkdir(parents=True)
        except OSError as e:
            logging.error(f"Cannot create output directory: {e}")
            sys.exit(1)

    sys.exit(run_conversion(files, options, output_dir, naming, job.name if job else "convert"))


if __name__ == "__main__":
    main()
