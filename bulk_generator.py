"""Command line entry point for bulk ID card generation."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from batch_exporter import (
    DEFAULT_COMPRESSION_LEVEL,
    DEFAULT_OUTPUT_ROOT,
    DEFAULT_SETTLE_DELAY,
    BatchExporter,
)
from bulk_types import (
    PHASE_GENERATING,
    BulkGeneratorError,
    ExportProgress,
    ExportValidationError,
)
from card_fields import CATEGORIES, CardDesign
from card_renderer import DEFAULT_HTTP_TIMEOUT, DEFAULT_PIXEL_RATIO, CardRenderer
from photo_matcher import load_photo_directory
from print_sheet import make_print_sheet
from record_store import RecordStore
from sheet_parser import parse_sheet, write_template
from validator import summarize_errors, summarize_warnings, validate_records


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.WARNING)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


class _ProgressPrinter:
    """Prints phase changes and roughly every tenth record while generating."""

    def __init__(self) -> None:
        self._phase = None

    def __call__(self, update: ExportProgress) -> None:
        if update.phase != self._phase:
            self._phase = update.phase
            print(update.message)
            return
        step = max(1, update.total // 10)
        if update.phase == PHASE_GENERATING and (
            update.current % step == 0 or update.current == update.total
        ):
            print(f"{update.message} ({update.percent}%)")


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def _non_negative_float(value: str) -> float:
    number = float(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {value}")
    return number


def _build_design(args: argparse.Namespace) -> CardDesign:
    overrides = {
        "institution_name": args.institution,
        "institution_address": args.address,
        "layout": args.layout,
        "header_color": args.header_color,
        "footer_color": args.footer_color,
        "text_color": args.text_color,
        "institution_logo": str(args.logo) if args.logo else None,
        "authorized_signature": str(args.signature) if args.signature else None,
        "background_image": str(args.background) if args.background else None,
    }
    if args.card_size:
        overrides["card_size"] = args.card_size
    if args.photo_size:
        overrides["photo_size"] = args.photo_size
    try:
        return CardDesign.for_category(args.category, **overrides)
    except ValueError as exc:
        raise BulkGeneratorError(str(exc)) from exc


def run_export(args: argparse.Namespace) -> int:
    store = RecordStore(on_change=print)

    result = parse_sheet(args.data_file, args.category)
    store.add_records(result.records)
    print(f"Imported {len(result.records)} records from {args.data_file.name}")

    if args.photos is not None:
        photos = load_photo_directory(args.photos)
        if photos:
            store.add_photos(photos)
            print(f"Imported {len(photos)} photos")

    design = _build_design(args)

    validation = validate_records(store.records)
    if validation.is_valid:
        for warning in summarize_warnings(validation):
            print(f"Warning: {warning}")

    with CardRenderer(http_timeout=args.http_timeout) as renderer:
        exporter = BatchExporter(
            renderer,
            pixel_ratio=args.pixel_ratio,
            settle_delay=args.settle_delay,
            compression_level=args.compression_level,
        )
        try:
            summary = exporter.export(
                store.records, design, args.output_dir, progress=_ProgressPrinter()
            )
        except ExportValidationError as exc:
            print(str(exc), file=sys.stderr)
            for line in summarize_errors(exc.result):
                print(f"  {line}", file=sys.stderr)
            return 1

    print(f"Successfully exported {summary.generated} ID cards to {summary.archive_path}")
    if summary.failed:
        print(f"{summary.failed} card(s) failed to generate", file=sys.stderr)

    if args.print_sheet:
        make_print_sheet(store.records, summary.archive_path.with_suffix(".pdf"))
    return 0


def run_template(args: argparse.Namespace) -> int:
    destination = write_template(args.category, args.output_dir)
    print(f"Template written to {destination}")
    return 0


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate ID cards in bulk from a CSV or Excel sheet.")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "WARNING"),
        help="Logging level for diagnostics (default: $LOG_LEVEL or WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    export = subparsers.add_parser("export", help="Import a data file and export a ZIP of cards")
    export.add_argument("data_file", type=Path, help="CSV, XLSX or XLS file with one row per card")
    export.add_argument("--photos", type=Path, help="Directory of photos named by student/employee ID")
    export.add_argument("--category", choices=CATEGORIES, default="school")
    export.add_argument("--institution", default="", help="Institution name printed on every card")
    export.add_argument("--address", default="", help="Institution address")
    export.add_argument("--layout", choices=("vertical", "horizontal"), default="vertical")
    export.add_argument("--card-size", help="Card size id, e.g. cr80 or school-student")
    export.add_argument("--photo-size", type=_positive_int, help="Photo diameter in card pixels")
    export.add_argument("--header-color", default="#2563eb")
    export.add_argument("--footer-color", default="#1e40af")
    export.add_argument("--text-color", default="#000000")
    export.add_argument("--logo", type=Path, help="Institution logo image")
    export.add_argument("--signature", type=Path, help="Authorised signature image")
    export.add_argument("--background", type=Path, help="Card background image")
    export.add_argument("--pixel-ratio", type=_positive_int, default=DEFAULT_PIXEL_RATIO)
    export.add_argument(
        "--settle-delay",
        type=_non_negative_float,
        default=DEFAULT_SETTLE_DELAY,
        help="Seconds to wait before capturing each card",
    )
    export.add_argument("--compression-level", type=int, default=DEFAULT_COMPRESSION_LEVEL)
    export.add_argument("--http-timeout", type=float, default=DEFAULT_HTTP_TIMEOUT)
    export.add_argument(
        "--output-dir",
        type=Path,
        default=DEFAULT_OUTPUT_ROOT,
        help="Directory where the ZIP archive will be written",
    )
    export.add_argument("--print-sheet", action="store_true", help="Also write an A3 print-ready PDF")
    export.set_defaults(handler=run_export)

    template = subparsers.add_parser("template", help="Write an example CSV for a category")
    template.add_argument("--category", choices=CATEGORIES, default="school")
    template.add_argument("--output-dir", type=Path, default=Path("."))
    template.set_defaults(handler=run_template)

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.log_level)
    try:
        return args.handler(args)
    except (BulkGeneratorError, FileNotFoundError) as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
