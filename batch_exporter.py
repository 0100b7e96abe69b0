"""Validate, render and package a batch of records into one ZIP archive."""
from __future__ import annotations

import datetime
import logging
import os
import re
import time
import zipfile
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional, Sequence

from bulk_types import (
    PHASE_COMPLETE,
    PHASE_GENERATING,
    PHASE_PACKAGING,
    PHASE_VALIDATING,
    STATUS_ERROR,
    STATUS_GENERATED,
    BulkGeneratorError,
    ExportPackagingError,
    ExportProgress,
    ExportValidationError,
    Record,
    ValidationResult,
    count_by_status,
)
from card_fields import CardDesign, RenderConfig
from card_renderer import DEFAULT_PIXEL_RATIO
from validator import validate_records


logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_ROOT = Path("ID Cards")
# The bundled renderer is synchronous, so no settling time is needed. Renderers
# backed by an asynchronous surface should pass a delay; it is a best-effort
# wait, not a guarantee that layout has finished.
DEFAULT_SETTLE_DELAY = 0.0
DEFAULT_COMPRESSION_LEVEL = 6
GENERATION_FAILED_MESSAGE = "Generation failed"

ProgressCallback = Callable[[ExportProgress], None]


class ExportSummary(NamedTuple):
    archive_path: Path
    generated: int
    failed: int
    validation: ValidationResult


def _sanitize_filename_component(value: str, pattern: str, replacement: str, fallback: str) -> str:
    sanitized = re.sub(pattern, replacement, value or "").strip()
    return sanitized or fallback


def sanitize_person_name(name: str) -> str:
    collapsed = re.sub(r"\s+", " ", name or "")
    return _sanitize_filename_component(collapsed, r"[^A-Za-z0-9 ]", "", "Unknown")


def sanitize_identifier(identifier: str, row_index: int) -> str:
    return _sanitize_filename_component(identifier, r"[^A-Za-z0-9]", "", f"ID{row_index}")


def card_file_name(record: Record) -> str:
    """``<Name>_<Identifier>.png`` for one generated card."""

    name = sanitize_person_name(record.name)
    identifier = sanitize_identifier(record.identifier, record.row_index)
    return f"{name}_{identifier}.png"


def archive_entry_names(records: Sequence[Record]) -> List[str]:
    names: List[str] = []
    seen = {}
    for record in records:
        base = card_file_name(record)
        count = seen.get(base.lower(), 0) + 1
        seen[base.lower()] = count
        if count > 1:
            stem = base[: -len(".png")]
            base = f"{stem}_{count}.png"
        names.append(base)
    return names


def archive_name(institution_name: str, day: datetime.date) -> str:
    institution = _sanitize_filename_component(
        institution_name.strip(), r"[^A-Za-z0-9]", "_", "IDCards"
    )
    return f"{institution}_BulkIDCards_{day.isoformat()}.zip"


class BatchExporter:
    """Drives one export run: validating, generating, packaging, complete.

    ``renderer`` is any object with ``prepare(design, pixel_ratio)``, called
    once before generating, and ``render(config, pixel_ratio) -> bytes``
    returning PNG data. Records are rendered one at a time in stored order
    because the renderer is a single shared surface.
    """

    def __init__(
        self,
        renderer,
        *,
        pixel_ratio: int = DEFAULT_PIXEL_RATIO,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        compression_level: int = DEFAULT_COMPRESSION_LEVEL,
        sleep: Callable[[float], None] = time.sleep,
        today: Callable[[], datetime.date] = datetime.date.today,
    ) -> None:
        if pixel_ratio < 1:
            raise ValueError("pixel_ratio must be at least 1")
        if settle_delay < 0:
            raise ValueError("settle_delay must not be negative")
        self.renderer = renderer
        self.pixel_ratio = pixel_ratio
        self.settle_delay = settle_delay
        self.compression_level = compression_level
        self._sleep = sleep
        self._today = today

    def export(
        self,
        records: Sequence[Record],
        design: CardDesign,
        output_dir: Path = DEFAULT_OUTPUT_ROOT,
        progress: Optional[ProgressCallback] = None,
    ) -> ExportSummary:
        report = progress or (lambda update: None)
        if not records:
            raise BulkGeneratorError("No records to process")
        total = len(records)

        report(ExportProgress(0, total, PHASE_VALIDATING, "Validating data..."))
        validation = validate_records(records)
        if not validation.is_valid:
            logger.warning("Sync-check failed: %s", list(validation.errors))
            raise ExportValidationError(validation)
        self.renderer.prepare(design, self.pixel_ratio)
        for record in records:
            # A new run starts from fresh data even if an earlier run finished.
            record.reset()
            record.mark_validated()

        self.generate(records, design, report)
        archive_path = self.package(records, design, Path(output_dir), report)

        generated = count_by_status(records, STATUS_GENERATED)
        failed = count_by_status(records, STATUS_ERROR)
        report(ExportProgress(total, total, PHASE_COMPLETE, "Export complete!"))
        logger.info("Exported %d card(s) to %s (%d failed)", generated, archive_path, failed)
        return ExportSummary(archive_path, generated, failed, validation)

    def generate(self, records: Sequence[Record], design: CardDesign, report: ProgressCallback) -> None:
        total = len(records)
        report(ExportProgress(0, total, PHASE_GENERATING, "Generating ID cards..."))
        for index, record in enumerate(records):
            record.mark_generating()
            config = RenderConfig.compose(design, record.fields, record.profile_photo)
            if self.settle_delay:
                self._sleep(self.settle_delay)
            try:
                image = self.renderer.render(config, self.pixel_ratio)
                record.mark_generated(image)
            except Exception:
                logger.exception("Error generating card for row %d", record.row_index)
                record.mark_error(GENERATION_FAILED_MESSAGE)

            report(
                ExportProgress(
                    index + 1,
                    total,
                    PHASE_GENERATING,
                    f"Generated {index + 1} of {total} cards...",
                )
            )

    def package(
        self,
        records: Sequence[Record],
        design: CardDesign,
        output_dir: Path,
        report: ProgressCallback,
    ) -> Path:
        total = len(records)
        report(ExportProgress(total, total, PHASE_PACKAGING, "Creating ZIP file..."))

        successful = [record for record in records if record.status == STATUS_GENERATED]
        if not successful:
            raise ExportPackagingError("No cards were generated successfully")

        archive_path = output_dir / archive_name(design.institution_name, self._today())
        partial_path = archive_path.with_name(archive_path.name + ".part")
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(
                partial_path,
                "w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=self.compression_level,
            ) as archive:
                for entry_name, record in zip(archive_entry_names(successful), successful):
                    archive.writestr(entry_name, record.generated_image)
            os.replace(partial_path, archive_path)
        except (OSError, ValueError, zipfile.LargeZipFile) as exc:
            logger.exception("Error creating ZIP %s", archive_path)
            partial_path.unlink(missing_ok=True)
            raise ExportPackagingError("Failed to create ZIP file") from exc
        return archive_path
