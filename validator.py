"""Sync-check run before any card is generated."""
from __future__ import annotations

import logging
from typing import List, Sequence

from bulk_types import Record, ValidationResult


logger = logging.getLogger(__name__)

DEFAULT_WARNING_THRESHOLD = 5


def validate_records(records: Sequence[Record]) -> ValidationResult:
    """Check every record has a name and count photo coverage.

    A missing name is an error and blocks the export; a missing photo is
    only a warning. The full lists are returned either way.
    """

    errors: List[str] = []
    warnings: List[str] = []
    photos_matched = 0
    photos_missing = 0

    for record in records:
        name = record.name.strip()
        if not name:
            errors.append(f"Row {record.row_index}: Missing name")

        if record.profile_photo:
            photos_matched += 1
        else:
            photos_missing += 1
            warnings.append(f"Row {record.row_index} ({name or 'Unknown'}): No photo attached")

    return ValidationResult(
        is_valid=not errors,
        errors=tuple(errors),
        warnings=tuple(warnings),
        records_validated=len(records),
        photos_matched=photos_matched,
        photos_missing=photos_missing,
    )


def summarize_warnings(
    result: ValidationResult, threshold: int = DEFAULT_WARNING_THRESHOLD
) -> List[str]:
    """Warnings to show the user: each one, or just a count when there are many."""

    if len(result.warnings) <= threshold:
        return list(result.warnings)
    logger.debug("Validation warnings: %s", list(result.warnings))
    return [f"{len(result.warnings)} warnings found"]


def summarize_errors(result: ValidationResult, limit: int = DEFAULT_WARNING_THRESHOLD) -> List[str]:
    lines = list(result.errors[:limit])
    if len(result.errors) > limit:
        lines.append(f"...and {len(result.errors) - limit} more")
    return lines
