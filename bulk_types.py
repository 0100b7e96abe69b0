"""Records, photo mappings and the value objects passed through a bulk run."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import List, Mapping, NamedTuple, Optional, Sequence, Tuple

from card_fields import FieldValue, extract_identifier, get_field_value


STATUS_PENDING = "pending"
STATUS_VALIDATED = "validated"
STATUS_GENERATING = "generating"
STATUS_GENERATED = "generated"
STATUS_ERROR = "error"

RECORD_STATUSES = (
    STATUS_PENDING,
    STATUS_VALIDATED,
    STATUS_GENERATING,
    STATUS_GENERATED,
    STATUS_ERROR,
)

PHASE_VALIDATING = "validating"
PHASE_GENERATING = "generating"
PHASE_PACKAGING = "packaging"
PHASE_COMPLETE = "complete"

EXPORT_PHASES = (PHASE_VALIDATING, PHASE_GENERATING, PHASE_PACKAGING, PHASE_COMPLETE)

_UNSET = object()


class BulkGeneratorError(Exception):
    """Base class for failures reported back to the user."""


class SheetImportError(BulkGeneratorError):
    """Raised when an uploaded data file cannot be turned into records."""


class InvalidTransitionError(BulkGeneratorError):
    """Raised when a record is moved to a status it cannot reach."""


class StoreBusyError(BulkGeneratorError):
    """Raised for destructive store operations while an export is running."""


class ImageLoadError(BulkGeneratorError):
    """Raised when a photo or asset reference cannot be loaded."""


class ExportPackagingError(BulkGeneratorError):
    """Raised when the archive cannot be produced."""


class ExportValidationError(BulkGeneratorError):
    """Raised when the sync-check fails; carries the full result."""

    def __init__(self, result: "ValidationResult") -> None:
        super().__init__(f"Validation failed: {len(result.errors)} errors found")
        self.result = result


def new_record_id() -> str:
    return f"bulk-{uuid.uuid4().hex}"


class PhotoMapping(NamedTuple):
    identifier: str
    image: str
    file_name: str


class ValidationResult(NamedTuple):
    is_valid: bool
    errors: Tuple[str, ...]
    warnings: Tuple[str, ...]
    records_validated: int
    photos_matched: int
    photos_missing: int


class ExportProgress(NamedTuple):
    current: int
    total: int
    phase: str
    message: str

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return round(self.current * 100 / self.total)


# Statuses each status may move to during an export run.
_TRANSITIONS = {
    STATUS_PENDING: (STATUS_VALIDATED,),
    STATUS_VALIDATED: (STATUS_VALIDATED, STATUS_GENERATING),
    STATUS_GENERATING: (STATUS_GENERATED, STATUS_ERROR),
    STATUS_GENERATED: (),
    STATUS_ERROR: (),
}


@dataclass
class Record:
    """One imported row destined to become one rendered card."""

    row_index: int
    fields: List[FieldValue]
    profile_photo: Optional[str] = None
    photo_matched: bool = False
    id: str = field(default_factory=new_record_id)
    status: str = STATUS_PENDING
    error_message: Optional[str] = None
    generated_image: Optional[bytes] = None

    @property
    def name(self) -> str:
        return get_field_value(self.fields, "name")

    @property
    def identifier(self) -> str:
        return extract_identifier(self.fields)

    def field_value(self, key: str) -> str:
        return get_field_value(self.fields, key)

    def _move(self, status: str) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Row {self.row_index}: cannot move from {self.status} to {status}"
            )
        self.status = status

    def mark_validated(self) -> None:
        self._move(STATUS_VALIDATED)

    def mark_generating(self) -> None:
        self._move(STATUS_GENERATING)
        self.error_message = None
        self.generated_image = None

    def mark_generated(self, image: bytes) -> None:
        if not image:
            raise ValueError("generated image must not be empty")
        self._move(STATUS_GENERATED)
        self.generated_image = image

    def mark_error(self, message: str) -> None:
        self._move(STATUS_ERROR)
        self.error_message = message

    def reset(self) -> None:
        """Return to ``pending``; prior validation and output no longer apply."""

        self.status = STATUS_PENDING
        self.error_message = None
        self.generated_image = None

    def update(
        self,
        values: Optional[Mapping[str, str]] = None,
        *,
        enabled: Optional[Mapping[str, bool]] = None,
        profile_photo=_UNSET,
    ) -> None:
        """Merge edited field values and/or a manually chosen photo."""

        by_key = {item.key: item for item in self.fields}
        for changes in (values or {}, enabled or {}):
            for key in changes:
                if key not in by_key:
                    raise KeyError(f"Row {self.row_index} has no field {key!r}")

        for key, value in (values or {}).items():
            by_key[key].value = "" if value is None else str(value)
        for key, flag in (enabled or {}).items():
            by_key[key].enabled = bool(flag)
        if profile_photo is not _UNSET:
            self.profile_photo = profile_photo or None
            self.photo_matched = False
        self.reset()


def count_by_status(records: Sequence[Record], status: str) -> int:
    return sum(1 for record in records if record.status == status)
