"""In-memory record collection for one bulk session."""
from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from bulk_types import (
    STATUS_ERROR,
    STATUS_GENERATED,
    STATUS_GENERATING,
    STATUS_PENDING,
    STATUS_VALIDATED,
    PhotoMapping,
    Record,
    StoreBusyError,
    count_by_status,
)
from card_fields import CardDesign, RenderConfig
from photo_matcher import match_photos


logger = logging.getLogger(__name__)

_UNSET = object()


class RecordStore:
    """Records, uploaded photos and the current selection.

    ``on_change`` is called with a short message whenever photo matching
    actually attached new photos.
    """

    def __init__(self, on_change: Optional[Callable[[str], None]] = None) -> None:
        self.records: List[Record] = []
        self.photos: List[PhotoMapping] = []
        self.selected_id: Optional[str] = None
        self._on_change = on_change

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    @property
    def is_busy(self) -> bool:
        return any(record.status == STATUS_GENERATING for record in self.records)

    def _ensure_idle(self, action: str) -> None:
        if self.is_busy:
            raise StoreBusyError(f"Cannot {action} while cards are being generated")

    def _notify(self, message: str) -> None:
        logger.info(message)
        if self._on_change is not None:
            self._on_change(message)

    def rematch(self) -> int:
        matched = match_photos(self.records, self.photos)
        if matched:
            total = sum(1 for record in self.records if record.photo_matched)
            self._notify(f"Matched {total} photos to records")
        return matched

    def add_records(self, records: Iterable[Record]) -> int:
        """Append newly imported records; import never replaces."""

        new_records = list(records)
        self.records.extend(new_records)
        self.rematch()
        return len(new_records)

    def add_photos(self, photos: Iterable[PhotoMapping]) -> int:
        new_photos = list(photos)
        self.photos.extend(new_photos)
        self.rematch()
        return len(new_photos)

    def get(self, record_id: str) -> Record:
        for record in self.records:
            if record.id == record_id:
                return record
        raise KeyError(f"No record with id {record_id!r}")

    def index_of(self, record_id: str) -> int:
        for index, record in enumerate(self.records):
            if record.id == record_id:
                return index
        raise KeyError(f"No record with id {record_id!r}")

    def remove(self, record_id: str) -> Record:
        self._ensure_idle("remove records")
        record = self.records.pop(self.index_of(record_id))
        if self.selected_id == record_id:
            self.selected_id = None
        return record

    def clear(self) -> None:
        self._ensure_idle("clear records")
        self.records.clear()
        self.photos.clear()
        self.selected_id = None
        self._notify("All records cleared")

    def update(
        self,
        record_id: str,
        values: Optional[Mapping[str, str]] = None,
        *,
        enabled: Optional[Mapping[str, bool]] = None,
        profile_photo=_UNSET,
    ) -> Record:
        """Merge edits into a record and send it back to ``pending``."""

        record = self.get(record_id)
        if profile_photo is _UNSET:
            record.update(values, enabled=enabled)
        else:
            record.update(values, enabled=enabled, profile_photo=profile_photo)
        self.rematch()
        return record

    # selection

    @property
    def selected(self) -> Optional[Record]:
        if self.selected_id is None:
            return None
        try:
            return self.get(self.selected_id)
        except KeyError:
            return None

    def select(self, record_id: Optional[str]) -> Optional[Record]:
        if record_id is not None:
            self.get(record_id)
        self.selected_id = record_id
        return self.selected

    def _step(self, offset: int) -> Optional[Record]:
        if not self.records:
            return None
        if self.selected_id is None:
            index = 0 if offset > 0 else len(self.records) - 1
        else:
            index = (self.index_of(self.selected_id) + offset) % len(self.records)
        self.selected_id = self.records[index].id
        return self.records[index]

    def select_next(self) -> Optional[Record]:
        return self._step(1)

    def select_previous(self) -> Optional[Record]:
        return self._step(-1)

    def selected_config(self, design: CardDesign) -> Optional[RenderConfig]:
        record = self.selected
        if record is None:
            return None
        return RenderConfig.compose(design, record.fields, record.profile_photo)

    # listing

    def search(self, term: str) -> List[Record]:
        if not term:
            return list(self.records)
        needle = term.lower()
        return [
            record
            for record in self.records
            if any(needle in item.value.lower() for item in record.fields)
        ]

    def stats(self) -> Dict[str, int]:
        return {
            "total": len(self.records),
            "pending": count_by_status(self.records, STATUS_PENDING),
            "validated": count_by_status(self.records, STATUS_VALIDATED),
            "generated": count_by_status(self.records, STATUS_GENERATED),
            "errors": count_by_status(self.records, STATUS_ERROR),
            "photos_matched": sum(1 for record in self.records if record.photo_matched),
        }
