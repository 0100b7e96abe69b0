"""Associate uploaded photos with records by identifier."""
from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from bulk_types import PhotoMapping, Record


logger = logging.getLogger(__name__)


def is_image_file(path: Path) -> bool:
    mime_type, _ = mimetypes.guess_type(path.name)
    return bool(mime_type) and mime_type.startswith("image/")


def identifier_from_file_name(file_name: str) -> str:
    """``"S001.jpg"`` -> ``"S001"``; only the last extension is dropped."""

    return Path(file_name).stem.strip()


def photo_mapping_from_file(path: Path) -> Optional[PhotoMapping]:
    path = Path(path)
    if not path.is_file() or not is_image_file(path):
        return None
    return PhotoMapping(
        identifier=identifier_from_file_name(path.name),
        image=str(path),
        file_name=path.name,
    )


def load_photo_files(paths: Iterable[Path]) -> List[PhotoMapping]:
    photos = []
    for path in paths:
        mapping = photo_mapping_from_file(path)
        if mapping is None:
            logger.debug("Ignoring non-image upload %s", path)
            continue
        photos.append(mapping)
    return photos


def load_photo_directory(directory: Path) -> List[PhotoMapping]:
    """Photo mappings for every image directly inside ``directory``, by name."""

    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Photo directory not found: {directory}")
    return load_photo_files(sorted(directory.iterdir(), key=lambda p: p.name.lower()))


def find_photo(identifier: str, photos: Sequence[PhotoMapping]) -> Optional[PhotoMapping]:
    """Best photo for ``identifier``.

    Either string may contain the other, compared case-insensitively. An
    exact match wins over a substring match; between substring matches the
    one whose identifier length is closest wins, then upload order.
    """

    wanted = identifier.strip().lower()
    if not wanted:
        return None

    best = None
    best_rank = None
    for order, photo in enumerate(photos):
        candidate = photo.identifier.strip().lower()
        if not candidate:
            continue
        if candidate == wanted:
            return photo
        if candidate in wanted or wanted in candidate:
            rank = (abs(len(candidate) - len(wanted)), order)
            if best_rank is None or rank < best_rank:
                best, best_rank = photo, rank
    return best


def match_photos(records: Sequence[Record], photos: Sequence[PhotoMapping]) -> int:
    """Attach photos to records that have none; returns how many were matched.

    Records that already carry a photo, from the sheet or a manual upload,
    are left alone, so calling this again with the same inputs changes
    nothing and returns 0.
    """

    if not records or not photos:
        return 0

    matched = 0
    for record in records:
        if record.profile_photo:
            continue
        identifier = record.identifier
        if not identifier:
            continue
        photo = find_photo(identifier, photos)
        if photo is None:
            continue
        record.profile_photo = photo.image
        record.photo_matched = True
        matched += 1
        logger.debug("Row %d matched photo %s", record.row_index, photo.file_name)
    return matched
