"""Category field sets and shared card design settings."""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple


CATEGORIES = ("school", "college", "corporate", "event", "custom")

CATEGORY_LABELS = {
    "school": "School",
    "college": "College",
    "corporate": "Corporate",
    "event": "Event / Organization",
    "custom": "Custom",
}

FIELD_LABELS = {
    "name": "Full Name",
    "rollNo": "Roll No",
    "class": "Class/Section",
    "grNo": "GR No",
    "dob": "Date of Birth",
    "bloodGroup": "Blood Group",
    "phone": "Phone",
    "address": "Address",
    "academicYear": "Academic Year",
    "emergencyContact": "Emergency Contact",
    "enrollmentNo": "Enrollment No",
    "department": "Department",
    "course": "Course",
    "employeeId": "Employee ID",
    "designation": "Designation",
    "joiningYear": "Joining Year",
    "participantId": "Participant ID",
    "role": "Role",
    "organization": "Organization",
    "email": "Email",
    "eventDate": "Event Date",
    "idNumber": "ID Number",
}

FIELD_KEYS = frozenset(FIELD_LABELS)

# Keys checked, in order, when looking for the value that identifies a person.
IDENTIFIER_KEYS = ("rollNo", "enrollmentNo", "employeeId", "participantId")

# (key, label override, enabled) per category, in display order.
_CATEGORY_FIELDS: Dict[str, Sequence[Tuple[str, Optional[str], bool]]] = {
    "school": (
        ("name", "Student Name", True),
        ("rollNo", None, True),
        ("class", None, True),
        ("grNo", None, True),
        ("dob", None, True),
        ("bloodGroup", None, True),
        ("phone", None, True),
        ("address", None, False),
        ("academicYear", None, False),
        ("emergencyContact", None, False),
    ),
    "college": (
        ("name", "Student Name", True),
        ("enrollmentNo", None, True),
        ("department", None, True),
        ("course", None, True),
        ("dob", None, True),
        ("bloodGroup", None, True),
        ("phone", None, True),
        ("address", None, False),
        ("academicYear", None, False),
        ("emergencyContact", None, False),
    ),
    "corporate": (
        ("name", "Employee Name", True),
        ("employeeId", None, True),
        ("designation", None, True),
        ("department", None, True),
        ("dob", None, True),
        ("bloodGroup", None, True),
        ("phone", None, True),
        ("joiningYear", None, False),
        ("address", None, False),
        ("emergencyContact", None, False),
    ),
    "event": (
        ("name", "Attendee Name", True),
        ("participantId", None, True),
        ("role", None, True),
        ("organization", None, True),
        ("phone", None, True),
        ("email", None, False),
        ("eventDate", None, False),
    ),
    "custom": (
        ("name", "Full Name", True),
        ("idNumber", None, True),
        ("designation", None, True),
        ("department", None, True),
        ("dob", None, False),
        ("bloodGroup", None, False),
        ("phone", None, False),
        ("address", None, False),
    ),
}

SIGNATORY_TITLES = {
    "school": "Principal",
    "college": "Director",
    "corporate": "Director",
    "event": "Director",
    "custom": "Director",
}


class CardSize(NamedTuple):
    label: str
    width: int
    height: int


CARD_SIZES: Dict[str, CardSize] = {
    "school-student": CardSize("School Student", 306, 192),
    "school-teacher": CardSize("School Teacher", 324, 204),
    "cr80": CardSize("CR80 (Standard)", 324, 204),
    "cr79": CardSize("CR79", 316, 200),
    "cr100": CardSize("CR100", 372, 252),
    "iso-a8": CardSize("ISO A8", 396, 280),
    "iso-b8": CardSize("ISO B8", 468, 330),
    "half-credit": CardSize("Half Credit Card", 162, 204),
    "military": CardSize("Military CAC", 324, 204),
    "key-tag": CardSize("Key Tag", 252, 108),
    "oversized": CardSize("Oversized", 432, 288),
    "custom-square": CardSize("Square Badge", 288, 288),
}

DEFAULT_CARD_SIZES = {
    "school": "school-student",
    "college": "cr80",
    "corporate": "cr80",
    "event": "cr80",
    "custom": "cr80",
}


_HEX_COLOR_RE = re.compile(r"^#(?:[0-9a-fA-F]{3}){1,2}$")


def _check_category(category: str) -> str:
    if category not in _CATEGORY_FIELDS:
        raise ValueError(
            f"Unknown category {category!r}; expected one of {', '.join(CATEGORIES)}"
        )
    return category


def _check_key(key: str) -> str:
    if key not in FIELD_KEYS:
        raise KeyError(f"Unknown field key: {key!r}")
    return key


@dataclass
class FieldValue:
    key: str
    label: str
    value: str = ""
    enabled: bool = True

    def __post_init__(self) -> None:
        _check_key(self.key)


def default_fields(category: str) -> List[FieldValue]:
    """Return a fresh copy of the default field list for ``category``."""

    _check_category(category)
    return [
        FieldValue(key, label or FIELD_LABELS[key], "", enabled)
        for key, label, enabled in _CATEGORY_FIELDS[category]
    ]


def get_field_value(fields: Sequence[FieldValue], key: str) -> str:
    _check_key(key)
    for item in fields:
        if item.key == key:
            return item.value
    return ""


def extract_identifier(fields: Sequence[FieldValue]) -> str:
    """Return the first non-empty identifier value, or an empty string."""

    for key in IDENTIFIER_KEYS:
        value = get_field_value(fields, key).strip()
        if value:
            return value
    return ""


@dataclass
class CardDesign:
    """Design settings applied to every card of a bulk run."""

    category: str = "school"
    institution_name: str = ""
    institution_address: str = ""
    layout: str = "vertical"
    card_shape: str = "rounded"
    card_size: str = "school-student"
    header_color: str = "#2563eb"
    footer_color: str = "#1e40af"
    text_color: str = "#000000"
    photo_size: int = 90
    profile_photo: Optional[str] = None
    institution_logo: Optional[str] = None
    authorized_signature: Optional[str] = None
    background_image: Optional[str] = None
    signatory_title: str = "Principal"

    def __post_init__(self) -> None:
        _check_category(self.category)
        if self.layout not in ("vertical", "horizontal"):
            raise ValueError(f"Unknown layout: {self.layout!r}")
        if self.card_shape not in ("rounded", "rectangular"):
            raise ValueError(f"Unknown card shape: {self.card_shape!r}")
        if self.card_size not in CARD_SIZES:
            raise ValueError(f"Unknown card size: {self.card_size!r}")
        for name in ("header_color", "footer_color", "text_color"):
            if not _HEX_COLOR_RE.match(getattr(self, name)):
                raise ValueError(f"{name} must be a hex colour such as #2563eb")
        if self.photo_size <= 0:
            raise ValueError("photo_size must be positive")

    @classmethod
    def for_category(cls, category: str, **overrides) -> "CardDesign":
        _check_category(category)
        settings = {
            "category": category,
            "card_size": DEFAULT_CARD_SIZES[category],
            "signatory_title": SIGNATORY_TITLES[category],
        }
        settings.update(overrides)
        return cls(**settings)

    def dimensions(self) -> Tuple[int, int]:
        """Card width and height in CSS pixels for the chosen layout."""

        size = CARD_SIZES[self.card_size]
        if self.layout == "vertical":
            return size.height, size.width
        return size.width, size.height


@dataclass
class RenderConfig:
    """Everything the renderer needs to draw one card."""

    design: CardDesign
    fields: List[FieldValue] = field(default_factory=list)
    profile_photo: Optional[str] = None

    @classmethod
    def compose(
        cls,
        design: CardDesign,
        fields: Sequence[FieldValue],
        profile_photo: Optional[str],
    ) -> "RenderConfig":
        return cls(
            design=replace(design),
            fields=[replace(item) for item in fields],
            profile_photo=profile_photo or design.profile_photo,
        )

    @property
    def name(self) -> str:
        return get_field_value(self.fields, "name")
