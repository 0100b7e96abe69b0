"""Pillow renderer turning a card configuration into a PNG image."""
from __future__ import annotations

import base64
import binascii
import io
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import httpx
from PIL import Image, ImageDraw, ImageFile, ImageFont, ImageOps

from bulk_types import ImageLoadError
from card_fields import CardDesign, FieldValue, RenderConfig

ImageFile.LOAD_TRUNCATED_IMAGES = True

logger = logging.getLogger(__name__)

DEFAULT_PIXEL_RATIO = 3
DEFAULT_HTTP_TIMEOUT = 15.0
DEFAULT_FONT = "DejaVuSans.ttf"
DEFAULT_BOLD_FONT = "DejaVuSans-Bold.ttf"

HEADER_TEXT_COLOR = "#ffffff"
LABEL_COLOR = "#6b7280"
RULE_COLOR = "#e5e7eb"
PLACEHOLDER_COLOR = "#e5e7eb"
PLACEHOLDER_ICON_COLOR = "#9ca3af"

MIN_FONT_SIZE = 5
CORNER_RADIUS = 12
PADDING = 12
FOOTER_BAR = 8
VERTICAL_FIELD_LIMIT = 6
HORIZONTAL_FIELD_LIMIT = 4


@lru_cache(maxsize=256)
def _load_font(font_path: Optional[str], size: int) -> ImageFont.ImageFont:
    size = max(1, int(size))
    if font_path:
        try:
            return ImageFont.truetype(font_path, size)
        except OSError:
            logger.debug("Font %s unavailable, using Pillow default", font_path)
    return ImageFont.load_default(size=size)


def _measure_text_width(font: ImageFont.ImageFont, text: str) -> float:
    if not text:
        return 0.0
    try:
        return float(font.getlength(text))
    except AttributeError:
        left, _, right, _ = font.getbbox(text)
        return float(right - left)


def _line_height(font: ImageFont.ImageFont) -> int:
    _, top, _, bottom = font.getbbox("Ag")
    return int(bottom - min(top, 0))


def _truncate_line_to_width(font: ImageFont.ImageFont, line: str, target_width: float) -> str:
    trimmed = line.rstrip()
    if not trimmed:
        return trimmed

    if _measure_text_width(font, trimmed) <= target_width:
        return trimmed

    ellipsis = "…"
    while trimmed and _measure_text_width(font, trimmed + ellipsis) > target_width:
        trimmed = trimmed[:-1].rstrip()

    return (trimmed + ellipsis) if trimmed else ellipsis


def fit_text(
    text: str,
    max_width: float,
    size: int,
    *,
    font_path: Optional[str] = DEFAULT_FONT,
    min_size: int = MIN_FONT_SIZE,
) -> Tuple[ImageFont.ImageFont, str]:
    """Largest font not above ``size`` that fits ``text`` in ``max_width``.

    When even ``min_size`` is too wide the text is cut with an ellipsis.
    """

    min_size = min(min_size, size)
    for candidate in range(size, min_size - 1, -1):
        font = _load_font(font_path, candidate)
        if _measure_text_width(font, text) <= max_width:
            return font, text
    font = _load_font(font_path, min_size)
    return font, _truncate_line_to_width(font, text, max_width)


def _decode_data_uri(reference: str) -> bytes:
    header, _, payload = reference.partition(",")
    if not payload:
        raise ValueError("data URI has no payload")
    if header.endswith(";base64"):
        return base64.b64decode(payload, validate=True)
    return payload.encode("utf-8")


class CardRenderer:
    """Draws cards following the single-card preview layout.

    Usable as a context manager so the HTTP client used for remote photos
    is closed afterwards.
    """

    def __init__(
        self,
        *,
        font_path: Optional[str] = DEFAULT_FONT,
        bold_font_path: Optional[str] = DEFAULT_BOLD_FONT,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.font_path = font_path
        self.bold_font_path = bold_font_path
        self.http_timeout = http_timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._asset_cache: Dict[str, Image.Image] = {}

    def __enter__(self) -> "CardRenderer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    # image loading

    def _fetch(self, url: str) -> bytes:
        if self._client is None:
            self._client = httpx.Client(timeout=self.http_timeout, follow_redirects=True)
        response = self._client.get(url)
        response.raise_for_status()
        return response.content

    def load_image(self, reference: str) -> Image.Image:
        """Open a photo given as a file path, ``data:`` URI or http(s) URL."""

        try:
            if reference.startswith("data:"):
                data = _decode_data_uri(reference)
            elif reference.startswith(("http://", "https://")):
                data = self._fetch(reference)
            else:
                data = Path(reference).read_bytes()
            image = Image.open(io.BytesIO(data))
            image.load()
        except (OSError, ValueError, binascii.Error, httpx.HTTPError) as exc:
            logger.warning("Could not load image %s: %s", reference[:80], exc)
            raise ImageLoadError(f"Could not load image {reference[:80]}") from exc
        return image.convert("RGBA")

    def _load_asset(self, reference: Optional[str]) -> Optional[Image.Image]:
        """Logos, signatures and backgrounds are shared by every card, so cache them."""

        if not reference:
            return None
        if reference not in self._asset_cache:
            self._asset_cache[reference] = self.load_image(reference)
        return self._asset_cache[reference]

    def prepare(self, design: CardDesign, pixel_ratio: int = DEFAULT_PIXEL_RATIO) -> None:
        """Load the assets every card shares; raises ``ImageLoadError`` for a bad one."""

        if pixel_ratio < 1:
            raise ValueError("pixel_ratio must be at least 1")
        for reference in (
            design.background_image,
            design.institution_logo,
            design.authorized_signature,
            design.profile_photo,
        ):
            self._load_asset(reference)

    # drawing

    def render(self, config: RenderConfig, pixel_ratio: int = DEFAULT_PIXEL_RATIO) -> bytes:
        image = self.draw(config, pixel_ratio)
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()

    def draw(self, config: RenderConfig, pixel_ratio: int = DEFAULT_PIXEL_RATIO) -> Image.Image:
        if pixel_ratio < 1:
            raise ValueError("pixel_ratio must be at least 1")
        design = config.design
        width, height = (value * pixel_ratio for value in design.dimensions())

        card = Image.new("RGBA", (width, height), "#ffffff")
        background = self._load_asset(design.background_image)
        if background is not None:
            card.alpha_composite(ImageOps.fit(background, (width, height)))

        photo = self.load_image(config.profile_photo) if config.profile_photo else None
        if design.layout == "vertical":
            self._draw_vertical(card, config, photo, pixel_ratio)
        else:
            self._draw_horizontal(card, config, photo, pixel_ratio)

        if design.card_shape == "rounded":
            mask = Image.new("L", card.size, 0)
            ImageDraw.Draw(mask).rounded_rectangle(
                (0, 0, width - 1, height - 1), radius=CORNER_RADIUS * pixel_ratio, fill=255
            )
            shaped = Image.new("RGBA", card.size, (0, 0, 0, 0))
            shaped.paste(card, (0, 0), mask)
            card = shaped
        return card

    def _text(
        self,
        draw: ImageDraw.ImageDraw,
        text: str,
        box: Tuple[int, int, int],
        size: int,
        fill: str,
        *,
        bold: bool = False,
        align: str = "center",
    ) -> int:
        """Draw ``text`` in the ``(x, y, width)`` box; returns the y below it."""

        x, y, width = box
        font, fitted = fit_text(
            text, width, size, font_path=self.bold_font_path if bold else self.font_path
        )
        text_width = _measure_text_width(font, fitted)
        if align == "center":
            x += (width - text_width) / 2
        elif align == "right":
            x += width - text_width
        draw.text((x, y), fitted, font=font, fill=fill)
        return y + _line_height(font)

    def _paste_photo(self, card: Image.Image, photo: Optional[Image.Image], center_x: int, top: int, diameter: int, ring: str, scale: int) -> None:
        mask = Image.new("L", (diameter, diameter), 0)
        ImageDraw.Draw(mask).ellipse((0, 0, diameter - 1, diameter - 1), fill=255)
        left = int(center_x - diameter / 2)

        if photo is not None:
            card.paste(ImageOps.fit(photo, (diameter, diameter)), (left, top), mask)
        else:
            draw = ImageDraw.Draw(card)
            draw.ellipse((left, top, left + diameter - 1, top + diameter - 1), fill=PLACEHOLDER_COLOR)
            head = diameter // 5
            cx, cy = left + diameter // 2, top + diameter // 2
            draw.ellipse((cx - head, cy - head * 2, cx + head, cy), fill=PLACEHOLDER_ICON_COLOR)
            draw.pieslice(
                (cx - head * 2, cy + head // 2, cx + head * 2, cy + head * 4),
                180, 360, fill=PLACEHOLDER_ICON_COLOR,
            )

        ImageDraw.Draw(card).ellipse(
            (left, top, left + diameter - 1, top + diameter - 1),
            outline=ring,
            width=max(1, 3 * scale),
        )

    def _draw_fields(self, draw: ImageDraw.ImageDraw, fields: List[FieldValue], box: Tuple[int, int, int], text_color: str, scale: int) -> int:
        x, y, width = box
        half = width // 2
        for item in fields:
            bottom = self._text(draw, f"{item.label}:", (x, y, half), 9 * scale, LABEL_COLOR, bold=True, align="left")
            self._text(draw, item.value or "--", (x + half, y, width - half), 9 * scale, text_color, align="right")
            y = bottom + 2 * scale
            draw.line((x, y, x + width, y), fill=RULE_COLOR, width=max(1, scale // 2))
            y += 3 * scale
        return y

    def _draw_signature(self, card: Image.Image, config: RenderConfig, center_x: int, bottom: int, scale: int) -> None:
        draw = ImageDraw.Draw(card)
        font = _load_font(self.font_path, 7 * scale)
        title_top = bottom - _line_height(font)
        self._text(draw, config.design.signatory_title, (center_x - 40 * scale, title_top, 80 * scale), 7 * scale, LABEL_COLOR)

        line_y = title_top - 2 * scale
        signature = self._scaled_asset(config.design.authorized_signature, (80 * scale, 24 * scale))
        if signature is not None:
            top = max(0, line_y - signature.height)
            card.alpha_composite(signature, (max(0, int(center_x - signature.width / 2)), top))
        else:
            draw.line((center_x - 40 * scale, line_y, center_x + 40 * scale, line_y), fill=config.design.text_color, width=max(1, scale // 2))

    def _scaled_asset(self, reference: Optional[str], bounds: Tuple[int, int]) -> Optional[Image.Image]:
        asset = self._load_asset(reference)
        if asset is None:
            return None
        scaled = asset.copy()
        scaled.thumbnail(bounds)
        return scaled

    def _enabled_fields(self, config: RenderConfig, limit: int) -> List[FieldValue]:
        return [item for item in config.fields if item.enabled and item.key != "name"][:limit]

    def _draw_vertical(self, card: Image.Image, config: RenderConfig, photo: Optional[Image.Image], scale: int) -> None:
        design = config.design
        width, height = card.size
        pad = PADDING * scale
        draw = ImageDraw.Draw(card)

        header_h = 56 * scale
        draw.rectangle((0, 0, width, header_h), fill=design.header_color)
        logo = self._scaled_asset(design.institution_logo, (width // 4, 32 * scale))
        text_left = pad
        if logo is not None:
            card.alpha_composite(logo, (pad, (header_h - logo.height) // 2))
            text_left += logo.width + 6 * scale
        text_width = width - text_left - pad
        y = self._text(draw, (design.institution_name or "Institution Name").upper(), (text_left, 12 * scale, text_width), 11 * scale, HEADER_TEXT_COLOR, bold=True)
        self._text(draw, design.institution_address or "Address", (text_left, y + 2 * scale, text_width), 8 * scale, HEADER_TEXT_COLOR)

        diameter = design.photo_size * scale
        photo_top = header_h + pad
        self._paste_photo(card, photo, width // 2, photo_top, diameter, design.header_color, scale)

        y = photo_top + diameter + 6 * scale
        y = self._text(draw, config.name or "Full Name", (pad, y, width - 2 * pad), 14 * scale, design.header_color, bold=True)
        y = self._draw_fields(draw, self._enabled_fields(config, VERTICAL_FIELD_LIMIT), (pad, y + 8 * scale, width - 2 * pad), design.text_color, scale)

        footer_top = height - FOOTER_BAR * scale
        self._draw_signature(card, config, width - pad - 40 * scale, footer_top - 4 * scale, scale)
        draw.rectangle((0, footer_top, width, height), fill=design.footer_color)

    def _draw_horizontal(self, card: Image.Image, config: RenderConfig, photo: Optional[Image.Image], scale: int) -> None:
        design = config.design
        width, height = card.size
        pad = PADDING * scale
        draw = ImageDraw.Draw(card)

        panel_w = int(width * 0.4)
        draw.rectangle((0, 0, panel_w, height), fill=design.header_color)
        inner = panel_w - 2 * pad
        y = pad
        logo = self._scaled_asset(design.institution_logo, (inner, 36 * scale))
        if logo is not None:
            card.alpha_composite(logo, ((panel_w - logo.width) // 2, pad))
            y += logo.height + 4 * scale
        y = self._text(draw, (design.institution_name or "Institution Name").upper(), (pad, y, inner), 10 * scale, HEADER_TEXT_COLOR, bold=True)
        y = self._text(draw, design.institution_address or "Address", (pad, y + 2 * scale, inner), 7 * scale, HEADER_TEXT_COLOR)

        diameter = min(design.photo_size * scale, inner)
        self._paste_photo(card, photo, panel_w // 2, y + 6 * scale, diameter, HEADER_TEXT_COLOR, scale)
        self._text(draw, config.name or "Full Name", (pad, y + diameter + 10 * scale, inner), 11 * scale, HEADER_TEXT_COLOR, bold=True)

        body_left = panel_w + pad
        body_w = width - body_left - pad - FOOTER_BAR * scale
        self._draw_fields(draw, self._enabled_fields(config, HORIZONTAL_FIELD_LIMIT), (body_left, pad, body_w), design.text_color, scale)
        self._draw_signature(card, config, body_left + body_w // 2, height - pad, scale)

        draw.rectangle((width - FOOTER_BAR * scale, 0, width, height), fill=design.footer_color)
