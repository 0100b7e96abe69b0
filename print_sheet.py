"""Lay generated cards out on A3 pages for printing."""
from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Callable, Sequence

from PIL import Image
from reportlab.lib.pagesizes import A3
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from bulk_types import STATUS_GENERATED, Record


logger = logging.getLogger(__name__)

# ---------------- CONFIG ----------------
PAGE_W_MM, PAGE_H_MM = 297.0, 420.0
CARD_W_MM, CARD_H_MM = 57.0, 90.0
ROW_TOPS_MM = [9.697, 110.297, 219.697, 320.297]  # mm from top
COLS, ROWS = 5, 4
CARDS_PER_PAGE = COLS * ROWS
FIRST_COL_X_MM = 6.0
CUT_LINE_WIDTH = 0.25


def mm_to_bottom_left_y(top_mm: float, box_h_mm: float) -> float:
    """Convert top-Y mm to ReportLab bottom-left coordinate."""
    return PAGE_H_MM - top_mm - box_h_mm


def _card_image(record: Record) -> Image.Image:
    image = Image.open(io.BytesIO(record.generated_image))
    image.load()
    # landscape cards are turned to fit the portrait slots
    if image.width > image.height:
        image = image.rotate(90, expand=True)
    return image


def make_print_sheet(
    records: Sequence[Record],
    out_pdf: Path,
    *,
    cut_lines: bool = True,
    log_fn: Callable[[str], None] = print,
) -> int:
    """Place every generated card on A3 pages in stored order; returns pages written."""

    cards = [record for record in records if record.status == STATUS_GENERATED]
    if not cards:
        raise ValueError("No generated cards to lay out")

    out_pdf = Path(out_pdf)
    out_pdf.parent.mkdir(parents=True, exist_ok=True)
    c = canvas.Canvas(str(out_pdf), pagesize=A3)
    col_xs = [FIRST_COL_X_MM + i * CARD_W_MM for i in range(COLS)]
    row_bottoms = [mm_to_bottom_left_y(t, CARD_H_MM) for t in ROW_TOPS_MM]
    pages = 0

    for slot_index, record in enumerate(cards):
        slot = slot_index % CARDS_PER_PAGE
        if slot == 0:
            if slot_index > 0:
                c.showPage()
            pages += 1
        row, col = divmod(slot, COLS)
        x, y = col_xs[col] * mm, row_bottoms[row] * mm

        c.drawImage(
            ImageReader(_card_image(record)),
            x,
            y,
            width=CARD_W_MM * mm,
            height=CARD_H_MM * mm,
            mask="auto",
        )
        if cut_lines:
            c.setLineWidth(CUT_LINE_WIDTH)
            c.rect(x, y, CARD_W_MM * mm, CARD_H_MM * mm, stroke=1, fill=0)
        logger.debug("Placed row %d on page %d slot %d", record.row_index, pages, slot)

    c.save()
    log_fn(f"Print sheet saved to {out_pdf} ({len(cards)} card(s), {pages} page(s))")
    return pages
