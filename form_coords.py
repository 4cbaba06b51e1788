"""
Coordinate conversion between mapping space and PDF space.

Mappings are authored against a preview image of the template: pixel units,
origin at the top-left corner, and the y of a text spot marks the top of the
glyph box. reportlab draws in points from the bottom-left corner and places
text by its baseline. Every draw call goes through to_pdf_point() so the two
systems are reconciled in one place.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from reportlab.pdfbase import pdfmetrics

from form_errors import RenderError
from form_mapping import MappingMeta

DEFAULT_FONT = "Helvetica"

SpotKind = Literal["point", "line"]


@dataclass(frozen=True)
class PageGeometry:
    width: float
    height: float


@dataclass(frozen=True)
class FontSet:
    """Registered font names available for one render."""

    default: str = DEFAULT_FONT
    embedded: Optional[str] = None


@dataclass(frozen=True)
class RenderContext:
    meta: MappingMeta
    pages: tuple[PageGeometry, ...]
    fonts: FontSet = FontSet()

    def page(self, number: int) -> PageGeometry:
        """Geometry of the 1-based page ``number``."""
        if number < 1 or number > len(self.pages):
            raise RenderError(f"Page {number} out of range. Template has {len(self.pages)} page(s).")
        return self.pages[number - 1]


def scale_factors(ctx: RenderContext, page: int = 1) -> tuple[float, float]:
    """Points per mapping unit along x and y, including the global scale."""
    geom = ctx.page(page)
    meta = ctx.meta
    if meta.units == "pt":
        return meta.scale_x, meta.scale_y
    preview_w = meta.preview_width or geom.width
    preview_h = meta.preview_height or geom.height
    return (geom.width / preview_w) * meta.scale_x, (geom.height / preview_h) * meta.scale_y


def to_pdf_x(x: float, ctx: RenderContext, page: int = 1) -> float:
    sx, _ = scale_factors(ctx, page)
    return x * sx + ctx.meta.nudge_x


def to_pdf_y_raw(y: float, ctx: RenderContext, page: int = 1) -> float:
    """Flip a mapping y into a bottom-origin point y, without any font correction."""
    _, sy = scale_factors(ctx, page)
    scaled = y * sy
    if ctx.meta.y_origin == "top":
        y_from_bottom = ctx.page(page).height - scaled
    else:
        y_from_bottom = scaled
    return y_from_bottom + ctx.meta.nudge_y


def font_ascent(font_name: str, size: float) -> float:
    return pdfmetrics.getAscent(font_name, size)


def to_pdf_point(
    x: float,
    y: float,
    kind: SpotKind,
    ctx: RenderContext,
    page: int = 1,
    font_name: Optional[str] = None,
    size: Optional[float] = None,
) -> tuple[float, float]:
    """Convert a mapping coordinate to the point reportlab should draw at.

    For ``kind="point"`` (text and check marks) the result is a baseline: the
    font's ascent at ``size`` is subtracted so the mapping y stays the top of
    the glyph. Lines map straight through.
    """
    pdf_x = to_pdf_x(x, ctx, page)
    pdf_y = to_pdf_y_raw(y, ctx, page)
    if kind == "point":
        if font_name is None or size is None:
            raise ValueError("font_name and size are required for text placement.")
        pdf_y -= font_ascent(font_name, size)
    return pdf_x, pdf_y
