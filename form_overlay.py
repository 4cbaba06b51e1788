import argparse
import hashlib
import io
import json
import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError
from reportlab.lib.colors import Color
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen import canvas

from form_coords import (
    DEFAULT_FONT,
    FontSet,
    PageGeometry,
    RenderContext,
    scale_factors,
    to_pdf_point,
    to_pdf_x,
    to_pdf_y_raw,
)
from form_errors import ConfigurationError, FontLoadError
from form_mapping import CheckSpot, MappingDocument, MappingMeta, TextSpot, WrapBox, load_mapping_file
from form_settings import Settings, configure_logging, first_existing_path, load_settings_from_dotenv
from form_values import as_text, checkbox_matches, record_from_payload, resolve

logger = logging.getLogger(__name__)

LINE_HEIGHT_FACTOR = 1.2


@dataclass(frozen=True)
class TextDraw:
    page: int
    x: float
    y: float
    text: str
    font: str
    size: float


@dataclass(frozen=True)
class LineDraw:
    page: int
    x1: float
    y1: float
    x2: float
    y2: float
    width: float


DrawOp = Union[TextDraw, LineDraw]


@dataclass(frozen=True)
class FormJob:
    """Everything one generation needs, located and loaded from disk."""

    mapping: MappingDocument
    mapping_path: Path
    template_path: Path
    template_bytes: bytes
    font_path: Optional[Path]


def needs_embedded_font(text: str) -> bool:
    return any(ord(ch) > 127 for ch in text)


def register_embedded_font(font_path: Path) -> str:
    """Register ``font_path`` with reportlab once per resolved path and return its font name."""
    resolved = font_path.resolve()
    digest = hashlib.sha1(str(resolved).encode("utf-8")).hexdigest()[:8]
    font_name = f"Embedded-{font_path.stem}-{digest}"
    if font_name in pdfmetrics.getRegisteredFontNames():
        return font_name
    try:
        pdfmetrics.registerFont(TTFont(font_name, str(font_path)))
    except Exception as exc:
        raise FontLoadError(f"{font_path.name} load failed: {exc}") from exc
    logger.info("Registered font %s from %s", font_name, font_path)
    return font_name


def load_fonts(font_path: Optional[Path], wanted: bool) -> FontSet:
    """Fonts for one render. The TTF is only touched when a value needs it."""
    if not wanted:
        return FontSet()
    if font_path is None:
        logger.warning("Embedded font not found, falling back to %s. Non-ASCII text will not render.", DEFAULT_FONT)
        return FontSet()
    try:
        return FontSet(embedded=register_embedded_font(font_path))
    except FontLoadError as exc:
        logger.warning("%s Falling back to %s.", exc, DEFAULT_FONT)
        return FontSet()


def wrap_text_to_lines(font_name: str, text: str, size: float, max_width: float, max_lines: int = 2) -> list[str]:
    """Break *text* into at most *max_lines* lines that each fit within *max_width* pt.

    Greedy word-wrap over word/whitespace runs. A word wider than the box is
    split between characters. Lines past *max_lines* are dropped without an
    ellipsis; text that already fits comes back unchanged as a single line.
    """
    max_lines = max(1, int(max_lines))
    if max_width <= 0 or ("\n" not in text and pdfmetrics.stringWidth(text, font_name, size) <= max_width):
        return [text]

    def fits(candidate: str) -> bool:
        return pdfmetrics.stringWidth(candidate, font_name, size) <= max_width

    result: list[str] = []
    for paragraph in text.replace("\r\n", "\n").split("\n"):
        current = ""
        for token in re.findall(r"\S+|\s+", paragraph):
            if token.isspace():
                if current:
                    current += token
                continue
            if fits(current + token):
                current += token
                continue
            if current.strip():
                result.append(current.rstrip())
            current = ""
            if fits(token):
                current = token
                continue
            for ch in token:
                if current and not fits(current + ch):
                    result.append(current)
                    current = ""
                current += ch
        result.append(current.rstrip())
        if len(result) >= max_lines:
            break
    return result[:max_lines] or [""]


def _field_value(mapping: MappingDocument, data: dict, key: str) -> str:
    if data.get(key) is not None:
        return as_text(data[key])
    return mapping.defaults.get(key, "")


def select_text_font(ctx: RenderContext, spot: TextSpot, value: str) -> str:
    if spot.font == "embedded" and ctx.fonts.embedded and needs_embedded_font(value):
        return ctx.fonts.embedded
    return ctx.fonts.default


def select_check_font(ctx: RenderContext, spot: CheckSpot) -> str:
    if ctx.fonts.embedded and needs_embedded_font(spot.char):
        return ctx.fonts.embedded
    return ctx.fonts.default


def wants_embedded_font(mapping: MappingDocument, data: dict) -> bool:
    for key, spots in mapping.text.items():
        if any(s.font == "embedded" for s in spots) and needs_embedded_font(_field_value(mapping, data, key)):
            return True
    for compound, spots in mapping.checkbox.items():
        if any(needs_embedded_font(s.char) for s in spots) and checkbox_matches(compound, data):
            return True
    return False


def _plan_text(ctx: RenderContext, spot: TextSpot, value: str, box: Optional[WrapBox]) -> list[DrawOp]:
    font = select_text_font(ctx, spot, value)
    x, y = to_pdf_point(spot.x, spot.y, "point", ctx, spot.page, font, spot.size)
    if box is None or box.max_width <= 0:
        return [TextDraw(spot.page, x, y, value, font, spot.size)]

    sx, sy = scale_factors(ctx, spot.page)
    lines = wrap_text_to_lines(font, value, spot.size, box.max_width * sx, box.max_lines)
    step = box.line_height * sy if box.line_height else spot.size * LINE_HEIGHT_FACTOR
    return [
        TextDraw(spot.page, x, y - i * step, line, font, spot.size)
        for i, line in enumerate(lines)
        if line
    ]


def plan_draws(ctx: RenderContext, mapping: MappingDocument, data: dict) -> list[DrawOp]:
    """Turn the mapping and resolved record into positioned draw operations."""
    ops: list[DrawOp] = []
    boxes = mapping.wrap_boxes()

    for key, spots in mapping.text.items():
        value = _field_value(mapping, data, key)
        if not value:
            continue
        for spot in spots:
            box = boxes.get(spot.wrap_key or "") or boxes.get(key)
            ops.extend(_plan_text(ctx, spot, value, box))

    for compound, spots in mapping.checkbox.items():
        if not checkbox_matches(compound, data):
            continue
        for spot in spots:
            font = select_check_font(ctx, spot)
            x, y = to_pdf_point(spot.x, spot.y, "point", ctx, spot.page, font, spot.size)
            ops.append(TextDraw(spot.page, x, y, spot.char, font, spot.size))

    for line in mapping.lines:
        x1, y1 = to_pdf_point(line.x1, line.y1, "line", ctx, line.page)
        x2, y2 = to_pdf_point(line.x2, line.y2, "line", ctx, line.page)
        ops.append(LineDraw(line.page, x1, y1, x2, y2, line.width))

    return ops


def draw_grid(c: canvas.Canvas, ctx: RenderContext, page: int, step: float) -> None:
    """Light calibration grid every *step* mapping units."""
    if step <= 0:
        return
    geom = ctx.page(page)
    sx, sy = scale_factors(ctx, page)
    c.saveState()
    c.setStrokeColor(Color(0.75, 0.75, 0.75, alpha=0.35))
    c.setLineWidth(0.35)
    x = 0.0
    while x * sx <= geom.width:
        px = to_pdf_x(x, ctx, page)
        c.line(px, 0, px, geom.height)
        x += step
    y = 0.0
    while y * sy <= geom.height:
        py = to_pdf_y_raw(y, ctx, page)
        c.line(0, py, geom.width, py)
        y += step
    c.restoreState()


def draw_overlay(ctx: RenderContext, page: int, ops: list[DrawOp], grid_step: float = 0.0) -> bytes:
    geom = ctx.page(page)
    packet = io.BytesIO()
    c = canvas.Canvas(packet, pagesize=(geom.width, geom.height))

    draw_grid(c, ctx, page, grid_step)

    c.setFillColor(Color(0, 0, 0))
    c.setStrokeColor(Color(0, 0, 0))
    for op in ops:
        if isinstance(op, LineDraw):
            c.setLineWidth(op.width)
            c.line(op.x1, op.y1, op.x2, op.y2)
        else:
            c.setFont(op.font, op.size)
            c.drawString(op.x, op.y, op.text)

    c.showPage()
    c.save()
    return packet.getvalue()


def read_template(template_bytes: bytes) -> PdfReader:
    try:
        reader = PdfReader(io.BytesIO(template_bytes))
        if len(reader.pages) == 0:
            raise ConfigurationError("Base PDF has no pages.")
    except (PyPdfError, OSError, ValueError) as exc:
        raise ConfigurationError(f"Base PDF could not be loaded: {exc}") from exc
    return reader


def build_render_context(reader: PdfReader, meta: MappingMeta, fonts: FontSet) -> RenderContext:
    pages = tuple(
        PageGeometry(float(page.mediabox.width), float(page.mediabox.height))
        for page in reader.pages
    )
    return RenderContext(meta=meta, pages=pages, fonts=fonts)


def render(
    template_bytes: bytes,
    mapping: MappingDocument,
    data: dict,
    font_path: Optional[Path] = None,
    grid_step: float = 0.0,
) -> bytes:
    """Draw the resolved record onto the template and return the PDF bytes.

    When nothing is drawn the template bytes are returned untouched.
    """
    reader = read_template(template_bytes)
    fonts = load_fonts(font_path, wants_embedded_font(mapping, data))
    ctx = build_render_context(reader, mapping.meta, fonts)

    ops = plan_draws(ctx, mapping, data)
    if not ops and grid_step <= 0:
        return template_bytes

    by_page: dict[int, list[DrawOp]] = defaultdict(list)
    for op in ops:
        by_page[op.page].append(op)

    writer = PdfWriter(clone_from=reader)
    for number, page in enumerate(writer.pages, start=1):
        if by_page.get(number) or grid_step > 0:
            overlay_bytes = draw_overlay(ctx, number, by_page.get(number, []), grid_step)
            page.merge_page(PdfReader(io.BytesIO(overlay_bytes)).pages[0])

    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


def prepare_job(
    settings: Settings,
    mapping_path: Optional[Path] = None,
    template_path: Optional[Path] = None,
    font_path: Optional[Path] = None,
    strict_mapping: Optional[bool] = None,
) -> FormJob:
    """Load the mapping, then locate and read the template and font it needs."""
    mapping_path = mapping_path or settings.mapping_path
    strict = settings.strict_mapping if strict_mapping is None else strict_mapping
    mapping = load_mapping_file(mapping_path, strict=strict)

    pdf_rel = mapping.meta.pdf_path
    if template_path is None:
        template_path = first_existing_path(settings.template_candidates(pdf_rel))
    if template_path is None or not template_path.is_file():
        logger.error("Base PDF not found: %s (root=%s)", pdf_rel, settings.root_dir)
        raise ConfigurationError(f"Base PDF not found: {template_path or pdf_rel}")
    try:
        template_bytes = template_path.read_bytes()
    except OSError as exc:
        raise ConfigurationError(f"Base PDF could not be read: {template_path}: {exc}") from exc

    if font_path is None:
        font_path = first_existing_path(settings.font_candidates())

    return FormJob(
        mapping=mapping,
        mapping_path=mapping_path,
        template_path=template_path,
        template_bytes=template_bytes,
        font_path=font_path,
    )


def describe(job: FormJob, data: Optional[dict] = None) -> dict:
    """Diagnostic payload for troubleshooting placement without rendering."""
    mapping = job.mapping
    meta = mapping.meta
    info: dict = {
        "templatePath": str(job.template_path),
        "mappingPath": str(job.mapping_path),
        "mappingExists": job.mapping_path.is_file(),
        "fontPath": str(job.font_path) if job.font_path else None,
        "meta": meta.model_dump(by_alias=True),
        "counts": {
            "text": len(mapping.text),
            "textSpots": sum(len(spots) for spots in mapping.text.values()),
            "checkbox": len(mapping.checkbox),
            "checkSpots": sum(len(spots) for spots in mapping.checkbox.values()),
            "lines": len(mapping.lines),
        },
        "wrap": {key: box.model_dump(by_alias=True) for key, box in mapping.wrap_boxes().items()},
    }

    reader = read_template(job.template_bytes)
    ctx = build_render_context(reader, meta, FontSet())
    pages = []
    for number, geom in enumerate(ctx.pages, start=1):
        sx, sy = scale_factors(ctx, number)
        pages.append(
            {
                "page": number,
                "width": geom.width,
                "height": geom.height,
                "scaleX": sx,
                "scaleY": sy,
                "offsetX": meta.nudge_x,
                "offsetY": meta.nudge_y,
            }
        )
    info["pages"] = pages
    if data is not None:
        info["embeddedFontNeeded"] = wants_embedded_font(mapping, data)
    return info


def render_preview_png(pdf_bytes: bytes, output_path: Path, preview_width: float = 0.0) -> None:
    """Rasterize page 1 at the mapping's preview width for side-by-side checks."""
    try:
        import fitz
    except ImportError as exc:
        raise RuntimeError("PyMuPDF is required for --preview-png. Install pymupdf.") from exc

    doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    page = doc[0]
    zoom = preview_width / page.rect.width if preview_width else 1.0
    pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom))
    output_path.parent.mkdir(parents=True, exist_ok=True)
    pix.save(str(output_path))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fill the TOP subscription form template with applicant data."
    )
    parser.add_argument("--template", help="Template PDF (default: resolved from the mapping's pdfPath).")
    parser.add_argument("--mapping", help="Mapping JSON (default: TOPFORM_MAPPING_PATH or mappings/TOP.json).")
    parser.add_argument("--data-json", help="JSON file with {\"data\": {...}} or a flat field map.")
    parser.add_argument("--output", help="Output PDF path.")
    parser.add_argument("--font-path", help="TTF used for non-ASCII values (default: malgun.ttf candidates).")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Print resolved paths, metadata and scale factors as JSON instead of rendering.",
    )
    parser.add_argument(
        "--grid-step",
        type=float,
        default=0.0,
        help="Draw a light calibration grid every N mapping units. 0 disables grid.",
    )
    parser.add_argument("--preview-png", help="Also write page 1 of the output as a PNG at preview width.")
    parser.add_argument(
        "--strict-mapping",
        action="store_true",
        help="Fail instead of falling back to an empty mapping when the mapping is invalid.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings_from_dotenv()
    configure_logging(settings.log_level)

    job = prepare_job(
        settings,
        mapping_path=Path(args.mapping) if args.mapping else None,
        template_path=Path(args.template) if args.template else None,
        font_path=Path(args.font_path) if args.font_path else None,
        strict_mapping=True if args.strict_mapping else None,
    )

    data: dict = {}
    if args.data_json:
        data = record_from_payload(json.loads(Path(args.data_json).read_text(encoding="utf-8")))
    resolve(data)

    if args.debug:
        print(json.dumps(describe(job, data), indent=2, ensure_ascii=False))
        return

    if not args.output:
        raise ValueError("Provide --output.")
    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    pdf_bytes = render(job.template_bytes, job.mapping, data, job.font_path, args.grid_step)
    output_path.write_bytes(pdf_bytes)
    print(f"Wrote: {output_path}")

    if args.preview_png:
        preview_path = Path(args.preview_png)
        render_preview_png(pdf_bytes, preview_path, job.mapping.meta.preview_width)
        print(f"Wrote preview: {preview_path}")


if __name__ == "__main__":
    main()
