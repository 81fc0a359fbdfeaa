from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field as dc_field
from io import BytesIO
from typing import Sequence

from PIL import Image, UnidentifiedImageError
from reportlab.lib.colors import HexColor
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from .coordinates import map_point
from .fields import ResolvedField
from .fonts import resolve_font

logger = logging.getLogger("certdesk.render")

# A4 landscape canvas used for certificates, in points.
CERTIFICATE_CANVAS: tuple[float, float] = (842.0, 595.0)
ASPECT_TOLERANCE = 0.02

_HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")
_SUPPORTED_FORMATS = {"PNG", "JPEG"}


class DocumentRenderError(RuntimeError):
    """Raised when a template image cannot be used to render a document."""


@dataclass
class TemplatePage:
    image_bytes: bytes
    fields: Sequence[ResolvedField]
    source_size: tuple[float | None, float | None] = (None, None)


@dataclass
class RenderResult:
    pdf_bytes: bytes
    warnings: list[str] = dc_field(default_factory=list)


def inspect_image(image_bytes: bytes) -> tuple[int, int, str]:
    """Return ``(width, height, format)`` of a PNG/JPEG template image."""
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            img.verify()
        with Image.open(BytesIO(image_bytes)) as img:
            width, height = img.size
            fmt = (img.format or "").upper()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise DocumentRenderError(f"Template image is unreadable: {exc}") from exc
    if fmt not in _SUPPORTED_FORMATS:
        raise DocumentRenderError(f"Template must be PNG or JPG/JPEG, got {fmt or 'unknown'}")
    return width, height, fmt


def _fill_color(color: str | None, warnings: list[str]):
    if not color:
        return None
    if _HEX_COLOR_RE.match(color):
        return HexColor(color)
    warnings.append(f"Unsupported color {color!r}; using black.")
    return None


def _draw_page(
    c: canvas.Canvas,
    page: TemplatePage,
    canvas_size: tuple[float, float],
    warnings: list[str],
) -> None:
    width, height = canvas_size
    img_w, img_h, _ = inspect_image(page.image_bytes)
    source_w, source_h = page.source_size

    if img_h and abs(img_w / img_h - width / height) > ASPECT_TOLERANCE * (width / height):
        message = (
            f"Template aspect {img_w}x{img_h} differs from canvas "
            f"{width:g}x{height:g}; background is stretched."
        )
        logger.warning("[CERT-RENDER] %s", message)
        warnings.append(message)

    c.drawImage(ImageReader(BytesIO(page.image_bytes)), 0, 0, width=width, height=height)

    for resolved in page.fields:
        tf = resolved.field
        if not tf.active:
            continue
        font = resolve_font(tf.font_family, tf.bold, tf.italic, warnings=warnings)
        x_pdf, y_pdf = map_point(tf.x, tf.y, source_w, source_h, width, height, warnings)
        text_width = stringWidth(resolved.text, font.font_name, tf.font_size)
        c.setFont(font.font_name, tf.font_size)
        color = _fill_color(tf.color, warnings)
        if color is None:
            c.setFillColorRGB(0, 0, 0)
        else:
            c.setFillColor(color)
        c.drawString(x_pdf - text_width / 2.0, y_pdf, resolved.text)


def render_pages(
    pages: Sequence[TemplatePage],
    canvas_size: tuple[float, float] = CERTIFICATE_CANVAS,
) -> RenderResult:
    """Render one PDF page per template page, in order."""
    if not pages:
        raise ValueError("At least one template page is required")
    warnings: list[str] = []
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=canvas_size)
    for page in pages:
        _draw_page(c, page, canvas_size, warnings)
        c.showPage()
    c.save()
    return RenderResult(buffer.getvalue(), warnings)


def render_document(
    template_image_bytes: bytes,
    fields: Sequence[ResolvedField],
    canvas_size: tuple[float, float] = CERTIFICATE_CANVAS,
    source_size: tuple[float | None, float | None] = (None, None),
) -> RenderResult:
    return render_pages(
        [TemplatePage(template_image_bytes, fields, source_size)], canvas_size
    )
