"""Grid packing of equally sized items onto fixed-size pages."""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Iterator, Sequence

from PyPDF2 import PageObject, PdfReader, PdfWriter, Transformation
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

A4: tuple[float, float] = (595.28, 841.89)
A3: tuple[float, float] = (841.89, 1190.55)

CUT_GUIDE_WIDTH = 0.7
CUT_GUIDE_GREY = 0.7


@dataclass(frozen=True)
class SheetLayout:
    cols: int
    rows: int
    scale: float
    items_per_page: int


@dataclass(frozen=True)
class Placement:
    index: int
    page: int
    x: float
    y: float
    width: float
    height: float


def pack(
    item_w: float,
    item_h: float,
    page_w: float,
    page_h: float,
    max_cols: int,
    max_rows: int,
    *,
    min_scale: float = 0.2,
    max_per_page: int | None = None,
) -> SheetLayout:
    """Pick the grid that fits the most items per page.

    Every ``cols x rows`` combination up to the limits is tried. Ties on the
    item count go to the larger scale. When no grid satisfies ``min_scale``
    the result is a single item per page.
    """
    if item_w <= 0 or item_h <= 0:
        raise ValueError(f"Item size must be positive, got {item_w}x{item_h}")
    if page_w <= 0 or page_h <= 0:
        raise ValueError(f"Page size must be positive, got {page_w}x{page_h}")
    if max_cols < 1 or max_rows < 1:
        raise ValueError("max_cols and max_rows must be at least 1")

    best: SheetLayout | None = None
    for cols in range(1, max_cols + 1):
        for rows in range(1, max_rows + 1):
            count = cols * rows
            if max_per_page is not None and count > max_per_page:
                continue
            scale = min(page_w / (cols * item_w), page_h / (rows * item_h), 1.0)
            if scale < min_scale:
                continue
            if (
                best is None
                or count > best.items_per_page
                or (count == best.items_per_page and scale > best.scale)
            ):
                best = SheetLayout(cols, rows, scale, count)
    if best is None:
        scale = min(page_w / item_w, page_h / item_h, 1.0)
        best = SheetLayout(1, 1, scale, 1)
    return best


def page_count(item_count: int, layout: SheetLayout) -> int:
    return -(-item_count // layout.items_per_page)


def layout_pages(
    item_count: int,
    layout: SheetLayout,
    item_w: float,
    item_h: float,
    page_h: float,
) -> list[Placement]:
    """Place items row by row, column by column, starting a page when full."""
    if item_count <= 0:
        raise ValueError("Nothing to pack: item count must be at least 1")
    width = item_w * layout.scale
    height = item_h * layout.scale
    placements = []
    for index in range(item_count):
        page, slot = divmod(index, layout.items_per_page)
        row, col = divmod(slot, layout.cols)
        placements.append(
            Placement(
                index=index,
                page=page,
                x=col * width,
                y=page_h - (row + 1) * height,
                width=width,
                height=height,
            )
        )
    return placements


def _by_page(placements: Sequence[Placement]) -> Iterator[list[Placement]]:
    current: list[Placement] = []
    for placement in placements:
        if current and placement.page != current[0].page:
            yield current
            current = []
        current.append(placement)
    if current:
        yield current


def _draw_cut_guide(c: canvas.Canvas, placement: Placement) -> None:
    c.setStrokeColorRGB(CUT_GUIDE_GREY, CUT_GUIDE_GREY, CUT_GUIDE_GREY)
    c.setLineWidth(CUT_GUIDE_WIDTH)
    c.rect(placement.x, placement.y, placement.width, placement.height, stroke=1, fill=0)


def draw_image_sheets(
    images: Sequence[bytes],
    item_size: tuple[float, float],
    page_size: tuple[float, float],
    layout: SheetLayout,
) -> bytes:
    """Pack raster images (e.g. tickets) into a multi-page PDF."""
    if not images:
        raise ValueError("Nothing to pack: no images given")
    page_w, page_h = page_size
    placements = layout_pages(len(images), layout, item_size[0], item_size[1], page_h)
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=(page_w, page_h))
    for page in _by_page(placements):
        for placement in page:
            c.drawImage(
                ImageReader(BytesIO(images[placement.index])),
                placement.x,
                placement.y,
                width=placement.width,
                height=placement.height,
            )
            _draw_cut_guide(c, placement)
        c.showPage()
    c.save()
    return buffer.getvalue()


def _cut_guide_overlay(
    page_placements: Sequence[Placement], page_size: tuple[float, float]
) -> PageObject:
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=page_size)
    for placement in page_placements:
        _draw_cut_guide(c, placement)
    c.showPage()
    c.save()
    return PdfReader(BytesIO(buffer.getvalue())).pages[0]


def merge_pdf_sheets(
    documents: Sequence[bytes],
    page_size: tuple[float, float],
    *,
    max_cols: int = 2,
    max_rows: int = 4,
    min_scale: float = 0.3,
) -> tuple[bytes, SheetLayout]:
    """Pack the first page of each PDF onto sheets of ``page_size``.

    The grid is sized from the first document's page box.
    """
    if not documents:
        raise ValueError("Nothing to pack: no documents given")
    sources = [PdfReader(BytesIO(data)).pages[0] for data in documents]
    item_w = float(sources[0].mediabox.width)
    item_h = float(sources[0].mediabox.height)
    page_w, page_h = page_size
    layout = pack(item_w, item_h, page_w, page_h, max_cols, max_rows, min_scale=min_scale)
    placements = layout_pages(len(sources), layout, item_w, item_h, page_h)

    writer = PdfWriter()
    for page_placements in _by_page(placements):
        sheet = PageObject.create_blank_page(width=page_w, height=page_h)
        for placement in page_placements:
            source = sources[placement.index]
            sx = placement.width / float(source.mediabox.width)
            sy = placement.height / float(source.mediabox.height)
            source.add_transformation(
                Transformation().scale(sx, sy).translate(placement.x, placement.y)
            )
            sheet.merge_page(source)
        sheet.merge_page(_cut_guide_overlay(page_placements, page_size))
        writer.add_page(sheet)
    out = BytesIO()
    writer.write(out)
    return out.getvalue(), layout
