from io import BytesIO
import itertools

import pytest
from PyPDF2 import PdfReader

from certdesk.shared.packing import (
    A3,
    A4,
    draw_image_sheets,
    layout_pages,
    merge_pdf_sheets,
    pack,
    page_count,
)
from certdesk.shared.rendering import CERTIFICATE_CANVAS, render_document


def test_tickets_on_a3_pack_two_by_five():
    layout = pack(1200, 680, *A3, 5, 10, min_scale=0.2, max_per_page=10)
    assert (layout.cols, layout.rows, layout.items_per_page) == (2, 5, 10)
    assert layout.scale == pytest.approx(min(A3[0] / 2400, A3[1] / 3400))


def test_thirty_seven_tickets_span_four_pages():
    layout = pack(1200, 680, *A3, 5, 10, min_scale=0.2, max_per_page=10)
    placements = layout_pages(37, layout, 1200, 680, A3[1])
    per_page = [sum(1 for p in placements if p.page == n) for n in range(page_count(37, layout))]
    assert per_page == [10, 10, 10, 7]


@pytest.mark.parametrize(
    "item,page,max_cols,max_rows,min_scale",
    [
        ((1200, 680), A3, 5, 10, 0.2),
        ((842, 595), A4, 2, 4, 0.3),
        ((300, 300), A4, 4, 4, 0.2),
        ((50, 900), A4, 6, 3, 0.2),
    ],
)
def test_pack_is_optimal_and_feasible(item, page, max_cols, max_rows, min_scale):
    iw, ih = item
    pw, ph = page
    layout = pack(iw, ih, pw, ph, max_cols, max_rows, min_scale=min_scale)
    assert layout.cols * iw * layout.scale <= pw + 1e-6
    assert layout.rows * ih * layout.scale <= ph + 1e-6
    assert layout.scale <= 1
    for cols, rows in itertools.product(range(1, max_cols + 1), range(1, max_rows + 1)):
        scale = min(pw / (cols * iw), ph / (rows * ih), 1.0)
        if scale >= min_scale:
            assert cols * rows <= layout.items_per_page


def test_ties_prefer_larger_scale():
    # 1x2 and 2x1 both hold two items; the portrait page favours stacking.
    layout = pack(400, 200, 400, 800, 2, 2, min_scale=0.1, max_per_page=2)
    assert (layout.cols, layout.rows) == (1, 2)
    assert layout.scale == 1


def test_nothing_fits_degenerates_to_single_item():
    layout = pack(10000, 10000, *A4, 3, 3, min_scale=0.5)
    assert (layout.cols, layout.rows, layout.items_per_page) == (1, 1, 1)


def test_placement_rows_then_columns_from_top():
    layout = pack(100, 50, 200, 100, 2, 2, min_scale=0.1)
    placements = layout_pages(5, layout, 100, 50, 100)
    assert [(p.page, p.x, p.y) for p in placements] == [
        (0, 0, 50),
        (0, 100, 50),
        (0, 0, 0),
        (0, 100, 0),
        (1, 0, 50),
    ]


def test_zero_items_is_rejected():
    layout = pack(100, 50, 200, 100, 2, 2)
    with pytest.raises(ValueError):
        layout_pages(0, layout, 100, 50, 100)
    with pytest.raises(ValueError):
        draw_image_sheets([], (100, 50), A4, layout)


def test_draw_image_sheets_pages(png_bytes):
    images = [png_bytes(1200, 680) for _ in range(12)]
    layout = pack(1200, 680, *A3, 5, 10, max_per_page=10)
    reader = PdfReader(BytesIO(draw_image_sheets(images, (1200, 680), A3, layout)))
    assert len(reader.pages) == 2
    assert float(reader.pages[0].mediabox.height) == pytest.approx(A3[1])


def test_merge_pdf_sheets_packs_certificates_on_a4(png_bytes):
    certificate = render_document(png_bytes(), [], CERTIFICATE_CANVAS, (900, 636)).pdf_bytes
    pdf_bytes, layout = merge_pdf_sheets([certificate] * 3, A4)
    reader = PdfReader(BytesIO(pdf_bytes))
    assert (layout.cols, layout.rows) == (2, 4)
    assert layout.scale == pytest.approx(A4[0] / (2 * 842))
    assert len(reader.pages) == 1
    assert float(reader.pages[0].mediabox.width) == pytest.approx(A4[0])


def test_merge_pdf_sheets_carries_certificate_content_onto_each_sheet(png_bytes):
    certificate = render_document(png_bytes(), [], CERTIFICATE_CANVAS, (900, 636)).pdf_bytes
    pdf_bytes, layout = merge_pdf_sheets([certificate] * 9, A4)
    reader = PdfReader(BytesIO(pdf_bytes))
    assert layout.items_per_page == 8
    assert len(reader.pages) == 2
    for page in reader.pages:
        assert "/XObject" in page["/Resources"]
        assert float(page.mediabox.height) == pytest.approx(A4[1])
