from io import BytesIO

import pytest
from PyPDF2 import PdfReader

from certdesk.shared.fields import FieldKey, ResolvedField, TemplateField
from certdesk.shared.rendering import (
    DocumentRenderError,
    TemplatePage,
    inspect_image,
    render_document,
    render_pages,
)


def _fields():
    return [
        ResolvedField(TemplateField(key=FieldKey.NAME, x=450, y=300, font_size=32, bold=True), "JANE DOE"),
        ResolvedField(TemplateField(key=FieldKey.NUMBER, x=450, y=560, font_family="Courier"), "312/jds/III/2025"),
    ]


def test_render_document_produces_single_landscape_page(png_bytes):
    result = render_document(png_bytes(), _fields(), source_size=(900, 636))
    reader = PdfReader(BytesIO(result.pdf_bytes))
    assert len(reader.pages) == 1
    box = reader.pages[0].mediabox
    assert float(box.width) == pytest.approx(842)
    assert float(box.height) == pytest.approx(595)
    text = reader.pages[0].extract_text()
    assert "JANE DOE" in text
    assert "312/jds/III/2025" in text
    assert result.warnings == []


def test_jpeg_templates_are_accepted(png_bytes):
    result = render_document(png_bytes(fmt="JPEG"), _fields(), source_size=(900, 636))
    assert result.pdf_bytes.startswith(b"%PDF")


def test_aspect_mismatch_is_a_warning_not_an_error(png_bytes, caplog):
    caplog.set_level("WARNING", logger="certdesk.render")
    result = render_document(png_bytes(600, 600), _fields(), source_size=(600, 600))
    assert result.pdf_bytes.startswith(b"%PDF")
    assert any("stretched" in w for w in result.warnings)


def test_unknown_font_and_color_fall_back(png_bytes):
    field = TemplateField(key=FieldKey.LABEL, x=10, y=10, font_family="Papyrus", color="teal")
    result = render_document(png_bytes(), [ResolvedField(field, "hello")], source_size=(900, 636))
    assert len(result.warnings) == 2


def test_hex_color_is_accepted(png_bytes):
    field = TemplateField(key=FieldKey.LABEL, x=10, y=10, color="#1a2b3c")
    result = render_document(png_bytes(), [ResolvedField(field, "hello")], source_size=(900, 636))
    assert result.warnings == []


def test_missing_source_size_falls_back_with_warning(png_bytes):
    result = render_document(png_bytes(), _fields())
    assert any("unknown" in w for w in result.warnings)


def test_corrupt_image_raises_render_error():
    with pytest.raises(DocumentRenderError):
        render_document(b"\x89PNG\r\n\x1a\nnot really", _fields())


def test_unsupported_format_raises_render_error(png_bytes):
    with pytest.raises(DocumentRenderError, match="PNG or JPG"):
        inspect_image(png_bytes(fmt="GIF"))


def test_render_pages_keeps_page_order(png_bytes):
    pages = [
        TemplatePage(png_bytes(), [ResolvedField(TemplateField(key=FieldKey.LABEL, x=450, y=300), f"PAGE {n}")], (900, 636))
        for n in (1, 2, 3)
    ]
    reader = PdfReader(BytesIO(render_pages(pages).pdf_bytes))
    assert len(reader.pages) == 3
    assert "PAGE 2" in reader.pages[1].extract_text()


def test_render_pages_requires_a_page():
    with pytest.raises(ValueError):
        render_pages([])
