import pytest

from certdesk.shared.fonts import (
    DEFAULT_FONT,
    FONT_TABLE,
    PDF_FONT_FAMILIES,
    build_font_table,
    get_font_options,
    resolve_font,
)


def test_every_family_has_four_variants():
    for family in PDF_FONT_FAMILIES:
        names = {FONT_TABLE[(family, b, i)].font_name for b in (False, True) for i in (False, True)}
        assert len(names) == 4


def test_resolve_known_combination():
    font = resolve_font("Times Roman", bold=True, italic=True)
    assert font.font_name == "Times-BoldItalic"


def test_unknown_family_falls_back_to_default_regular(caplog):
    caplog.set_level("WARNING", logger="certdesk.render")
    warnings = []
    font = resolve_font("Comic Sans", bold=True, warnings=warnings)
    assert font == DEFAULT_FONT
    assert font.font_name == "Helvetica"
    assert warnings
    assert any("[CERT-FONT]" in message for message in caplog.messages)


def test_incomplete_family_is_rejected():
    with pytest.raises(ValueError, match="4 variants"):
        build_font_table({"Helvetica": ("Helvetica", "Helvetica-Bold")})


def test_unknown_font_name_is_rejected():
    families = dict(PDF_FONT_FAMILIES)
    families["Fancy"] = ("Fancy", "Fancy-Bold", "Fancy-Italic", "Fancy-BoldItalic")
    with pytest.raises(ValueError, match="unknown fonts"):
        build_font_table(families)


def test_font_options_list_families():
    assert get_font_options() == ["Helvetica", "Times Roman", "Courier"]
