from __future__ import annotations

import logging
from typing import Mapping, NamedTuple

from reportlab.pdfbase import pdfmetrics

logger = logging.getLogger("certdesk.render")

DEFAULT_FONT_FAMILY = "Helvetica"

# family -> (regular, bold, italic, bold-italic)
PDF_FONT_FAMILIES: dict[str, tuple[str, str, str, str]] = {
    "Helvetica": (
        "Helvetica",
        "Helvetica-Bold",
        "Helvetica-Oblique",
        "Helvetica-BoldOblique",
    ),
    "Times Roman": (
        "Times-Roman",
        "Times-Bold",
        "Times-Italic",
        "Times-BoldItalic",
    ),
    "Courier": (
        "Courier",
        "Courier-Bold",
        "Courier-Oblique",
        "Courier-BoldOblique",
    ),
}


class FontResource(NamedTuple):
    family: str
    bold: bool
    italic: bool
    font_name: str


FontKey = tuple[str, bool, bool]


def _available_font_codes() -> set[str]:
    fonts = set(pdfmetrics.getRegisteredFontNames())
    try:
        fonts.update(pdfmetrics.standardFonts)
    except AttributeError:
        fonts.update({"Helvetica", "Times-Roman", "Courier"})
    return fonts


def build_font_table(
    families: Mapping[str, tuple[str, str, str, str]] | None = None,
    default_family: str = DEFAULT_FONT_FAMILY,
) -> dict[FontKey, FontResource]:
    """Expand family definitions into a ``(family, bold, italic)`` lookup.

    Raises ``ValueError`` when a family does not define all four variants,
    a variant is not a known reportlab font, or the default family is absent.
    """
    families = PDF_FONT_FAMILIES if families is None else families
    if default_family not in families:
        raise ValueError(f"Default font family {default_family!r} is not defined")
    available = _available_font_codes()
    table: dict[FontKey, FontResource] = {}
    for family, variants in families.items():
        if len(variants) != 4:
            raise ValueError(
                f"Font family {family!r} must define 4 variants, got {len(variants)}"
            )
        missing = [name for name in variants if name not in available]
        if missing:
            raise ValueError(
                f"Font family {family!r} references unknown fonts: {', '.join(missing)}"
            )
        regular, bold, italic, bold_italic = variants
        for is_bold, is_italic, font_name in (
            (False, False, regular),
            (True, False, bold),
            (False, True, italic),
            (True, True, bold_italic),
        ):
            table[(family, is_bold, is_italic)] = FontResource(
                family, is_bold, is_italic, font_name
            )
    return table


FONT_TABLE = build_font_table()
DEFAULT_FONT = FONT_TABLE[(DEFAULT_FONT_FAMILY, False, False)]


def resolve_font(
    family: str | None,
    bold: bool = False,
    italic: bool = False,
    *,
    table: Mapping[FontKey, FontResource] | None = None,
    warnings: list[str] | None = None,
) -> FontResource:
    lookup = FONT_TABLE if table is None else table
    key = ((family or "").strip(), bool(bold), bool(italic))
    font = lookup.get(key)
    if font is not None:
        return font
    fallback = lookup.get((DEFAULT_FONT_FAMILY, False, False), DEFAULT_FONT)
    logger.warning(
        "[CERT-FONT] family=%s bold=%s italic=%s -> %s (not available)",
        family or "<default>",
        bool(bold),
        bool(italic),
        fallback.font_name,
    )
    if warnings is not None:
        warnings.append(
            f"Font {family or '<default>'} replaced with {fallback.font_name} (not available)."
        )
    return fallback


def get_font_options() -> list[str]:
    return list(PDF_FONT_FAMILIES)
