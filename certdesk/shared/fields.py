"""Template field schema, value resolution and text sanitizing."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, Sequence

from .time import format_long_date, roman_month

_ZERO_WIDTH_RE = re.compile(r"[\u200b-\u200d\ufeff]")
_UNSAFE_RE = re.compile(r"[^\x20-\x7e\u00a0-\u024f]")

DEFAULT_FONT_SIZE = 24


class FieldKey(str, enum.Enum):
    NAME = "name"
    EVENT = "event"
    NUMBER = "number"
    TOKEN = "token"
    DATE = "date"
    LABEL = "label"


class TemplateFieldError(ValueError):
    """Raised when a stored field definition does not match the schema."""


@dataclass(frozen=True)
class TemplateField:
    key: FieldKey
    x: float
    y: float
    font_family: str = "Helvetica"
    font_size: float = DEFAULT_FONT_SIZE
    bold: bool = False
    italic: bool = False
    color: str | None = None
    label: str = ""
    active: bool = True


@dataclass(frozen=True)
class ResolvedField:
    field: TemplateField
    text: str


_ALLOWED_ATTRIBUTES = {
    "key",
    "x",
    "y",
    "fontFamily",
    "fontSize",
    "bold",
    "italic",
    "color",
    "label",
    "active",
}


def _coerce_number(value: Any, *, path: str) -> float:
    if isinstance(value, bool):
        raise TemplateFieldError(f"{path}: must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise TemplateFieldError(f"{path}: must be a number") from exc
    if number != number:
        raise TemplateFieldError(f"{path}: must be a number")
    return number


def parse_field(raw: Any, *, index: int = 0) -> TemplateField:
    path = f"fields[{index}]"
    if not isinstance(raw, dict):
        raise TemplateFieldError(f"{path}: each field must be an object")
    unknown = set(raw) - _ALLOWED_ATTRIBUTES
    if unknown:
        raise TemplateFieldError(
            f"{path}: unknown attribute(s): {', '.join(sorted(unknown))}"
        )
    try:
        key = FieldKey(str(raw.get("key", "")).strip().lower())
    except ValueError as exc:
        raise TemplateFieldError(f"{path}.key: unknown field key {raw.get('key')!r}") from exc
    if "x" not in raw or "y" not in raw:
        raise TemplateFieldError(f"{path}: x and y are required")
    x = _coerce_number(raw["x"], path=f"{path}.x")
    y = _coerce_number(raw["y"], path=f"{path}.y")
    font_size = raw.get("fontSize") or DEFAULT_FONT_SIZE
    font_size = _coerce_number(font_size, path=f"{path}.fontSize")
    if font_size <= 0:
        raise TemplateFieldError(f"{path}.fontSize: must be > 0")
    color = raw.get("color")
    return TemplateField(
        key=key,
        x=x,
        y=y,
        font_family=str(raw.get("fontFamily") or "Helvetica"),
        font_size=font_size,
        bold=bool(raw.get("bold", False)),
        italic=bool(raw.get("italic", False)),
        color=str(color) if color else None,
        label=str(raw.get("label") or ""),
        active=raw.get("active", True) is not False,
    )


def parse_template_fields(
    raw_fields: Iterable[Any] | None,
    *,
    width: float | None = None,
    height: float | None = None,
) -> list[TemplateField]:
    """Validate stored field definitions.

    When the template size is known, every field must sit inside
    ``[0, width) x [0, height)``.
    """
    if raw_fields is None:
        return []
    if isinstance(raw_fields, (str, bytes)) or not isinstance(raw_fields, Iterable):
        raise TemplateFieldError("fields: must be a list")
    parsed: list[TemplateField] = []
    for index, raw in enumerate(raw_fields):
        field = parse_field(raw, index=index)
        if width and height:
            if not (0 <= field.x < width and 0 <= field.y < height):
                raise TemplateFieldError(
                    f"fields[{index}]: position ({field.x:g},{field.y:g}) is outside "
                    f"the {width:g}x{height:g} template"
                )
        parsed.append(field)
    return parsed


def sanitize(value: str | None) -> str:
    """Drop zero-width characters and anything outside ASCII/extended Latin."""
    text = _ZERO_WIDTH_RE.sub("", value or "")
    return _UNSAFE_RE.sub("", text)


def build_certificate_number(
    participant_id: int,
    event_id: int,
    event_slug: str | None,
    event_start: date | datetime | None,
    *,
    today: date | None = None,
) -> str:
    reference = event_start or today or date.today()
    return (
        f"{participant_id}{event_id}/{event_slug or ''}/"
        f"{roman_month(reference.month)}/{reference.year}"
    )


def resolve(
    field: TemplateField,
    participant: Any,
    event: Any,
    certificate_number: str,
    *,
    token: str | None = None,
    today: date | None = None,
    locale: str | None = "en",
) -> str:
    if field.key is FieldKey.NAME:
        value = (getattr(participant, "name", "") or "").upper()
    elif field.key is FieldKey.EVENT:
        value = getattr(event, "name", "") or ""
    elif field.key is FieldKey.NUMBER:
        value = certificate_number
    elif field.key is FieldKey.DATE:
        value = format_long_date(today or date.today(), locale)
    elif field.key is FieldKey.TOKEN:
        value = token or ""
    else:
        value = field.label
    return sanitize(value)


def resolve_fields(
    fields: Sequence[TemplateField],
    participant: Any,
    event: Any,
    certificate_number: str,
    **kwargs: Any,
) -> list[ResolvedField]:
    """Resolve every active field; inactive ones are skipped, not blanked."""
    return [
        ResolvedField(field, resolve(field, participant, event, certificate_number, **kwargs))
        for field in fields
        if field.active
    ]
