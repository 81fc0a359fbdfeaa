"""QR code generation and compositing onto ticket designs."""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from urllib.parse import urlencode

import qrcode
from PIL import Image
from qrcode.constants import ERROR_CORRECT_H

DEFAULT_BORDER_FRACTION = 0.08


class PlacementError(ValueError):
    """Raised when a code placement does not fit its template."""


@dataclass(frozen=True)
class CodePlacement:
    x: int
    y: int
    width: int
    height: int
    rotation: float = 0

    @classmethod
    def from_dict(cls, raw: dict) -> "CodePlacement":
        try:
            return cls(
                x=int(raw["x"]),
                y=int(raw["y"]),
                width=int(raw["width"]),
                height=int(raw["height"]),
                rotation=float(raw.get("rotation") or 0),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PlacementError(f"Invalid code placement: {exc}") from exc


def validate_placement(template_w: int, template_h: int, placement: CodePlacement) -> None:
    if placement.width <= 0 or placement.height <= 0:
        raise PlacementError(
            f"Code size must be positive, got {placement.width}x{placement.height}"
        )
    if placement.x < 0 or placement.y < 0:
        raise PlacementError(
            f"Code position must not be negative, got ({placement.x},{placement.y})"
        )
    if (
        placement.x + placement.width > template_w
        or placement.y + placement.height > template_h
    ):
        raise PlacementError(
            f"Code {placement.width}x{placement.height} at ({placement.x},{placement.y}) "
            f"does not fit the {template_w}x{template_h} template"
        )


def code_footprint(
    placement: CodePlacement,
    border_fraction: float = DEFAULT_BORDER_FRACTION,
) -> tuple[int, int, int, int]:
    """Return ``(left, top, width, height)`` of the bordered, rotated code as pasted."""
    border = border_size(placement.width, placement.height, border_fraction)
    box = Image.new("L", (placement.width + border * 2, placement.height + border * 2), 255)
    if placement.rotation:
        box = box.rotate(-placement.rotation, expand=True, fillcolor=255)
    return placement.x - border, placement.y - border, box.width, box.height


def validate_code_footprint(
    template_w: int,
    template_h: int,
    placement: CodePlacement,
    border_fraction: float = DEFAULT_BORDER_FRACTION,
) -> tuple[int, int, int, int]:
    validate_placement(template_w, template_h, placement)
    left, top, width, height = code_footprint(placement, border_fraction)
    if left < 0 or top < 0 or left + width > template_w or top + height > template_h:
        raise PlacementError(
            f"Code with border and {placement.rotation:g} degree rotation spans "
            f"{width}x{height} at ({left},{top}) and does not fit the "
            f"{template_w}x{template_h} template"
        )
    return left, top, width, height


def build_register_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/register?{urlencode({'token': token})}"


def border_size(width: int, height: int, border_fraction: float = DEFAULT_BORDER_FRACTION) -> int:
    return int(round(max(width, height) * border_fraction))


def _qr_image(payload: str) -> Image.Image:
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_H,
        box_size=10,
        border=0,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    get_img = getattr(img, "get_image", None)
    if callable(get_img):
        img = get_img()
    return img.convert("RGB")


def build_code_image(
    payload_url: str,
    size: tuple[int, int],
    border_fraction: float = DEFAULT_BORDER_FRACTION,
    rotation_degrees: float = 0,
) -> Image.Image:
    width, height = size
    if width <= 0 or height <= 0:
        raise PlacementError(f"Code size must be positive, got {width}x{height}")
    code = _qr_image(payload_url).resize((width, height), Image.NEAREST)
    border = border_size(width, height, border_fraction)
    framed = Image.new("RGB", (width + border * 2, height + border * 2), "white")
    framed.paste(code, (border, border))
    if rotation_degrees:
        # PIL rotates counter-clockwise.
        framed = framed.rotate(-rotation_degrees, expand=True, fillcolor="white")
    return framed


def embed_code(
    payload_url: str,
    size: tuple[int, int],
    border_fraction: float = DEFAULT_BORDER_FRACTION,
    rotation_degrees: float = 0,
) -> bytes:
    """Return PNG bytes of a bordered, optionally rotated QR code."""
    img = build_code_image(payload_url, size, border_fraction, rotation_degrees)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def composite_code(
    template_image: bytes,
    placement: CodePlacement,
    payload_url: str,
    border_fraction: float = DEFAULT_BORDER_FRACTION,
) -> bytes:
    """Paste a QR code so the code itself (not its border) lands on the placement."""
    with Image.open(BytesIO(template_image)) as src:
        base = src.convert("RGB")
    left, top, _, _ = validate_code_footprint(
        base.width, base.height, placement, border_fraction
    )
    code = build_code_image(
        payload_url,
        (placement.width, placement.height),
        border_fraction,
        placement.rotation,
    )
    base.paste(code, (left, top))
    buf = BytesIO()
    base.save(buf, format="PNG")
    return buf.getvalue()
