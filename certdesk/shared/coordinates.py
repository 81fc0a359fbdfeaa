"""Design-space to document-space coordinate mapping.

Template fields are captured against the template image with a top-left
origin, in image pixels. reportlab draws with a bottom-left origin in points,
so the vertical axis is flipped while both axes are scaled independently.
"""

from __future__ import annotations

import logging

logger = logging.getLogger("certdesk.render")

# Source size assumed when a template's pixel dimensions are missing.
DEFAULT_SOURCE_SIZE: tuple[int, int] = (900, 636)


def resolve_source_size(
    source_w: float | None,
    source_h: float | None,
    warnings: list[str] | None = None,
) -> tuple[float, float]:
    """Return usable source dimensions, substituting the default when unknown."""
    try:
        width = float(source_w or 0)
        height = float(source_h or 0)
    except (TypeError, ValueError):
        width = height = 0.0
    if width > 0 and height > 0:
        return width, height
    default_w, default_h = DEFAULT_SOURCE_SIZE
    logger.warning(
        "[CERT-COORD] unknown source size %sx%s; using default %sx%s",
        source_w,
        source_h,
        default_w,
        default_h,
    )
    if warnings is not None:
        warnings.append(
            f"Template size {source_w}x{source_h} is unknown; "
            f"positions mapped against the default {default_w}x{default_h}."
        )
    return float(default_w), float(default_h)


def _check_target(target_w: float, target_h: float) -> None:
    if target_w <= 0 or target_h <= 0:
        raise ValueError(f"Target size must be positive, got {target_w}x{target_h}")


def map_point(
    x: float,
    y: float,
    source_w: float | None,
    source_h: float | None,
    target_w: float,
    target_h: float,
    warnings: list[str] | None = None,
) -> tuple[float, float]:
    _check_target(target_w, target_h)
    width, height = resolve_source_size(source_w, source_h, warnings)
    mapped_x = (x / width) * target_w
    mapped_y = target_h - (y / height) * target_h
    return mapped_x, mapped_y


def unmap_point(
    x: float,
    y: float,
    source_w: float,
    source_h: float,
    target_w: float,
    target_h: float,
) -> tuple[float, float]:
    """Inverse of :func:`map_point` for known source dimensions."""
    _check_target(target_w, target_h)
    width, height = resolve_source_size(source_w, source_h)
    return (x / target_w) * width, ((target_h - y) / target_h) * height
