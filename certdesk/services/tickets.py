from __future__ import annotations

import posixpath
import secrets
import time
import zipfile
from io import BytesIO
from typing import Sequence

from flask import current_app
from PIL import Image
from sqlalchemy.exc import SQLAlchemyError

from ..app import db, get_storage
from ..models import Event, GeneratedTicketSheet, Ticket
from ..shared.codes import (
    CodePlacement,
    build_register_url,
    composite_code,
    validate_code_footprint,
)
from ..shared.packing import A3, SheetLayout, draw_image_sheets, pack
from ..shared.rendering import inspect_image

MAX_TICKETS_PER_BATCH = 1000
TICKETS_PER_SHEET = 10
SHEET_MAX_COLS = 5
SHEET_MAX_ROWS = 10
SHEET_MIN_SCALE = 0.2
SAMPLE_TOKEN = "SAMPLE_TOKEN"


class TicketInputError(ValueError):
    """Raised when an offline ticket request is invalid."""


def save_ticket_design(event_id: int, image_bytes: bytes) -> str:
    """Store an event's ticket design as PNG and return its storage key."""
    event = db.session.get(Event, event_id)
    if event is None:
        raise TicketInputError(f"Event {event_id} not found")
    _, _, fmt = inspect_image(image_bytes)
    if fmt != "PNG":
        with Image.open(BytesIO(image_bytes)) as img:
            buf = BytesIO()
            img.convert("RGB").save(buf, format="PNG")
            image_bytes = buf.getvalue()
    key = f"ticket-designs/event_{event.id}.png"
    get_storage().write(key, image_bytes)
    event.ticket_design_path = key
    db.session.commit()
    return key


def create_offline_tokens(event_id: int, count: int) -> list[str]:
    if count < 1 or count > MAX_TICKETS_PER_BATCH:
        raise TicketInputError(
            f"Ticket count must be between 1 and {MAX_TICKETS_PER_BATCH}"
        )
    if db.session.get(Event, event_id) is None:
        raise TicketInputError(f"Event {event_id} not found")
    tokens = [secrets.token_hex(16) for _ in range(count)]
    db.session.add_all(Ticket(event_id=event_id, token=token) for token in tokens)
    db.session.commit()
    return tokens


def _event_design(event_id: int, placement: CodePlacement) -> tuple[Event, bytes, int, int]:
    event = db.session.get(Event, event_id)
    if event is None:
        raise TicketInputError(f"Event {event_id} not found")
    if not event.ticket_design_path:
        raise TicketInputError(f"No ticket design uploaded for event {event.id}")
    design = get_storage().read(event.ticket_design_path)
    width, height, _ = inspect_image(design)
    validate_code_footprint(width, height, placement)
    return event, design, width, height


def _sheet_layout(width: int, height: int) -> SheetLayout:
    return pack(
        width,
        height,
        A3[0],
        A3[1],
        SHEET_MAX_COLS,
        SHEET_MAX_ROWS,
        min_scale=SHEET_MIN_SCALE,
        max_per_page=TICKETS_PER_SHEET,
    )


def generate_offline_tickets(
    event_id: int,
    tokens: Sequence[str],
    placement: CodePlacement,
) -> GeneratedTicketSheet:
    """Stamp a register QR code on the event's ticket design for each token
    and pack the tickets onto A3 sheets."""
    tokens = [t for t in (tokens or []) if t]
    if not tokens:
        raise TicketInputError("No tickets to generate")
    if len(tokens) > MAX_TICKETS_PER_BATCH:
        raise TicketInputError(
            f"Too many tickets, maximum {MAX_TICKETS_PER_BATCH} per batch"
        )
    event, design, width, height = _event_design(event_id, placement)

    base_url = current_app.config["REGISTER_BASE_URL"]
    images = [
        composite_code(design, placement, build_register_url(base_url, token))
        for token in tokens
    ]
    layout = _sheet_layout(width, height)
    pdf_bytes = draw_image_sheets(images, (width, height), A3, layout)

    storage = get_storage()
    key = f"generated-tickets/event-{event.id}/offline-tickets-{int(time.time() * 1000)}.pdf"
    storage.write(key, pdf_bytes)
    try:
        sheet = GeneratedTicketSheet(
            event_id=event.id, file_path=key, ticket_count=len(tokens)
        )
        db.session.add(sheet)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        storage.delete(key)
        current_app.logger.exception("[TICKETS] record failed event=%s path=%s", event.id, key)
        raise
    current_app.logger.info(
        "[TICKETS] event=%s tickets=%s grid=%sx%s path=%s",
        event.id,
        len(tokens),
        layout.cols,
        layout.rows,
        key,
    )
    return sheet


def preview_offline_ticket(
    event_id: int, placement: CodePlacement, token: str = SAMPLE_TOKEN
) -> bytes:
    """Return one ticket as PNG bytes; nothing is stored."""
    _, design, _, _ = _event_design(event_id, placement)
    base_url = current_app.config["REGISTER_BASE_URL"]
    return composite_code(design, placement, build_register_url(base_url, token))


def preview_ticket_sheet(
    event_id: int, placement: CodePlacement, count: int = TICKETS_PER_SHEET
) -> bytes:
    """Return a PDF of ``count`` sample tickets laid out as the print run would be."""
    if count < 1 or count > MAX_TICKETS_PER_BATCH:
        raise TicketInputError(
            f"Ticket count must be between 1 and {MAX_TICKETS_PER_BATCH}"
        )
    _, design, width, height = _event_design(event_id, placement)
    base_url = current_app.config["REGISTER_BASE_URL"]
    ticket = composite_code(design, placement, build_register_url(base_url, SAMPLE_TOKEN))
    return draw_image_sheets([ticket] * count, (width, height), A3, _sheet_layout(width, height))


def zip_ticket_sheets(event_id: int, sheet_ids: Sequence[int]) -> tuple[bytes, list[str]]:
    """Bundle stored ticket sheet PDFs into one zip.

    Returns the archive and the storage keys whose files were missing.
    """
    ids = [int(sid) for sid in sheet_ids or ()]
    if not ids:
        raise TicketInputError("No ticket sheets selected")
    sheets = (
        db.session.query(GeneratedTicketSheet)
        .filter(GeneratedTicketSheet.event_id == event_id, GeneratedTicketSheet.id.in_(ids))
        .order_by(GeneratedTicketSheet.id)
        .all()
    )
    if not sheets:
        raise TicketInputError(f"No ticket sheets found for event {event_id}")
    storage = get_storage()
    missing: list[str] = []
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for sheet in sheets:
            if not storage.exists(sheet.file_path):
                missing.append(sheet.file_path)
                current_app.logger.warning(
                    "[TICKETS] zip missing file event=%s path=%s", event_id, sheet.file_path
                )
                continue
            archive.writestr(posixpath.basename(sheet.file_path), storage.read(sheet.file_path))
    if len(missing) == len(sheets):
        raise FileNotFoundError(f"No ticket sheet files on disk: {', '.join(missing)}")
    return buffer.getvalue(), missing
