from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Sequence

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .. import emailer
from ..app import db, get_job_queue, get_storage, job_context
from ..models import (
    Certificate,
    CertificateTemplate,
    Event,
    Participant,
    Ticket,
)
from ..shared.fields import (
    TemplateFieldError,
    build_certificate_number,
    parse_template_fields,
    resolve_fields,
)
from ..shared.mail_utils import attachment_filename
from ..shared.packing import A4, merge_pdf_sheets
from ..shared.rendering import (
    DocumentRenderError,
    TemplatePage,
    inspect_image,
    render_pages,
)
from ..shared.time import now_utc, today
from .jobs import BatchResult, JobQueue, NonRetryableError, RenderJob

MAX_TEMPLATES_PER_EVENT = 6
EXPORT_MAX_COLS = 2
EXPORT_MAX_ROWS = 4
EXPORT_MIN_SCALE = 0.3


class CertificateInputError(ValueError):
    """Raised when a certificate request cannot be satisfied as given."""


class EmailDeliveryError(RuntimeError):
    """Raised when the mail provider did not accept a certificate email."""


def certificate_storage_key(participant_id: int, template_index: int = 1) -> str:
    if template_index == Certificate.MERGED_TEMPLATE_INDEX:
        return f"certificates/cert_{participant_id}_multi.pdf"
    return f"certificates/cert_{participant_id}_{template_index}.pdf"


def _get_participant(participant_id: int) -> Participant:
    participant = db.session.get(Participant, participant_id)
    if participant is None or participant.ticket is None:
        raise CertificateInputError(f"Participant {participant_id} not found")
    return participant


def _get_event(event_id: int) -> Event:
    event = db.session.get(Event, event_id)
    if event is None:
        raise CertificateInputError(f"Event {event_id} not found")
    return event


def _get_template(event: Event, template_index: int | None = None) -> CertificateTemplate:
    templates = list(event.templates)
    if template_index is not None:
        templates = [t for t in templates if t.template_index == template_index]
    if not templates:
        suffix = f" #{template_index}" if template_index is not None else ""
        raise CertificateInputError(f"No certificate template{suffix} for event {event.id}")
    return templates[0]


def save_template(
    event_id: int,
    image_bytes: bytes,
    raw_fields: Sequence[dict],
    *,
    template_index: int = 1,
) -> CertificateTemplate:
    """Store a template image and its validated field list."""
    if not 1 <= template_index <= MAX_TEMPLATES_PER_EVENT:
        raise CertificateInputError(
            f"Template index must be between 1 and {MAX_TEMPLATES_PER_EVENT}"
        )
    event = _get_event(event_id)
    width, height, fmt = inspect_image(image_bytes)
    parse_template_fields(raw_fields, width=width, height=height)
    ext = "png" if fmt == "PNG" else "jpg"
    key = f"templates/event_{event.id}_{template_index}.{ext}"
    get_storage().write(key, image_bytes)

    template = (
        db.session.query(CertificateTemplate)
        .filter_by(event_id=event.id, template_index=template_index)
        .one_or_none()
    )
    if template is None:
        template = CertificateTemplate(event_id=event.id, template_index=template_index)
        db.session.add(template)
    template.image_path = key
    template.width_px = width
    template.height_px = height
    template.fields = list(raw_fields)
    db.session.commit()
    current_app.logger.info(
        "[CERT-TEMPLATE] event=%s index=%s size=%sx%s fields=%s",
        event.id,
        template_index,
        width,
        height,
        len(raw_fields),
    )
    return template


def _template_page(
    template: CertificateTemplate,
    participant,
    event: Event,
    generated_on: date,
    *,
    token: str | None = None,
    draft_fields: Sequence[dict] | None = None,
) -> TemplatePage:
    image_bytes = get_storage().read(template.image_path)
    source_size = (template.width_px, template.height_px)
    if not template.width_px or not template.height_px:
        width, height, _ = inspect_image(image_bytes)
        source_size = (width, height)
    if draft_fields is None:
        fields = parse_template_fields(template.fields)
    else:
        fields = parse_template_fields(
            draft_fields, width=source_size[0], height=source_size[1]
        )
    number = build_certificate_number(
        participant.id, event.id, event.slug, event.start_time, today=generated_on
    )
    resolved = resolve_fields(
        fields,
        participant,
        event,
        number,
        token=token if token is not None else participant.ticket.token,
        today=generated_on,
        locale=current_app.config.get("DATE_LOCALE", "en"),
    )
    return TemplatePage(image_bytes, resolved, source_size)


def _store_certificate(participant: Participant, template_index: int, pdf_bytes: bytes) -> Certificate:
    """Write the PDF, then point the participant's certificate row at it.

    The row is replaced rather than duplicated; a failed commit removes the
    file that was just written.
    """
    storage = get_storage()
    key = certificate_storage_key(participant.id, template_index)
    storage.write(key, pdf_bytes)
    try:
        cert = (
            db.session.query(Certificate)
            .filter_by(participant_id=participant.id, template_index=template_index)
            .one_or_none()
        )
        if cert is None:
            cert = Certificate(participant_id=participant.id, template_index=template_index)
            db.session.add(cert)
        cert.path = key
        cert.sent = False
        cert.sent_at = None
        cert.generated_at = now_utc()
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        storage.delete(key)
        raise
    return cert


def generate_certificate(participant_id: int, template_index: int | None = None) -> str:
    """Render one participant's certificate and return its storage key."""
    participant = _get_participant(participant_id)
    event = participant.event
    template = _get_template(event, template_index)
    page = _template_page(template, participant, event, today())
    result = render_pages([page])
    for warning in result.warnings:
        current_app.logger.warning(
            "[CERT-WARN] participant=%s event=%s %s", participant.id, event.id, warning
        )
    cert = _store_certificate(participant, template.template_index, result.pdf_bytes)
    current_app.logger.info(
        "[CERT] email=%s event=%s path=%s", participant.email, event.id, cert.path
    )
    return cert.path


def generate_multi_certificate(participant_id: int) -> str:
    """Render one PDF with a page for each of the event's templates."""
    participant = _get_participant(participant_id)
    event = participant.event
    templates = list(event.templates)
    if not templates:
        raise CertificateInputError(f"No certificate template for event {event.id}")
    generated_on = today()
    pages = [_template_page(t, participant, event, generated_on) for t in templates]
    result = render_pages(pages)
    cert = _store_certificate(
        participant, Certificate.MERGED_TEMPLATE_INDEX, result.pdf_bytes
    )
    current_app.logger.info(
        "[CERT] email=%s event=%s pages=%s path=%s",
        participant.email,
        event.id,
        len(pages),
        cert.path,
    )
    return cert.path


@dataclass(frozen=True)
class SampleParticipant:
    id: int = 0
    name: str = "Sample Participant"
    token: str = "SAMPLE_TOKEN"


def _preview_subject(event: Event, participant_id: int | None):
    """Return the participant to preview with and the token to print."""
    if participant_id is None:
        sample = SampleParticipant()
        return sample, sample.token
    participant = _get_participant(participant_id)
    if participant.event.id != event.id:
        raise CertificateInputError(
            f"Participant {participant_id} is not registered for event {event.id}"
        )
    return participant, participant.ticket.token


def preview_certificate(
    event_id: int,
    participant_id: int | None = None,
    *,
    template_index: int | None = None,
    fields: Sequence[dict] | None = None,
) -> bytes:
    """Render a certificate PDF without storing it.

    ``fields`` overrides the template's saved layout so a draft can be checked
    before it is saved. Without a participant, sample values are printed.
    """
    event = _get_event(event_id)
    template = _get_template(event, template_index)
    participant, token = _preview_subject(event, participant_id)
    page = _template_page(
        template, participant, event, today(), token=token, draft_fields=fields
    )
    result = render_pages([page])
    for warning in result.warnings:
        current_app.logger.warning("[CERT-PREVIEW] event=%s %s", event.id, warning)
    return result.pdf_bytes


def preview_multi_certificate(event_id: int, participant_id: int | None = None) -> bytes:
    event = _get_event(event_id)
    templates = list(event.templates)
    if not templates:
        raise CertificateInputError(f"No certificate template for event {event.id}")
    participant, token = _preview_subject(event, participant_id)
    generated_on = today()
    pages = [
        _template_page(t, participant, event, generated_on, token=token) for t in templates
    ]
    return render_pages(pages).pdf_bytes


def _event_participants(event_id: int, verified_only: bool = True):
    q = (
        db.session.query(Participant)
        .join(Ticket, Participant.ticket_id == Ticket.id)
        .filter(Ticket.event_id == event_id)
    )
    if verified_only:
        q = q.filter(Ticket.is_verified.is_(True))
    return q.order_by(Participant.name, Participant.id)


def _batch_key(kind: str, scope) -> str:
    return f"{kind}:{scope}:{uuid.uuid4().hex[:12]}"


def _run_isolated(participant_id: int, work):
    """Run one participant's work as a job attempt, leaving a clean session on error."""
    try:
        return work(participant_id)
    except (
        NonRetryableError,
        CertificateInputError,
        TemplateFieldError,
        DocumentRenderError,
        FileNotFoundError,
    ) as exc:
        db.session.rollback()
        current_app.logger.error(
            "[CERT-FAIL] participant=%s reason=%s", participant_id, exc
        )
        raise
    except Exception:
        db.session.rollback()
        current_app.logger.exception("[CERT-FAIL] participant=%s", participant_id)
        raise


def bulk_generate(
    event_id: int,
    queue: JobQueue | None = None,
    participant_ids: Iterable[int] | None = None,
    *,
    multi: bool = False,
) -> tuple[str, list[RenderJob]]:
    """Validate the request, then queue one generation job per participant.

    Returns the batch key used for progress and result lookups.
    """
    event = _get_event(event_id)
    _get_template(event)
    eligible = [p.id for p in _event_participants(event.id)]
    if participant_ids is not None:
        requested = {int(pid) for pid in participant_ids}
        eligible = [pid for pid in eligible if pid in requested]
    if not eligible:
        raise CertificateInputError(f"No verified participants for event {event.id}")

    queue = queue or get_job_queue()
    app = current_app._get_current_object()
    generate = generate_multi_certificate if multi else generate_certificate

    def task(participant_id: int) -> str:
        with job_context(app):
            return _run_isolated(participant_id, lambda pid: generate(pid))

    batch_key = _batch_key("generate", event.id)
    jobs = queue.enqueue_batch(batch_key, eligible, task, counter="generated")
    current_app.logger.info(
        "[CERT-BULK] event=%s batch=%s participants=%s multi=%s",
        event.id,
        batch_key,
        len(eligible),
        multi,
    )
    return batch_key, jobs


def send_certificates(
    participant_id: int,
    event_id: int,
    certificate_ids: Sequence[int] | None = None,
    *,
    include_sent: bool = False,
) -> int:
    """Email one participant's certificates in a single message; return how many went out.

    Only unsent certificates are picked up unless ``include_sent`` is set.
    """
    participant = _get_participant(participant_id)
    event = participant.event
    q = db.session.query(Certificate).filter_by(participant_id=participant.id)
    if not include_sent:
        q = q.filter(Certificate.sent.is_(False))
    if certificate_ids is not None:
        q = q.filter(Certificate.id.in_(certificate_ids))
    certs = q.order_by(Certificate.template_index).all()
    if not certs:
        return 0
    storage = get_storage()
    attachments = []
    for index, cert in enumerate(certs):
        suffix = ".pdf" if len(certs) == 1 else f"_{index + 1}.pdf"
        attachments.append(
            (
                attachment_filename(participant.name, suffix),
                storage.read(cert.path),
                "application/pdf",
            )
        )
    body = (
        f"Dear {participant.name},\n\n"
        f"Your certificate for {event.name} is attached.\n"
    )
    result = emailer.send(
        participant.email,
        f"Certificate - {event.name}",
        body,
        attachments=attachments,
    )
    if not result.get("ok"):
        detail = result.get("detail") or "unknown error"
        if detail.startswith("stub") or detail == "no valid recipients":
            raise NonRetryableError(f"Email not sent to {participant.email}: {detail}")
        raise EmailDeliveryError(f"Email not sent to {participant.email}: {detail}")
    sent_at = now_utc()
    for cert in certs:
        cert.sent = True
        cert.sent_at = sent_at
    db.session.commit()
    current_app.logger.info(
        "[CERT-SEND] email=%s event=%s certificates=%s",
        participant.email,
        event_id,
        len(certs),
    )
    return len(certs)


def bulk_send(
    event_id: int,
    queue: JobQueue | None = None,
    certificate_ids: Iterable[int] | None = None,
) -> tuple[str, list[RenderJob]]:
    event = _get_event(event_id)
    q = (
        db.session.query(Certificate.participant_id)
        .join(Participant, Certificate.participant_id == Participant.id)
        .join(Ticket, Participant.ticket_id == Ticket.id)
        .filter(Ticket.event_id == event.id, Certificate.sent.is_(False))
    )
    if certificate_ids is not None:
        certificate_ids = [int(cid) for cid in certificate_ids]
        q = q.filter(Certificate.id.in_(certificate_ids))
    participant_ids = sorted({row[0] for row in q.all()})
    if not participant_ids:
        raise CertificateInputError(f"No unsent certificates for event {event.id}")

    queue = queue or get_job_queue()
    app = current_app._get_current_object()

    def task(participant_id: int) -> int:
        with job_context(app):
            return _run_isolated(
                participant_id, lambda pid: send_certificates(pid, event.id, certificate_ids)
            )

    batch_key = _batch_key("send", event.id)
    jobs = queue.enqueue_batch(batch_key, participant_ids, task, counter="sent")
    return batch_key, jobs


def resend_certificates(
    certificate_ids: Iterable[int],
    queue: JobQueue | None = None,
) -> tuple[str, list[RenderJob]]:
    """Queue a fresh email for the given certificates, sent or not.

    Certificates are grouped per participant so each person gets one message.
    """
    requested = sorted({int(cid) for cid in certificate_ids or ()})
    if not requested:
        raise CertificateInputError("Certificate ids must be a non-empty list")
    rows = (
        db.session.query(Certificate.id, Certificate.participant_id)
        .filter(Certificate.id.in_(requested))
        .all()
    )
    missing = sorted(set(requested) - {row[0] for row in rows})
    if not rows:
        raise CertificateInputError(f"Certificates not found: {missing}")
    if missing:
        current_app.logger.warning("[CERT-SEND] resend skipped unknown certificates=%s", missing)
    by_participant: dict[int, list[int]] = {}
    for cert_id, participant_id in rows:
        by_participant.setdefault(participant_id, []).append(cert_id)

    queue = queue or get_job_queue()
    app = current_app._get_current_object()

    def task(participant_id: int) -> int:
        with job_context(app):
            def work(pid):
                participant = _get_participant(pid)
                return send_certificates(
                    pid,
                    participant.event.id,
                    by_participant[pid],
                    include_sent=True,
                )

            return _run_isolated(participant_id, work)

    batch_key = _batch_key("resend", "certificates")
    jobs = queue.enqueue_batch(batch_key, sorted(by_participant), task, counter="sent")
    return batch_key, jobs


def batch_summary(queue: JobQueue, batch_key: str, timeout: float | None = None) -> dict:
    result: BatchResult = queue.wait(batch_key, timeout)
    return {
        "successCount": result.success_count,
        "failureCount": result.failure_count,
        "pending": result.pending,
        "results": result.results,
    }


def export_certificate_sheets(event_id: int) -> tuple[str, int]:
    """Pack every current certificate of an event onto A4 print sheets.

    Returns the storage key of the sheet PDF and the number of certificates.
    """
    event = _get_event(event_id)
    certs = (
        db.session.query(Certificate)
        .join(Participant, Certificate.participant_id == Participant.id)
        .join(Ticket, Participant.ticket_id == Ticket.id)
        .filter(Ticket.event_id == event.id)
        .order_by(Participant.name, Certificate.template_index)
        .all()
    )
    if not certs:
        raise CertificateInputError(f"No certificates to export for event {event.id}")
    storage = get_storage()
    documents = [storage.read(cert.path) for cert in certs]
    pdf_bytes, layout = merge_pdf_sheets(
        documents,
        A4,
        max_cols=EXPORT_MAX_COLS,
        max_rows=EXPORT_MAX_ROWS,
        min_scale=EXPORT_MIN_SCALE,
    )
    key = f"exports/certificates_event_{event.id}.pdf"
    storage.write(key, pdf_bytes)
    current_app.logger.info(
        "[CERT-EXPORT] event=%s certificates=%s grid=%sx%s scale=%.3f path=%s",
        event.id,
        len(certs),
        layout.cols,
        layout.rows,
        layout.scale,
        key,
    )
    return key, len(certs)


def certificate_stats(event_id: int) -> dict:
    event = _get_event(event_id)
    participants = _event_participants(event.id, verified_only=False).count()
    verified = _event_participants(event.id).count()
    cert_q = (
        db.session.query(Certificate)
        .join(Participant, Certificate.participant_id == Participant.id)
        .join(Ticket, Participant.ticket_id == Ticket.id)
        .filter(Ticket.event_id == event.id)
    )
    certificates = cert_q.count()
    sent = cert_q.filter(Certificate.sent.is_(True)).count()
    return {
        "participants": participants,
        "verified": verified,
        "certificates": certificates,
        "sent": sent,
        "pending": certificates - sent,
        "templates": len(event.templates),
    }
