import json

import click
from flask import current_app
from flask.cli import FlaskGroup
from flask_migrate import Migrate

from certdesk.app import create_app, db, get_job_queue
from certdesk.services import certificates as cert_service
from certdesk.services import tickets as ticket_service
from certdesk.services.jobs import Progress
from certdesk.shared.codes import CodePlacement
from certdesk.shared.fonts import get_font_options


migrate = Migrate()


def create_certdesk_app():
    app = create_app()
    migrate.init_app(app, db)
    return app


cli = FlaskGroup(create_app=create_certdesk_app)


def _echo_progress(progress: Progress) -> None:
    click.echo(
        f"total={progress.total} completed={progress.completed} "
        f"failed={progress.failed} generated={progress.generated} sent={progress.sent}"
    )


def _finish_batch(batch_key: str) -> None:
    queue = get_job_queue()
    ceiling = current_app.config["POLL_CEILING_SECONDS"]
    progress = queue.poll_progress(batch_key, ceiling=ceiling, on_progress=_echo_progress)
    summary = cert_service.batch_summary(
        queue, batch_key, timeout=None if progress.finished else 0
    )
    click.echo(json.dumps(summary, indent=2, default=str))


@cli.command("upload_template")
@click.option("--event", "event_id", required=True, type=int)
@click.option("--image", "image", required=True, type=click.File("rb"))
@click.option(
    "--fields",
    "fields",
    required=True,
    type=click.File("r"),
    help="JSON list of fields; fontFamily is one of: " + ", ".join(get_font_options()),
)
@click.option("--index", "template_index", default=1, show_default=True, type=int)
def upload_template(event_id: int, image, fields, template_index: int):
    """Store a certificate template image and its field layout (JSON list)."""
    try:
        template = cert_service.save_template(
            event_id, image.read(), json.load(fields), template_index=template_index
        )
    except ValueError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    click.echo(template.image_path)


@cli.command("gen_cert")
@click.option("--participant", "participant_id", required=True, type=int)
@click.option("--index", "template_index", default=None, type=int)
@click.option("--multi", is_flag=True, help="One PDF with a page per template")
def gen_cert(participant_id: int, template_index: int | None, multi: bool):
    """Generate a certificate for a participant."""
    try:
        if multi:
            path = cert_service.generate_multi_certificate(participant_id)
        else:
            path = cert_service.generate_certificate(participant_id, template_index)
    except cert_service.CertificateInputError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    click.echo(path)


@cli.command("bulk_generate")
@click.option("--event", "event_id", required=True, type=int)
@click.option("--participant", "participant_ids", multiple=True, type=int)
@click.option("--multi", is_flag=True, help="One PDF with a page per template")
def bulk_generate(event_id: int, participant_ids: tuple[int, ...], multi: bool):
    """Generate certificates for every verified participant of an event."""
    try:
        batch_key, _ = cert_service.bulk_generate(
            event_id, participant_ids=participant_ids or None, multi=multi
        )
    except cert_service.CertificateInputError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    click.echo(f"batch={batch_key}")
    _finish_batch(batch_key)


@cli.command("bulk_send")
@click.option("--event", "event_id", required=True, type=int)
@click.option("--certificate", "certificate_ids", multiple=True, type=int)
def bulk_send(event_id: int, certificate_ids: tuple[int, ...]):
    """Email every unsent certificate of an event."""
    try:
        batch_key, _ = cert_service.bulk_send(
            event_id, certificate_ids=certificate_ids or None
        )
    except cert_service.CertificateInputError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    click.echo(f"batch={batch_key}")
    _finish_batch(batch_key)


@cli.command("resend_certs")
@click.option("--certificate", "certificate_ids", required=True, multiple=True, type=int)
def resend_certs(certificate_ids: tuple[int, ...]):
    """Email the given certificates again, even if they were sent before."""
    try:
        batch_key, _ = cert_service.resend_certificates(certificate_ids)
    except cert_service.CertificateInputError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    click.echo(f"batch={batch_key}")
    _finish_batch(batch_key)


@cli.command("preview_cert")
@click.option("--event", "event_id", required=True, type=int)
@click.option("--participant", "participant_id", default=None, type=int)
@click.option("--index", "template_index", default=None, type=int)
@click.option("--multi", is_flag=True, help="One page per template")
@click.option("--fields", "fields", default=None, type=click.File("r"), help="Draft JSON field list")
@click.option("--out", "out", required=True, type=click.File("wb"))
def preview_cert(event_id, participant_id, template_index, multi, fields, out):
    """Render a certificate preview to a file without storing it."""
    try:
        if multi:
            data = cert_service.preview_multi_certificate(event_id, participant_id)
        else:
            data = cert_service.preview_certificate(
                event_id,
                participant_id,
                template_index=template_index,
                fields=json.load(fields) if fields else None,
            )
    except ValueError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    out.write(data)


@cli.command("export_certs")
@click.option("--event", "event_id", required=True, type=int)
def export_certs(event_id: int):
    """Pack an event's certificates onto A4 print sheets."""
    try:
        key, count = cert_service.export_certificate_sheets(event_id)
    except cert_service.CertificateInputError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    click.echo(f"{key} certificates={count}")


@cli.command("offline_tickets")
@click.option("--event", "event_id", required=True, type=int)
@click.option("--count", "count", type=int, help="Create this many new tokens")
@click.option("--token", "tokens", multiple=True)
@click.option("--x", "x", required=True, type=int)
@click.option("--y", "y", required=True, type=int)
@click.option("--width", "width", required=True, type=int)
@click.option("--height", "height", required=True, type=int)
@click.option("--rotation", "rotation", default=0.0, type=float)
def offline_tickets(event_id, count, tokens, x, y, width, height, rotation):
    """Print QR-coded offline tickets onto A3 sheets."""
    try:
        token_list = list(tokens)
        if count:
            token_list.extend(ticket_service.create_offline_tokens(event_id, count))
        sheet = ticket_service.generate_offline_tickets(
            event_id,
            token_list,
            CodePlacement(x=x, y=y, width=width, height=height, rotation=rotation),
        )
    except (ValueError, FileNotFoundError) as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    click.echo(f"{sheet.file_path} tickets={sheet.ticket_count}")


@cli.command("preview_tickets")
@click.option("--event", "event_id", required=True, type=int)
@click.option("--x", "x", required=True, type=int)
@click.option("--y", "y", required=True, type=int)
@click.option("--width", "width", required=True, type=int)
@click.option("--height", "height", required=True, type=int)
@click.option("--rotation", "rotation", default=0.0, type=float)
@click.option("--sheet", "sheet_count", default=None, type=int, help="Preview a sheet of N tickets")
@click.option("--out", "out", required=True, type=click.File("wb"))
def preview_tickets(event_id, x, y, width, height, rotation, sheet_count, out):
    """Write a single ticket PNG, or a PDF sheet with --sheet."""
    placement = CodePlacement(x=x, y=y, width=width, height=height, rotation=rotation)
    try:
        if sheet_count:
            data = ticket_service.preview_ticket_sheet(event_id, placement, sheet_count)
        else:
            data = ticket_service.preview_offline_ticket(event_id, placement)
    except (ValueError, FileNotFoundError) as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    out.write(data)


@cli.command("zip_tickets")
@click.option("--event", "event_id", required=True, type=int)
@click.option("--sheet", "sheet_ids", required=True, multiple=True, type=int)
@click.option("--out", "out", required=True, type=click.File("wb"))
def zip_tickets(event_id, sheet_ids, out):
    """Bundle generated ticket sheets into one zip file."""
    try:
        data, missing = ticket_service.zip_ticket_sheets(event_id, sheet_ids)
    except (ValueError, FileNotFoundError) as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    out.write(data)
    for path in missing:
        click.echo(f"missing: {path}", err=True)


@cli.command("cert_stats")
@click.option("--event", "event_id", required=True, type=int)
def cert_stats(event_id: int):
    try:
        stats = cert_service.certificate_stats(event_id)
    except cert_service.CertificateInputError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    for key, value in stats.items():
        click.echo(f"{key}={value}")


if __name__ == "__main__":
    cli()
