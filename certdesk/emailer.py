import json
import logging
import smtplib
import sys
from email.message import EmailMessage
from typing import Sequence

from flask import current_app

from .shared.mail_utils import normalize_recipients

logger = logging.getLogger("certdesk.mailer")
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)

# (filename, content, mime type such as "application/pdf")
Attachment = tuple[str, bytes, str]


def _stringify_envelope(recipients: Sequence[str]) -> str:
    return json.dumps(list(recipients))


def _attach(msg: EmailMessage, attachments: Sequence[Attachment]) -> None:
    for filename, content, mimetype in attachments:
        maintype, _, subtype = (mimetype or "application/octet-stream").partition("/")
        msg.add_attachment(
            content,
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=filename,
        )


def send(
    recipients: Sequence[str] | str | None,
    subject: str,
    body: str,
    html: str | None = None,
    attachments: Sequence[Attachment] | None = None,
):
    config = current_app.config
    host = config.get("SMTP_HOST")
    port = config.get("SMTP_PORT")
    user = config.get("SMTP_USER")
    password = config.get("SMTP_PASS")
    from_addr = config.get("SMTP_FROM_DEFAULT")
    from_name = config.get("SMTP_FROM_NAME") or ""
    attachments = list(attachments or [])

    envelope, header = normalize_recipients(recipients)
    mode = "real"
    if not host or not port or not from_addr:
        mode = "stub"
        logger.info(
            "[MAIL-OUT] mode=%s to_header=%s envelope=%s subject=\"%s\" attachments=%s host=%s result=stub",
            mode,
            header,
            _stringify_envelope(envelope),
            subject,
            len(attachments),
            host,
        )
        return {"ok": False, "detail": "stub: missing config"}

    if not envelope:
        logger.warning(
            "[MAIL-NO-RECIPIENTS] subject=\"%s\" host=%s", subject, host
        )
        return {"ok": False, "detail": "no valid recipients"}

    try:
        port_int = int(port)
        if port_int == 465:
            server = smtplib.SMTP_SSL(host, port_int)
        else:
            server = smtplib.SMTP(host, port_int)
            if port_int == 587:
                server.starttls()
        if user and password:
            server.login(user, password)
        msg = EmailMessage()
        msg["Subject"] = subject
        if header:
            msg["To"] = header
        msg["From"] = f"{from_name} <{from_addr}>" if from_name else from_addr
        msg.set_content(body)
        if html:
            msg.add_alternative(html, subtype="html")
        _attach(msg, attachments)
        server.sendmail(from_addr, envelope, msg.as_string())
        server.quit()
        logger.info(
            "[MAIL-OUT] mode=%s to_header=%s envelope=%s subject=\"%s\" attachments=%s host=%s result=sent",
            mode,
            header,
            _stringify_envelope(envelope),
            subject,
            len(attachments),
            host,
        )
        return {"ok": True, "detail": "sent"}
    except Exception as e:
        logger.info(
            "[MAIL-OUT] mode=%s to_header=%s envelope=%s subject=\"%s\" attachments=%s host=%s result=%s",
            mode,
            header,
            _stringify_envelope(envelope),
            subject,
            len(attachments),
            host,
            e,
        )
        return {"ok": False, "detail": str(e)}
