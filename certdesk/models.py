from __future__ import annotations

from sqlalchemy.orm import validates

from .app import db


class Event(db.Model):
    __tablename__ = "events"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(120), nullable=False, default="")
    start_time = db.Column(db.DateTime)
    ticket_design_path = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    templates = db.relationship(
        "CertificateTemplate",
        back_populates="event",
        order_by="CertificateTemplate.template_index",
        cascade="all, delete-orphan",
    )


class Ticket(db.Model):
    __tablename__ = "tickets"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    token = db.Column(db.String(64), nullable=False, unique=True)
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    event = db.relationship("Event")


class Participant(db.Model):
    __tablename__ = "participants"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    ticket = db.relationship("Ticket")

    @validates("email")
    def lower_email(self, key, value):  # pragma: no cover - simple normalizer
        return (value or "").strip().lower()

    @property
    def event(self) -> Event | None:
        return self.ticket.event if self.ticket else None


class CertificateTemplate(db.Model):
    __tablename__ = "certificate_templates"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    # 1 for the single-template flow; 1..6 in multi-template mode
    template_index = db.Column(db.Integer, nullable=False, default=1)
    image_path = db.Column(db.String(255), nullable=False)
    width_px = db.Column(db.Integer)
    height_px = db.Column(db.Integer)
    fields = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    __table_args__ = (
        db.UniqueConstraint(
            "event_id", "template_index", name="uix_certificate_template_event_index"
        ),
    )

    event = db.relationship("Event", back_populates="templates")


class Certificate(db.Model):
    __tablename__ = "certificates"

    # template_index 0 marks the merged multi-template artifact
    MERGED_TEMPLATE_INDEX = 0

    id = db.Column(db.Integer, primary_key=True)
    participant_id = db.Column(
        db.Integer,
        db.ForeignKey("participants.id", ondelete="CASCADE"),
        nullable=False,
    )
    template_index = db.Column(db.Integer, nullable=False, default=1)
    path = db.Column(db.String(255), nullable=False)
    sent = db.Column(db.Boolean, nullable=False, default=False)
    sent_at = db.Column(db.DateTime)
    generated_at = db.Column(db.DateTime, server_default=db.func.now())
    __table_args__ = (
        db.UniqueConstraint(
            "participant_id",
            "template_index",
            name="uix_certificate_participant_template",
        ),
    )

    participant = db.relationship("Participant")


class GeneratedTicketSheet(db.Model):
    __tablename__ = "generated_tickets"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    file_path = db.Column(db.String(255), nullable=False)
    ticket_count = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, server_default=db.func.now())


class JobFailure(db.Model):
    __tablename__ = "job_failures"

    id = db.Column(db.Integer, primary_key=True)
    batch_key = db.Column(db.String(120), nullable=False, index=True)
    participant_id = db.Column(db.Integer, nullable=False)
    attempts = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
