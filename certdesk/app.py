import logging
import os
from contextlib import contextmanager

from flask import Flask, current_app, has_app_context
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

from . import models  # noqa: E402,F401  registers tables on db.metadata
from .services.jobs import (  # noqa: E402
    JobQueue,
    MemoryProgressStore,
    ProgressStore,
    RedisProgressStore,
)
from .shared.storage import LocalBlobStorage  # noqa: E402

logger = logging.getLogger("certdesk")

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def create_app(config: dict | None = None):
    app = Flask(__name__)
    app.secret_key = os.getenv("SECRET_KEY", "dev")

    DB_USER = os.getenv("DB_USER", "certdesk")
    DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
    DB_HOST = os.getenv("DB_HOST", "db")
    DB_NAME = os.getenv("DB_NAME", "certdesk")
    DATABASE_URL = os.getenv(
        "DATABASE_URL",
        f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}/{DB_NAME}",
    )

    app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URL
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    app.config["STORAGE_ROOT"] = os.getenv("STORAGE_ROOT", "/srv")
    app.config["REGISTER_BASE_URL"] = os.getenv(
        "REGISTER_BASE_URL", "http://localhost:3000"
    )
    app.config["DATE_LOCALE"] = os.getenv("DATE_LOCALE", "en")

    app.config["JOB_CONCURRENCY"] = int(os.getenv("JOB_CONCURRENCY", "10"))
    app.config["JOB_MAX_ATTEMPTS"] = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
    app.config["JOB_BACKOFF_SECONDS"] = float(os.getenv("JOB_BACKOFF_SECONDS", "2"))
    app.config["JOB_QUEUE_EAGER"] = _env_flag("JOB_QUEUE_EAGER")
    app.config["PROGRESS_TTL_SECONDS"] = int(os.getenv("PROGRESS_TTL_SECONDS", "3600"))
    app.config["PROGRESS_REDIS_URL"] = os.getenv("PROGRESS_REDIS_URL")
    app.config["POLL_CEILING_SECONDS"] = float(os.getenv("POLL_CEILING_SECONDS", "600"))

    for key in (
        "SMTP_HOST",
        "SMTP_PORT",
        "SMTP_USER",
        "SMTP_PASS",
        "SMTP_FROM_DEFAULT",
        "SMTP_FROM_NAME",
    ):
        app.config[key] = os.getenv(key)

    if config:
        app.config.update(config)

    db.init_app(app)
    app.extensions["blob_storage"] = LocalBlobStorage(app.config["STORAGE_ROOT"])
    init_job_queue(app)
    return app


def _progress_store(app: Flask) -> ProgressStore:
    ttl = app.config["PROGRESS_TTL_SECONDS"]
    url = app.config.get("PROGRESS_REDIS_URL")
    if url:
        return RedisProgressStore.from_url(url, ttl_seconds=ttl)
    return MemoryProgressStore(ttl_seconds=ttl)


def init_job_queue(app: Flask) -> JobQueue:
    """Create the shared job queue for ``app`` and start its workers."""
    queue = JobQueue(
        concurrency=app.config["JOB_CONCURRENCY"],
        max_attempts=app.config["JOB_MAX_ATTEMPTS"],
        backoff_seconds=app.config["JOB_BACKOFF_SECONDS"],
        progress_store=_progress_store(app),
        eager=app.config["JOB_QUEUE_EAGER"],
        failure_hook=lambda job: _record_job_failure(app, job),
        batch_ttl_seconds=app.config["PROGRESS_TTL_SECONDS"],
    )
    queue.start()
    app.extensions["job_queue"] = queue
    logger.info(
        "[QUEUE] started concurrency=%s eager=%s progress=%s",
        queue.concurrency,
        queue.eager,
        type(queue.progress).__name__,
    )
    return queue


def get_job_queue(app: Flask | None = None) -> JobQueue:
    target = app or current_app
    return target.extensions["job_queue"]


def get_storage(app: Flask | None = None) -> LocalBlobStorage:
    target = app or current_app
    return target.extensions["blob_storage"]


@contextmanager
def job_context(app: Flask):
    """Run job code inside ``app``'s context, reusing the caller's when eager."""
    if has_app_context() and current_app._get_current_object() is app:
        yield
    else:
        with app.app_context():
            yield


def _record_job_failure(app: Flask, job) -> None:
    with job_context(app):
        db.session.add(
            models.JobFailure(
                batch_key=job.batch_key,
                participant_id=job.participant_id,
                attempts=job.attempt,
                reason=(job.error or "unknown error")[:2000],
            )
        )
        db.session.commit()
