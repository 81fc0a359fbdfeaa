import pathlib
import sys
from io import BytesIO

import pytest
from PIL import Image

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from certdesk.app import create_app, db, get_job_queue


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "slow" in item.keywords or "quarantine" in item.keywords:
            continue
        item.add_marker("full")
        if "no_smoke" in item.keywords:
            continue
        item.add_marker("smoke")


@pytest.fixture
def app(tmp_path):
    application = create_app(
        {
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "STORAGE_ROOT": str(tmp_path / "storage"),
            "JOB_QUEUE_EAGER": True,
            "JOB_BACKOFF_SECONDS": 0,
            "REGISTER_BASE_URL": "https://tickets.example.com",
        }
    )
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
    get_job_queue(application).close()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def png_bytes():
    def _make(width=900, height=636, color=(240, 230, 210), fmt="PNG"):
        buf = BytesIO()
        Image.new("RGB", (width, height), color).save(buf, format=fmt)
        return buf.getvalue()

    return _make
