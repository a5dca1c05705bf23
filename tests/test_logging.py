import json
import logging
import tempfile
from pathlib import Path
from logging.handlers import TimedRotatingFileHandler

import pytest
from starlette.testclient import TestClient

from supportline.app_logging import JsonFormatter, _scrub, init_logging


def _clear_handlers(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    return logger


@pytest.fixture
def log_dir(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("LOG_DIR", tmpdir)
        yield Path(tmpdir)


def test_timed_rotating_handler_configuration(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_RETENTION_DAYS", "5")
    app_logger = _clear_handlers("supportline")
    access_logger = _clear_handlers("uvicorn.access")

    init_logging()

    app_handler = next(
        h for h in app_logger.handlers if isinstance(h, TimedRotatingFileHandler)
    )
    assert app_handler.when == "MIDNIGHT"
    assert app_handler.backupCount == 5

    access_handler = next(
        h for h in access_logger.handlers if isinstance(h, TimedRotatingFileHandler)
    )
    assert access_handler.when == "MIDNIGHT"
    assert access_handler.backupCount == 5

    app_logger.handlers.clear()
    access_logger.handlers.clear()


def test_log_files_and_redaction(log_dir, app_factory):
    _clear_handlers("supportline")
    _clear_handlers("uvicorn.access")
    app = app_factory(log_dir, log_request_bodies=True)

    app_logger = logging.getLogger("supportline")
    logging.getLogger("supportline.ingestion.dispatcher").info("hello worker")

    with TestClient(app) as client:
        resp = client.post(
            "/echo",
            json={"token": "secret", "email": "jane@example.com", "value": 1},
            headers={"Authorization": "Bearer secret"},
        )
        assert resp.status_code == 200

    for logger in (app_logger, logging.getLogger("uvicorn.access")):
        for handler in logger.handlers:
            handler.flush()

    app_log = log_dir / "supportline.log"
    access_log = log_dir / "access.log"

    assert app_log.exists() and app_log.read_text().strip()
    assert "hello worker" in app_log.read_text()

    assert access_log.exists() and access_log.read_text().strip()
    access_line = access_log.read_text().splitlines()[-1]
    payload = access_line.split(": ", 1)[1]
    data = json.loads(payload)
    assert data["headers"]["authorization"] == "***"
    assert data["body"]["token"] == "***"
    assert data["body"]["email"] == "j***@example.com"

    app_logger.handlers.clear()
    logging.getLogger("uvicorn.access").handlers.clear()


def test_contact_details_are_masked():
    scrubbed = _scrub(
        {
            "contact": {"email": "a@x.com", "phone": "+5511999990000"},
            "destination": "+1555",
            "x-hub-signature-256": "sha256=abc",
            "body": ["text"],
        }
    )

    assert scrubbed == {
        "contact": {"email": "a***@x.com", "phone": "***0000"},
        "destination": "***1555",
        "x-hub-signature-256": "***",
        "body": ["text"],
    }


def test_json_formatter_carries_extra_fields():
    record = logging.LogRecord(
        "supportline.tickets", logging.WARNING, __file__, 1, "ticket %s escalated", ("t-1",), None
    )
    record.event = "ticket_escalated"
    record.destination = "jane@example.com"

    data = json.loads(JsonFormatter().format(record))

    assert data["message"] == "ticket t-1 escalated"
    assert data["level"] == "WARNING"
    assert data["event"] == "ticket_escalated"
    assert data["destination"] == "j***@example.com"
