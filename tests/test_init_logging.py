import logging
from logging.handlers import TimedRotatingFileHandler

from supportline.app_logging import init_logging
from fastapi import FastAPI


def _clear_handlers(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    return logger


def test_init_logging_adds_handlers(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    app_logger = _clear_handlers("supportline")
    access_logger = _clear_handlers("uvicorn.access")

    app = FastAPI()
    init_logging(app)

    assert any(isinstance(h, TimedRotatingFileHandler) for h in app_logger.handlers)
    assert any(isinstance(h, TimedRotatingFileHandler) for h in access_logger.handlers)
    assert app.logger is app_logger

    app_logger.handlers.clear()
    access_logger.handlers.clear()


def test_init_logging_without_app_for_workers(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "worker-logs"))
    monkeypatch.setenv("LOG_LEVEL", "debug")
    app_logger = _clear_handlers("supportline")

    logger = init_logging()

    assert logger is app_logger
    assert logger.level == logging.DEBUG
    assert (tmp_path / "worker-logs").is_dir()

    app_logger.handlers.clear()
    logging.getLogger("uvicorn.access").handlers.clear()


def test_init_logging_replaces_existing_access_handlers(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    access_logger = _clear_handlers("uvicorn.access")

    stream_handler = logging.StreamHandler()
    access_logger.addHandler(stream_handler)

    init_logging()

    assert stream_handler not in access_logger.handlers
    assert any(isinstance(h, TimedRotatingFileHandler) for h in access_logger.handlers)
    access_logger.handlers.clear()
    logging.getLogger("supportline").handlers.clear()
