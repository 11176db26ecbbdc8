# tests/test_logging.py
import io
import json
import logging

import pytest
import structlog

from healthgrant.core.logging import setup_logging


@pytest.fixture
def log_output():
    setup_logging()
    (handler,) = [h for h in logging.getLogger().handlers if getattr(h, "_healthgrant", False)]
    buffer = io.StringIO()
    previous = handler.setStream(buffer)
    try:
        yield buffer
    finally:
        handler.setStream(previous)


def lines(buffer):
    return [json.loads(line) for line in buffer.getvalue().splitlines() if line.strip()]


def test_structlog_events_are_plain_json(log_output):
    structlog.get_logger("healthgrant.services.notification_queue").info("job_completed", job_id=7, type="REMINDER")

    raw = log_output.getvalue()
    assert "\x1b[" not in raw
    (record,) = [line for line in lines(log_output) if line["message"] == "job_completed"]
    assert record["job_id"] == 7
    assert record["type"] == "REMINDER"
    assert record["levelname"] == "INFO"
    assert record["name"] == "healthgrant.services.notification_queue"
    assert record["environment"] == "test"


def test_stdlib_records_share_the_format(log_output):
    logging.getLogger("healthgrant.crud").warning("Grant 3 could not be swept")

    (record,) = [line for line in lines(log_output) if line["name"] == "healthgrant.crud"]
    assert record["message"] == "Grant 3 could not be swept"
    assert record["levelname"] == "WARNING"


def test_setup_is_idempotent():
    setup_logging()
    setup_logging()
    ours = [h for h in logging.getLogger().handlers if getattr(h, "_healthgrant", False)]
    assert len(ours) == 1
