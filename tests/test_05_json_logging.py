# tests/test_05_json_logging.py
import json
import logging

from alarm_recorder.json_logging import (
    DEFAULT_SERVICE, JsonFormatter, configure_logging, get_logger
)


def _record(msg="Segment start", **extra):
    record = logging.LogRecord("alarm_recorder.trigger", logging.INFO, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


def test_formatter_emits_one_json_object_with_extras():
    line = JsonFormatter().format(_record(channel=2, video_path="/a/b.mp4"))
    payload = json.loads(line)

    assert payload["level"] == "INFO"
    assert payload["logger"] == "alarm_recorder.trigger"
    assert payload["msg"] == "Segment start"
    assert payload["channel"] == 2
    assert payload["video_path"] == "/a/b.mp4"
    assert "lineno" not in payload
    assert "ts" in payload


def test_formatter_static_fields_and_non_json_values():
    formatter = JsonFormatter(static_fields={"service": "edge-7"})
    payload = json.loads(formatter.format(_record(classes={1, 2})))

    assert payload["service"] == "edge-7"
    assert isinstance(payload["classes"], str)


def test_configure_logging_stamps_service_name():
    root = configure_logging("INFO", service="gate-recorder")
    (formatter,) = [h.formatter for h in root.handlers if isinstance(h.formatter, JsonFormatter)]

    payload = json.loads(formatter.format(_record()))
    assert payload["service"] == "gate-recorder"

    configure_logging("INFO")
    assert json.loads(formatter.format(_record()))["service"] == DEFAULT_SERVICE


def test_configure_logging_is_idempotent():
    root = configure_logging("debug")
    handlers = len(root.handlers)
    configure_logging(logging.WARNING)

    assert len(root.handlers) == handlers
    assert root.level == logging.WARNING
    assert get_logger("retention").name == "alarm_recorder.retention"
    configure_logging("INFO")
