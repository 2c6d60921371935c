import json
import logging
import sys

from am_ingest.config import LoggingSettings
from am_ingest.logging_config import build_formatter, setup_logging


def make_record(msg, args=(), exc_info=None, level=logging.WARNING):
    return logging.LogRecord("am_ingest.test", level, __file__, 1, msg, args, exc_info)


def test_json_lines_carry_level_logger_and_timestamp():
    line = build_formatter("json").format(make_record("chunk %d failed", (3,)))

    payload = json.loads(line)

    assert payload["event"] == "chunk 3 failed"
    assert payload["level"] == "warning"
    assert payload["logger"] == "am_ingest.test"
    assert payload["timestamp"].endswith("Z")
    assert "exception" not in payload


def test_json_lines_include_exception_text():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = make_record("failed", exc_info=sys.exc_info(), level=logging.ERROR)

    payload = json.loads(build_formatter("json").format(record))

    assert "RuntimeError: boom" in payload["exception"]


def test_text_format_is_not_json():
    line = build_formatter("text").format(make_record("backfill started", level=logging.INFO))

    assert "backfill started" in line
    assert not line.lstrip().startswith("{")


def test_setup_logging_replaces_its_own_handlers(tmp_path):
    root = logging.getLogger()
    before = len(root.handlers)
    config = LoggingSettings(level="debug", format="json", file=str(tmp_path / "service.log"))

    setup_logging(config)
    setup_logging(config)

    ours = [h for h in root.handlers if getattr(h, "_am_ingest", False)]
    try:
        assert len(ours) == 2
        assert len(root.handlers) == before + 2
        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        for handler in ours:
            root.removeHandler(handler)
            handler.close()
