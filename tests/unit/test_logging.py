"""Tests for logging and run metrics."""

import json
import logging

import pytest

from historian.lib.logging import JSONFormatter, RunLogger, get_run_logger, setup_logging
from historian.lib.metrics import PhaseTimer, RunMetrics


@pytest.fixture
def restore_root_logger():
    """setup_logging replaces root handlers; put pytest's back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(msg="hello", **extra):
    record = logging.LogRecord("historian.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Tests for JSONFormatter."""

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "historian.test"
        assert data["message"] == "hello"
        assert data["timestamp"].endswith("Z")
        assert "extra" not in data

    def test_extra_fields(self):
        data = json.loads(JSONFormatter().format(make_record(target="t", run_id="r")))
        assert data["extra"] == {"target": "t", "run_id": "r"}

    def test_excluded_fields(self):
        formatter = JSONFormatter(exclude_fields=["run_id"])
        data = json.loads(formatter.format(make_record(target="t", run_id="r")))
        assert data["extra"] == {"target": "t"}

    def test_exception_included(self):
        try:
            raise ValueError("boom")
        except ValueError:
            import sys

            record = logging.LogRecord(
                "historian.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        data = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in data["exception"]


class TestRunLogger:
    """Tests for RunLogger context."""

    def test_context_attached(self, caplog):
        run_log = get_run_logger("historian.test", target="t", run_id="r")

        with caplog.at_level(logging.INFO, logger="historian.test"):
            run_log.info("Classified %d rows", 3)

        record = caplog.records[-1]
        assert record.getMessage() == "Classified 3 rows"
        assert record.target == "t"
        assert record.run_id == "r"

    def test_metric(self, caplog):
        run_log = RunLogger("historian.test")
        run_log.set_context(target="t")

        with caplog.at_level(logging.INFO, logger="historian.test"):
            run_log.metric("rows_inserted", 42, unit="rows")

        record = caplog.records[-1]
        assert record.metric_name == "rows_inserted"
        assert record.metric_value == 42
        assert record.metric_unit == "rows"

    def test_clear_context(self):
        run_log = get_run_logger("historian.test", target="t")
        run_log.clear_context()
        assert run_log.context == {}


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_verbose_json(self, restore_root_logger):
        setup_logging(verbose=True, json_format=True)

        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)
        assert logging.getLogger("tenacity").level == logging.WARNING

    def test_log_file(self, restore_root_logger, tmp_path):
        log_file = tmp_path / "run.log"
        setup_logging(log_file=str(log_file))

        logging.getLogger("historian.test").info("written to file")
        for handler in restore_root_logger.handlers:
            handler.flush()

        assert "written to file" in log_file.read_text()


class TestRunMetrics:
    """Tests for RunMetrics."""

    def test_phases_and_metrics(self):
        metrics = RunMetrics(target="t", run_id="r")
        with metrics.time_phase("history"):
            pass
        metrics.record("rows_new", 5, unit="rows")
        metrics.record("rows_new", 7, unit="rows")

        summary = metrics.summary()
        assert summary["target"] == "t"
        assert list(summary["timing"]["phases"]) == ["history"]
        assert summary["metrics"][0]["tags"] == {"target": "t", "run_id": "r"}
        assert metrics.get("rows_new") == 7
        assert metrics.get("missing") is None

    def test_log_dict(self):
        metrics = RunMetrics(target="t", run_id="r")
        with metrics.time_phase("key"):
            pass
        metrics.record("rows_rejected", 0, unit="rows")

        flat = metrics.to_log_dict()
        assert "phase_key_seconds" in flat
        assert flat["metric_rows_rejected_rows"] == 0

    def test_phase_timer(self):
        timer = PhaseTimer(name="p")
        assert timer.running
        duration = timer.stop()
        assert not timer.running
        assert duration >= 0
