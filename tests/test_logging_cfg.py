"""
Tests for structured logging helpers.
"""
import json
import logging

import pytest

from reconciler.infra.logging_cfg import WARNING, JsonFormatter, ThrottledFilter, build_logger, log_event


def make_record(msg, level=logging.WARNING):
    return logging.LogRecord("reconciler", level, __file__, 1, msg, None, None)


class TestThrottledFilter:
    def test_repeats_suppressed_per_key(self):
        f = ThrottledFilter(cooldown_sec=60.0)
        msg = json.dumps({"event": "duty_rate_limited", "bot_id": "7", "symbol": "SOL"})
        other = json.dumps({"event": "duty_rate_limited", "bot_id": "8", "symbol": "SOL"})
        assert f.filter(make_record(msg))
        assert not f.filter(make_record(msg))
        assert f.filter(make_record(other))

    def test_other_events_pass(self):
        f = ThrottledFilter(cooldown_sec=60.0)
        msg = json.dumps({"event": "ghost_order_cleaned", "bot_id": "7"})
        assert f.filter(make_record(msg))
        assert f.filter(make_record(msg))
        assert f.filter(make_record("plain text"))
        assert f.filter(make_record("[1, 2]"))

    def test_cooldown_expires(self, monkeypatch):
        clock = {"now": 1000.0}
        monkeypatch.setattr("reconciler.infra.logging_cfg.time.time", lambda: clock["now"])
        f = ThrottledFilter(cooldown_sec=30.0)
        msg = json.dumps({"event": "fills_unknown", "bot_id": "7"})
        assert f.filter(make_record(msg))
        clock["now"] += 10
        assert not f.filter(make_record(msg))
        clock["now"] += 30
        assert f.filter(make_record(msg))


class TestFormatting:
    def test_json_formatter(self):
        line = JsonFormatter().format(make_record('{"event": "x"}', level=logging.INFO))
        payload = json.loads(line)
        assert payload["level"] == "INFO"
        assert payload["name"] == "reconciler"
        assert json.loads(payload["msg"]) == {"event": "x"}

    def test_log_event(self, caplog):
        logger = logging.getLogger("reconciler.test_events")
        with caplog.at_level(logging.DEBUG, logger="reconciler.test_events"):
            log_event(logger, "lock_released", level=WARNING, bot_id="7", count=2)
        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert json.loads(record.getMessage()) == {"event": "lock_released", "bot_id": "7", "count": 2}


class TestBuildLogger:
    @pytest.fixture
    def logger_name(self):
        name = "recon-test-build"
        yield name
        logger = logging.getLogger(name)
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()

    def test_file_output_and_idempotence(self, tmp_path, logger_name):
        path = tmp_path / "recon.log"
        logger = build_logger(logger_name, level=logging.INFO, file_path=str(path), async_file=False)
        assert len(logger.handlers) == 2
        assert not logger.propagate
        again = build_logger(logger_name, level=logging.DEBUG, file_path=str(path), async_file=False)
        assert again is logger
        assert len(logger.handlers) == 2

        log_event(logger, "startup", bots=["7"])
        for h in logger.handlers:
            h.flush()
        [line] = path.read_text().splitlines()
        assert json.loads(json.loads(line)["msg"]) == {"event": "startup", "bots": ["7"]}

    def test_console_only(self, logger_name):
        logger = build_logger(logger_name, file_path=None)
        assert len(logger.handlers) == 1
