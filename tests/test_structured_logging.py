from __future__ import annotations

import json
import logging

from copytrader.common.logging import JsonLogFormatter, bind_request_id, get_request_id, log_event


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    rec = logging.LogRecord("copytrader.test", logging.WARNING, __file__, 1, msg, (), None)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec


def test_formatter_emits_single_json_line_with_core_fields():
    fmt = JsonLogFormatter(service="svc", env="test", version="1.2.3", sha="abc")
    line = fmt.format(_record("multi\nline", event_type="executor.heartbeat", live_aggregates=3))

    assert "\n" not in line
    payload = json.loads(line)
    assert payload["service"] == "svc"
    assert payload["env"] == "test"
    assert payload["version"] == "1.2.3"
    assert payload["sha"] == "abc"
    assert payload["severity"] == "WARNING"
    assert payload["event_type"] == "executor.heartbeat"
    assert payload["message"] == "multi line"
    assert payload["logger"] == "copytrader.test"
    assert payload["live_aggregates"] == 3


def test_formatter_defaults_event_type_and_serializes_unknown_values():
    fmt = JsonLogFormatter(service="svc", env=None, version=None, sha=None)
    payload = json.loads(fmt.format(_record(obj=object())))
    assert payload["event_type"] == "log"
    assert payload["obj"].startswith("<object object")


def test_bind_request_id_scopes_correlation_id():
    assert get_request_id() is None
    fmt = JsonLogFormatter(service="svc", env="t", version="v", sha="s")
    with bind_request_id(request_id="cycle-1") as rid:
        assert rid == "cycle-1"
        payload = json.loads(fmt.format(_record()))
        assert payload["request_id"] == "cycle-1"
        assert payload["correlation_id"] == "cycle-1"
    assert get_request_id() is None

    with bind_request_id() as generated:
        assert len(generated) == 32


def test_log_event_sets_event_type_and_level(caplog):
    logger = logging.getLogger("copytrader.test.log_event")
    with caplog.at_level(logging.INFO):
        log_event(logger, "execution.lost_after_mark", severity="ERROR", trade_ids=["a", "b"])

    rec = caplog.records[-1]
    assert rec.levelno == logging.ERROR
    assert rec.event_type == "execution.lost_after_mark"
    assert rec.getMessage() == "execution.lost_after_mark"
    assert rec.trade_ids == ["a", "b"]
