import json
import logging

from streamvault.core.logging import (
    JsonFormatter,
    PrettyFormatter,
    RequestIdFilter,
    latency_bucket_ms,
    log_event,
    request_id_ctx_var,
)


def _record(msg="webhook.applied", **extra):
    record = logging.makeLogRecord({"name": "streamvault", "levelname": "INFO", "levelno": logging.INFO, "msg": msg})
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_context_and_extra_fields():
    token = request_id_ctx_var.set("rid-42")
    try:
        record = _record(subscription_id="sub-1", to_state="ACTIVE")
        RequestIdFilter().filter(record)
        payload = json.loads(JsonFormatter().format(record))
    finally:
        request_id_ctx_var.reset(token)

    assert payload["message"] == "webhook.applied"
    assert payload["request_id"] == "rid-42"
    assert payload["subscription_id"] == "sub-1"
    assert payload["to_state"] == "ACTIVE"
    assert payload["timestamp"].endswith("Z")


def test_pretty_formatter_appends_fields():
    line = PrettyFormatter().format(_record(request_id="rid-1", user_id="u-1"))

    assert "[rid=rid-1]" in line
    assert "user_id=u-1" in line


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(5) == "<10ms"
    assert latency_bucket_ms(250) == "100-500ms"
    assert latency_bucket_ms(5000) == ">=1000ms"


def test_log_event_truncates_extra_values(caplog):
    with caplog.at_level(logging.INFO, logger="streamvault"):
        log_event("info", "saga.intent.created", user_id="u-1", extra={"note": "x" * 600})

    record = caplog.records[-1]
    assert record.user_id == "u-1"
    assert record.note.endswith("...<truncated>")
