import json
import logging

from session_runtime.infrastructure.logging.logger import JsonFormatter, redact


def make_record(msg, extra):
    record = logging.LogRecord("session_runtime", logging.INFO, __file__, 1, msg, None, None)
    record.extra = extra
    return record


def test_formatter_writes_extra_fields():
    line = JsonFormatter().format(make_record("Run started", {"session_id": "S1", "text": "患者隐私数据"}))
    payload = json.loads(line)
    assert payload["msg"] == "Run started"
    assert payload["level"] == "INFO"
    assert payload["ts"].endswith("Z")
    assert payload["text"] == "患者隐私数据"


def test_redaction_replaces_content_with_digest():
    secret = "患者张三的病历摘要，" * 20
    line = JsonFormatter(redact_content=True).format(make_record("Title generated", {
        "session_id": "S1",
        "title": secret,
        "error": "HTTP 500: " + secret,
        "message_count": 2,
    }))
    payload = json.loads(line)
    assert "张三" not in line
    assert payload["title"].startswith("<redacted:sha256:")
    assert payload["title"] == redact(secret)
    assert payload["error"] != payload["title"]
    # 非内容字段原样保留
    assert payload["session_id"] == "S1"
    assert payload["message_count"] == 2


def test_redaction_is_stable():
    assert redact("同一段文本") == redact("同一段文本")
    assert redact("a") != redact("b")
