import hashlib
import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from session_runtime.config.settings import settings

# 可能携带用户或模型文本的结构化字段
CONTENT_KEYS = frozenset({
    "text",
    "delta",
    "title",
    "content",
    "spec",
    "user_query",
    "feedback",
    "question",
    "proposal_text",
    "error",
    "item",
})


def redact(value) -> str:
    """用短摘要替换原文：同一内容得到同一标记，便于关联日志但无法还原。"""

    digest = hashlib.sha256(str(value).encode("utf-8")).hexdigest()[:12]
    return f"<redacted:sha256:{digest}>"


class JsonFormatter(logging.Formatter):
    def __init__(self, redact_content: bool = False):
        super().__init__()
        self.redact_content = redact_content

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            if self.redact_content:
                extra = {k: (redact(v) if k in CONTENT_KEYS and v is not None else v) for k, v in extra.items()}
            payload.update(extra)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("session_runtime")
    logger.setLevel(logging.INFO)
    # 模块被重新加载时不要重复挂 handler
    if any(getattr(h, "_session_runtime_handler", False) for h in logger.handlers):
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "session_runtime.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh._session_runtime_handler = True
    fh.setFormatter(JsonFormatter(redact_content=settings.log_redact_content))
    logger.addHandler(fh)
    return logger


logger = setup_logger()
