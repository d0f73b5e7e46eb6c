import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, MutableMapping, Tuple

from diagram_core.config.settings import settings

# 可能携带用户内容的字段，开启 log_redact_content 时截断
_CONTENT_FIELDS = ("xml", "title", "message_text")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            for key, value in extra.items():
                if settings.log_redact_content and key in _CONTENT_FIELDS and isinstance(value, str):
                    value = value[:16]
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ContextLogger(logging.LoggerAdapter):
    """给每条日志附带固定的上下文字段（user_id、conversation_id、component 等）。

    调用方仍然可以通过 ``extra={"extra": {...}}`` 传入单条日志的字段，
    同名字段以单条日志为准。
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        fields = dict(self.extra or {})
        passed = kwargs.get("extra") or {}
        fields.update(passed.get("extra") or {})
        kwargs["extra"] = {"extra": fields}
        return msg, kwargs

    def bind(self, **fields: Any) -> "ContextLogger":
        merged = dict(self.extra or {})
        merged.update({k: v for k, v in fields.items() if v is not None})
        return ContextLogger(self.logger, merged)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("diagram_core")
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "diagram.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


def bind_logger(**fields: Any) -> ContextLogger:
    """返回绑定了上下文字段的 logger，值为 None 的字段不写入。"""

    return ContextLogger(logger, {k: v for k, v in fields.items() if v is not None})


logger = setup_logger()
