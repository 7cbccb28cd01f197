import json
import logging
from datetime import datetime, timezone
from typing import Any

# Optional fields passed through ``extra=``; emitted only when set on the record.
EXTRA_FIELDS = (
    "kind",
    "state",
    "status",
    "chat_id",
    "message_id",
    "channel_id",
    "link",
    "queue_size",
    "attempt",
    "backoff",
    "error_code",
    "error",
    "reason",
    "count",
    "cancelled",
    "deleted",
    "has_file",
)


class JsonFormatter(logging.Formatter):
    def __init__(self, *, service: str) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service,
            "logger": record.name,
            "level": record.levelname.lower(),
            "message": record.getMessage(),
            "action": getattr(record, "action", None),
            "request_id": getattr(record, "request_id", None),
            "tg_user_id": getattr(record, "tg_user_id", None),
            "content_id": getattr(record, "content_id", None),
        }
        for field in EXTRA_FIELDS:
            if hasattr(record, field):
                payload[field] = getattr(record, field)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str, service: str = "reelbox") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(service=service))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())
    # aiogram logs every polled update at INFO
    logging.getLogger("aiogram.event").setLevel(logging.WARNING)
