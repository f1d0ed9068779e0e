import json
import logging
from datetime import UTC, datetime

# Attributes passed through ``extra=`` that belong in the JSON line.
CONTEXT_FIELDS = (
    "request_id",
    "identity",
    "capability",
    "action",
    "method",
    "path",
    "status_code",
    "latency_ms",
    "upstream_status",
    "error",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (name, getattr(record, name))
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(log_level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())
    # Every request already produces a structured "request_completed" line.
    logging.getLogger("uvicorn.access").disabled = True
