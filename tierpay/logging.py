import json
import logging
import logging.config
import os
from datetime import UTC, datetime

# LogRecord attributes passed through ``extra=`` that belong in the JSON line
CONTEXT_KEYS = (
    "request_id",
    "path",
    "method",
    "status",
    "duration_ms",
    "event_id",
    "event_type",
    "client_id",
    "subscription_id",
    "step",
)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, getattr(record, key))
            for key in CONTEXT_KEYS
            if getattr(record, key, None) is not None
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": JsonLogFormatter}},
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "json",
                }
            },
            "root": {"handlers": ["default"], "level": level},
            "loggers": {
                # STRIPE_LOG=info would otherwise log every API request line
                "stripe": {"level": "WARNING"},
            },
        }
    )
