"""Structured JSON logging with per-invocation correlation ids."""

import json
import logging
import sys
import uuid
from collections.abc import MutableMapping
from datetime import datetime, timezone
from typing import Any

_RESERVED = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys())
_REDACTED_KEYS = frozenset({"token", "access_token", "client_secret", "authorization", "api_key"})


class JsonFormatter(logging.Formatter):
    """Serialize log records as compact JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras = {
            key: "***" if key.lower() in _REDACTED_KEYS else value
            for key, value in record.__dict__.items()
            if key not in _RESERVED and not key.startswith("_")
        }
        if extras:
            payload["context"] = extras

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


class CorrelatedLogger(logging.LoggerAdapter):
    """Logger adapter that stamps every record with the invocation's correlation id."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    @property
    def correlation_id(self) -> str:
        return str((self.extra or {}).get("correlation_id", ""))


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def correlated(logger: logging.Logger, method: str, correlation_id: str | None = None) -> CorrelatedLogger:
    """Bind a fresh (or given) correlation id and handler name to ``logger``."""

    return CorrelatedLogger(
        logger,
        {"correlation_id": correlation_id or new_correlation_id(), "method": method},
    )


def configure_logging(level: str = "INFO") -> None:
    """Configure process-wide JSON logging once."""

    root = logging.getLogger()
    if getattr(root, "_order_relay_configured", False):
        return

    root.handlers.clear()
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.addHandler(handler)
    root.setLevel(level.upper())
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    setattr(root, "_order_relay_configured", True)
