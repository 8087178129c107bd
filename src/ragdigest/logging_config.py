"""Logging setup: JSON records on stderr plus the pipeline audit file."""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

AUDIT_LOGGER_NAME = "ragdigest.pipeline.audit"
_AUDIT_LOG_PATH = Path("logs") / "pipeline_audit.log"

# Attributes every LogRecord carries; anything else was passed through ``extra``.
_RECORD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

# Noisy third-party loggers capped at WARNING (httpx logs one line per request).
_QUIET_LOGGERS = ("httpx", "httpcore")


class MinimalJSONFormatter(logging.Formatter):
    """Render records as one JSON object per line.

    Dict messages (``log_event`` events and audit entries) are merged into the
    top level. ``fingerprint`` is hoisted next to the level so records of one
    document line up when grepping the stream.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - inherited
        timestamp = (
            datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z")
        )

        log_record: dict[str, Any] = {
            "ts": timestamp,
            "level": record.levelname,
            "module": record.name,
        }

        fields: dict[str, Any] = {}
        if isinstance(record.msg, dict):
            fields.update(record.msg)
        else:
            message = record.getMessage()
            if message:
                fields["message"] = message
        fields.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        )

        fingerprint = fields.pop("fingerprint", None)
        if fingerprint:
            log_record["fingerprint"] = fingerprint
        log_record.update(fields)

        if record.exc_info and "exc" not in log_record:
            log_record["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_record, ensure_ascii=False, default=str)


def configure_logging(level: str = "INFO", audit_log_path: Path | None = None) -> None:
    """Install the JSON handler on the root logger and the audit file handler.

    The audit logger does not propagate, so each pipeline run appears once in
    the audit file and never in the general stream.
    """

    audit_path = Path(audit_log_path or _AUDIT_LOG_PATH)
    audit_path.parent.mkdir(parents=True, exist_ok=True)

    loggers: dict[str, Any] = {
        AUDIT_LOGGER_NAME: {
            "level": "INFO",
            "handlers": ["pipeline_audit"],
            "propagate": False,
        },
        "ragdigest": {"level": level.upper()},
    }
    loggers.update({name: {"level": "WARNING"} for name in _QUIET_LOGGERS})

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": MinimalJSONFormatter}},
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "json",
                },
                "pipeline_audit": {
                    "class": "logging.FileHandler",
                    "filename": str(audit_path),
                    "mode": "a",
                    "encoding": "utf-8",
                    "formatter": "json",
                },
            },
            "root": {
                "level": level.upper(),
                "handlers": ["default"],
            },
            "loggers": loggers,
        }
    )


__all__ = ["AUDIT_LOGGER_NAME", "MinimalJSONFormatter", "configure_logging"]
