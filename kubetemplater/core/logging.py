"""Logging configuration for the KubeTemplater operator."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from kubetemplater.core.config import Settings, get_settings

# Record attributes copied into JSON output when a handler passes them via ``extra``
CONTEXT_FIELDS = ("template", "policy", "worker_id", "event")

THIRD_PARTY_LEVELS = {
    "kopf": logging.INFO,
    "kubernetes": logging.WARNING,
    "urllib3": logging.WARNING,
}


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter tagging records with the operator and reconciliation context."""

    def __init__(self, *args, app_name: str = "kubetemplater", app_version: str = "", **kwargs):
        super().__init__(*args, **kwargs)
        self.app_name = app_name
        self.app_version = app_version

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["app_name"] = self.app_name
        log_record["app_version"] = self.app_version
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_record[name] = getattr(record, name)


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Route all logging to stdout, as JSON when ``log_json`` is set."""
    settings = settings or get_settings()
    level = settings.log_level.value

    if settings.log_json:
        formatter: logging.Formatter = CustomJsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            app_name=settings.app_name,
            app_version=settings.app_version,
        )
    else:
        formatter = logging.Formatter(settings.log_format)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    for name, library_level in THIRD_PARTY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={"log_level": level, "log_json": settings.log_json},
    )


def log_event(logger: logging.Logger, level: str, event: str, **kwargs) -> None:
    """Log a structured event; ``kwargs`` become record attributes and the message body."""
    message = f"{event}: {json.dumps(kwargs, default=str)}" if kwargs else event
    getattr(logger, level)(message, extra={"event": event, **kwargs})
