"""
Structured Logging Configuration Module

Every settlement, lifecycle and sweep log line is a JSON object. Records
logged through log_action() carry the loan, payment and rail they concern so
that one loan's history can be pulled out of the stream with a single filter.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


ROOT_LOGGER = "microlend"

# Structured attributes copied from a LogRecord into the JSON line, in order
RECORD_FIELDS = ("action", "resource", "loan_id", "payment_id", "rail", "user_id", "extra")

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore")


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record):
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in RECORD_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", log_format: str = "json",
                  logger_name: str = ROOT_LOGGER) -> logging.Logger:
    """
    Configure the microlend logger tree.

    Args:
        level: Log level name for microlend.* loggers
        log_format: "json" for structured output, "text" for a plain console line
        logger_name: Root of the logger tree to configure

    Returns:
        The configured root logger
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               loan_id: Optional[str] = None, payment_id: Optional[str] = None,
               rail: Optional[str] = None, user_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a settlement action with structured fields.

    A resource of the form "loan:<id>" or "payment:<id>" also fills in
    loan_id or payment_id when they are not given explicitly.
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    if resource and ":" in resource:
        kind, _, resource_id = resource.partition(":")
        if kind == "loan" and loan_id is None:
            loan_id = resource_id
        elif kind == "payment" and payment_id is None:
            payment_id = resource_id

    logger.log(levelno, message, extra={
        "action": action,
        "resource": resource,
        "loan_id": loan_id,
        "payment_id": payment_id,
        "rail": rail,
        "user_id": user_id,
        "extra": extra,
    })
