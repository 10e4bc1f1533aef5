"""Logging with owner/account/shipment context on every record."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from pythonjsonlogger import jsonlogger

from lastmile.config import settings

# Keys lifted to top-level JSON fields and shown in console lines
CONTEXT_FIELDS = ("owner_id", "account_id", "shipment_id", "driver_id", "job_type", "run_id")

# Chatty libraries, with the level they are capped at
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "apscheduler.executors": logging.WARNING,
}


def record_context(record: logging.LogRecord) -> dict:
    return {
        name: getattr(record, name)
        for name in CONTEXT_FIELDS
        if getattr(record, name, None) is not None
    }


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    One JSON object per record.

    Context fields always come out under their own names so log queries can
    filter on ``account_id`` or ``shipment_id`` without parsing messages.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = (
            datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace('+00:00', 'Z')
        )
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"
        log_record.update(record_context(record))
        # Console prefix set by ContextFilter on the shared record
        log_record.pop('context', None)


class ContextFilter(logging.Filter):
    """Renders the record's context as ``[account_id=3 shipment_id=41] `` for text output."""

    def filter(self, record):
        context = record_context(record)
        record.context = (
            "[" + " ".join(f"{k}={v}" for k, v in context.items()) + "] " if context else ""
        )
        return True


def setup_logging(
    log_dir: str | Path | None = None,
    level: str | None = None,
    json_console: bool | None = None,
):
    """
    Configure the root logger.

    Args:
        log_dir: Directory for app.log and error.log (JSON lines); defaults to
                 settings.log_dir, empty disables file output
        level: Root level name; defaults to settings.log_level
        json_console: Write JSON to stdout instead of text, for containers
                      whose output is collected directly
    """
    level = (level or settings.log_level).upper()
    json_console = settings.log_json_console if json_console is None else json_console
    log_dir = settings.log_dir if log_dir is None else log_dir

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    root_logger.handlers.clear()

    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    console_handler = logging.StreamHandler(sys.stdout)
    if json_console:
        console_handler.setFormatter(json_formatter)
    else:
        console_handler.addFilter(ContextFilter())
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(context)s%(message)s")
        )
    root_logger.addHandler(console_handler)

    if log_dir:
        logs_dir = Path(log_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)

        json_handler = logging.FileHandler(logs_dir / "app.log")
        json_handler.setFormatter(json_formatter)
        root_logger.addHandler(json_handler)

        error_handler = logging.FileHandler(logs_dir / "error.log")
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(json_formatter)
        root_logger.addHandler(error_handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adds bound context to every record; per-call ``extra`` wins on clashes."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **(kwargs.get('extra') or {})}
        return msg, kwargs

    def bind(self, **context) -> "LoggerAdapter":
        return LoggerAdapter(self.logger, {**self.extra, **context})


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger bound to context fields.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields, e.g. ``account_id=3, owner_id="op-1"``

    Returns:
        LoggerAdapter with context
    """
    return LoggerAdapter(logging.getLogger(name), context)
