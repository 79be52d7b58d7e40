"""Structured logging for coordinator, worker, verifier and scheduler processes.

Console output stays human-readable; the JSON files under logs/ are what
Promtail ships to Loki, one file per process kind plus a shared error log.
"""

import logging
import socket
import sys
from datetime import datetime
from pathlib import Path
from pythonjsonlogger import jsonlogger

from listing_tracker.config import settings

# Loggers that are too chatty at INFO for a long-running worker
QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter tagging every record with process and host."""

    def __init__(self, *args, process_name: str = "app", **kwargs):
        super().__init__(*args, **kwargs)
        self.process_name = process_name
        self.hostname = socket.gethostname()

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"
        log_record['process_kind'] = self.process_name
        log_record['host'] = self.hostname

        if record.funcName:
            log_record['function'] = record.funcName


def setup_logging(process_name: str = "app", base_dir: str | Path | None = None):
    """Configure the root logger for one tracker process.

    Args:
        process_name: coordinator, worker, verifier, scheduler, ... Names the
                      JSON log file and tags every JSON record.
        base_dir: Directory holding logs/ (defaults to the working directory).
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(logging.Formatter(
        f"%(asctime)s - {process_name} - %(name)s - %(levelname)s - %(message)s"
    ))
    root_logger.addHandler(console_handler)

    json_formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        process_name=process_name,
    )

    json_handler = logging.FileHandler(logs_dir / f"{process_name}.log")
    json_handler.setLevel(logging.DEBUG)
    json_handler.setFormatter(json_formatter)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(logs_dir / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adapter merging fixed context (worker_id, ...) into each record's extra."""

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get('extra') or {})
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger with fixed context fields.

    Args:
        name: Logger name (usually __name__)
        **context: Fields added to every record (e.g. worker_id='worker:host:42:ab12cd')

    Returns:
        LoggerAdapter with context
    """
    return LoggerAdapter(logging.getLogger(name), context)
