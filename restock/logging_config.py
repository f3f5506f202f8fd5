"""Logging setup: readable console lines and JSON log files.

Prediction runs log through get_logger() with run_id and trigger bound, so
every record of one run can be pulled out of the JSON file by its run_id,
and the console shows which run a line belongs to.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from pythonjsonlogger import jsonlogger

from restock.config import settings

# Context bound by PredictionRunner; promoted to top-level JSON fields.
RUN_CONTEXT_FIELDS = ("run_id", "trigger")


class RunJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per record, run context at the top level when present."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"

        for name in RUN_CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                log_record.pop(name, None)
            else:
                log_record[name] = value


class RunConsoleFormatter(logging.Formatter):
    """Plain text, with a short run tag appended to lines logged inside a run."""

    def format(self, record):
        line = super().format(record)
        run_id = getattr(record, "run_id", None)
        if run_id is None:
            return line
        trigger = getattr(record, "trigger", None) or "-"
        return f"{line} [run {run_id[:8]} {trigger}]"


def log_paths(base_dir: Optional[Union[str, Path]] = None) -> tuple[Path, Path]:
    """
    Resolve the JSON log file and the error log file.

    Args:
        base_dir: Directory settings.log_dir is resolved against
                  (defaults to the current working directory)
    """
    logs_dir = Path(settings.log_dir)
    if not logs_dir.is_absolute():
        logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / logs_dir
    return logs_dir / settings.log_file, logs_dir / settings.error_log_file


def setup_logging(base_dir: Optional[Union[str, Path]] = None) -> logging.Logger:
    """Configure console and file logging for the application."""
    log_file, error_log_file = log_paths(base_dir)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        RunConsoleFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = RunJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    json_handler = logging.FileHandler(log_file)
    json_handler.setFormatter(json_formatter)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(error_log_file)
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    return root_logger


class RunLoggerAdapter(logging.LoggerAdapter):
    """Adds the bound run context to each record, keeping any per-call extra."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> RunLoggerAdapter:
    """
    Get a logger with run context bound.

    Args:
        name: Logger name (usually __name__)
        **context: Fields to attach to every record, e.g. run_id and trigger
    """
    return RunLoggerAdapter(logging.getLogger(name), context)
