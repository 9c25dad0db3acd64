"""
Logging configuration for kubedeploy.

Configures the root logger once, with a coloured console format, optional
JSON output and an optional rotating log file, and routes structlog events
through the same handlers.
"""
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from ..config import Settings, get_settings
from .request_context import application_var, request_id_var

_CONFIGURED = False

_RESERVED_ATTRS = {
    "args", "asctime", "created", "exc_info", "exc_text", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "msg", "name", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "taskName", "thread", "threadName",
}


class ContextFilter(logging.Filter):
    """Injects request_id and application into every LogRecord."""

    def __init__(self, environment: str) -> None:
        super().__init__()
        self.environment = environment

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        rid = getattr(record, "request_id", None) or request_id_var.get()
        app = getattr(record, "application", None) or application_var.get()

        if rid is not None:
            record.request_id = rid
        if app is not None:
            record.application = app

        if not hasattr(record, "service"):
            record.service = "kubedeploy"
        if not hasattr(record, "env"):
            record.env = self.environment
        return True


class ColoredFormatter(logging.Formatter):
    """Coloured level names for interactive consoles."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        log_color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{log_color}{record.levelname}{self.RESET}"
        return super().format(record)


class JSONFormatter(logging.Formatter):
    """JSON structured log formatter.

    Emits time, level, name and message, merges extra record attributes and
    redacts values stored under sensitive keys.
    """

    REDACT_KEYS = {"password", "secret", "token", "authorization", "image_pull_secret"}

    def __init__(self, datefmt: Optional[str] = None) -> None:
        super().__init__(datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            safe_key = str(key)
            payload[safe_key] = "***REDACTED***" if safe_key.lower() in self.REDACT_KEYS else value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _configure_structlog(json_output: bool) -> None:
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.processors.KeyValueRenderer(
        key_order=["event"], drop_missing=True
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging(
    settings: Optional[Settings] = None,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    use_color: bool = True,
) -> logging.Logger:
    """Configure the root logger and structlog.

    Args:
        settings: application settings, defaults to ``get_settings()``
        level: log level overriding ``settings.log_level``
        log_file: log file path overriding ``settings.log_file``
        use_color: colour the console output when attached to a tty

    Returns:
        logging.Logger: the ``kubedeploy`` logger
    """
    global _CONFIGURED
    logger = logging.getLogger("kubedeploy")

    if _CONFIGURED:
        return logger

    settings = settings or get_settings()
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())

    for h in list(root.handlers):
        root.removeHandler(h)

    context_filter = ContextFilter(settings.app_env)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.addFilter(context_filter)
    if settings.log_json:
        console_formatter: logging.Formatter = JSONFormatter(datefmt=LOG_DATE_FORMAT)
    elif use_color and sys.stdout.isatty():
        console_formatter = ColoredFormatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    console_handler.setFormatter(console_formatter)
    root.addHandler(console_handler)

    file_path = log_file or settings.log_file
    if file_path:
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(context_filter)
        if settings.log_json:
            file_handler.setFormatter(JSONFormatter(datefmt=LOG_DATE_FORMAT))
        else:
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        root.addHandler(file_handler)

    # uvicorn and the kubernetes client log through the root handlers
    for log_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        l = logging.getLogger(log_name)
        l.handlers = []
        l.propagate = True
    logging.getLogger("kubernetes").setLevel(logging.WARNING)

    _configure_structlog(settings.log_json)

    _CONFIGURED = True
    return logger