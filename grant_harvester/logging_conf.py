"""Logging configuration built around structlog JSON logging."""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path

import structlog

from .config.loader import HOME_ENV_VAR

_LOGGING_INITIALISED = False
ROOT_LOGGER = "grant_harvester"


def default_log_dir() -> Path:
    env_root = os.environ.get(HOME_ENV_VAR)
    if env_root:
        return Path(env_root).expanduser().resolve() / "logs"
    return Path(__file__).resolve().parents[1] / "logs"


def configure_logging(verbose: bool = False, level: str | None = None) -> structlog.BoundLogger:
    """Configure structlog + stdlib handlers and return the application logger."""

    global _LOGGING_INITIALISED
    log_dir = default_log_dir()
    harvester_log = log_dir / "harvester.log"
    error_log = log_dir / "error.log"
    (log_dir / "sources").mkdir(parents=True, exist_ok=True)

    if not _LOGGING_INITIALISED:
        effective = "DEBUG" if verbose else (level or "INFO")
        logging.config.dictConfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "formatters": {
                    "json": {
                        "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                        "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                    }
                },
                "handlers": {
                    "console": {
                        "class": "logging.StreamHandler",
                        "level": effective,
                        "formatter": "json",
                    },
                    "harvester_file": {
                        "class": "logging.FileHandler",
                        "level": "INFO",
                        "filename": str(harvester_log),
                        "formatter": "json",
                        "encoding": "utf-8",
                    },
                    "error_file": {
                        "class": "logging.FileHandler",
                        "level": "ERROR",
                        "filename": str(error_log),
                        "formatter": "json",
                        "encoding": "utf-8",
                    },
                },
                "loggers": {
                    ROOT_LOGGER: {
                        "handlers": ["console", "harvester_file", "error_file"],
                        "level": effective,
                        "propagate": False,
                    },
                },
            }
        )

        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _LOGGING_INITIALISED = True
    return structlog.get_logger(ROOT_LOGGER)


def source_logger(source_id: str, verbose: bool = False) -> structlog.BoundLogger:
    """Return a logger bound to a specific source with its own log file."""

    configure_logging(verbose)
    source_log_path = default_log_dir() / "sources" / f"{source_id}.log"
    source_log_path.parent.mkdir(parents=True, exist_ok=True)

    logger_name = f"{ROOT_LOGGER}.source.{source_id}"
    py_logger = logging.getLogger(logger_name)
    if not any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == str(source_log_path)
        for handler in py_logger.handlers
    ):
        file_handler = logging.FileHandler(source_log_path, encoding="utf-8")
        global_logger = logging.getLogger(ROOT_LOGGER)
        if global_logger.handlers:
            file_handler.setFormatter(global_logger.handlers[0].formatter)
        file_handler.setLevel(logging.INFO)
        py_logger.addHandler(file_handler)

    return structlog.get_logger(logger_name).bind(source_id=source_id)


__all__ = [
    "configure_logging",
    "default_log_dir",
    "source_logger",
]
