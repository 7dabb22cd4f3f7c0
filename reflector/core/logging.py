"""
Structured logging configuration and the access-log sink
"""

import logging
import logging.config
import sys
from pathlib import Path
from typing import Optional

import structlog

from reflector.models.check import AccessLogEntry
from reflector.scanner.address import anonymize

ACCESS_LOGGER_NAME = "reflector.access"

# Rotation policy for the file sinks
_MAX_BYTES = 100 * 1024 * 1024
_BACKUP_COUNT = 7

_SHARED_PROCESSORS = [
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]


def _log_dir_usable(log_path: Path) -> bool:
    """Create the log directory and make sure we can write into it"""
    try:
        log_path.mkdir(parents=True, exist_ok=True)
        probe = log_path / ".write-test"
        probe.touch()
        probe.unlink()
        return True
    except OSError:
        return False


def configure_logging(log_level: str = "INFO", log_dir: str = "logs") -> bool:
    """
    Configure structured logging for the application

    Returns True when file sinks are active, False when logging fell back
    to the console because the log directory is unusable.
    """
    log_path = Path(log_dir)
    file_sinks = _log_dir_usable(log_path)

    formatters = {
        "console": {
            "()": structlog.stdlib.ProcessorFormatter,
            "processors": [
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=False),
            ],
            "foreign_pre_chain": _SHARED_PROCESSORS,
        },
        "json": {
            "()": structlog.stdlib.ProcessorFormatter,
            "processors": [
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
            "foreign_pre_chain": _SHARED_PROCESSORS,
        },
    }

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": "console",
            "stream": "ext://sys.stdout",
        },
    }

    if file_sinks:
        handlers.update({
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": log_level,
                "formatter": "json",
                "filename": str(log_path / "reflector.log"),
                "maxBytes": _MAX_BYTES,
                "backupCount": _BACKUP_COUNT,
            },
            "error_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "ERROR",
                "formatter": "json",
                "filename": str(log_path / "error.log"),
                "maxBytes": _MAX_BYTES,
                "backupCount": _BACKUP_COUNT,
            },
            "access_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": "json",
                "filename": str(log_path / "access.log"),
                "maxBytes": _MAX_BYTES,
                "backupCount": _BACKUP_COUNT,
            },
        })
        root_handlers = ["console", "file", "error_file"]
        access_handlers = ["access_file"]
    else:
        # Fallback sink: access records go to stdout as JSON
        handlers["access_console"] = {
            "class": "logging.StreamHandler",
            "level": "INFO",
            "formatter": "json",
            "stream": "ext://sys.stdout",
        }
        root_handlers = ["console"]
        access_handlers = ["access_console"]

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "handlers": handlers,
        "loggers": {
            "": {
                "handlers": root_handlers,
                "level": log_level,
            },
            ACCESS_LOGGER_NAME: {
                "handlers": access_handlers,
                "level": "INFO",
                "propagate": False,
            },
        }
    })

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if not file_sinks:
        structlog.get_logger().warning(
            "Log directory unusable, falling back to console",
            log_dir=str(log_path)
        )

    return file_sinks


def _stderr_logger():
    """JSON logger on stderr that bypasses the configured handlers"""
    return structlog.wrap_logger(
        structlog.PrintLogger(file=sys.stderr),
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ]
    )


class AccessLogger:
    """
    Access-log sink for /check requests

    Entries arrive with the client address already anonymized. The address
    is anonymized again here so a raw address can never reach the sink.
    """

    def __init__(self, logger: Optional[structlog.stdlib.BoundLogger] = None):
        self.logger = logger or structlog.get_logger(ACCESS_LOGGER_NAME)

    def log_access(self, entry: AccessLogEntry):
        record = entry.model_dump(exclude_none=True)
        record["ip"] = anonymize(record.get("ip", ""))
        try:
            self.logger.info("access", **record)
        except Exception as e:
            # Sink failures must not fail the request
            _stderr_logger().error("Access log write failed", error=str(e), status=record.get("status"))
