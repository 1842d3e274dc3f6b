"""
Logging configuration for Speculate
Console logging plus rotating app, error and background-job log files
"""

import logging
import logging.handlers
import os
from logging import Filter

from flask import current_app, has_request_context, request

# Third-party loggers that only log warnings and above
QUIET_LOGGERS = ("werkzeug", "urllib3", "requests", "flask_limiter", "apscheduler")

BACKGROUND_LOGGERS = (
    "speculate.services.scheduler_service",
    "speculate.services.task_queue",
)


class RequestContextFilter(Filter):
    """Stamp records with the request path and the caller's identity header"""

    def filter(self, record):
        record.url = record.method = record.remote_addr = record.identity = "-"
        if has_request_context():
            record.url = request.path
            record.method = request.method
            record.remote_addr = request.remote_addr
            header = current_app.config.get("IDENTITY_HEADER", "X-User-Id")
            record.identity = request.headers.get(header, "anonymous")
        return True


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output"""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",  # Reset
    }

    def format(self, record):
        log_color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset_color = self.COLORS["RESET"]

        # Color a copy so other handlers see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{log_color}{record.levelname}{reset_color}"

        return super().format(record)


def _rotating_handler(path, level, formatter, max_bytes, backup_count):
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(RequestContextFilter())
    return handler


def setup_logging(app):
    """
    Setup logging for the Flask application

    Args:
        app: Flask application instance
    """

    # Determine log level from config
    log_level = getattr(logging, app.config.get("LOG_LEVEL", "INFO").upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Clear existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Console handler with colors (for development)
    if app.config.get("LOG_TO_CONSOLE", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)

        if app.debug:
            console_formatter = ColoredFormatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s "
                "[%(filename)s:%(lineno)d]",
                datefmt="%H:%M:%S",
            )
        else:
            console_formatter = logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )

        console_handler.setFormatter(console_formatter)
        console_handler.addFilter(RequestContextFilter())
        root_logger.addHandler(console_handler)

    if app.config.get("LOG_TO_FILE", True):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)

        # Application log
        root_logger.addHandler(
            _rotating_handler(
                os.path.join(log_dir, "speculate.log"),
                log_level,
                logging.Formatter(
                    "%(asctime)s [%(levelname)s] %(name)s: %(message)s "
                    "[%(method)s %(url)s] [user=%(identity)s] [%(remote_addr)s]",
                    datefmt="%Y-%m-%d %H:%M:%S",
                ),
                max_bytes=10 * 1024 * 1024,  # 10MB
                backup_count=5,
            )
        )

        # Errors and above
        root_logger.addHandler(
            _rotating_handler(
                os.path.join(log_dir, "errors.log"),
                logging.ERROR,
                logging.Formatter(
                    "%(asctime)s [%(levelname)s] %(name)s: %(message)s "
                    "[%(pathname)s:%(lineno)d] [%(method)s %(url)s] [user=%(identity)s]",
                    datefmt="%Y-%m-%d %H:%M:%S",
                ),
                max_bytes=5 * 1024 * 1024,  # 5MB
                backup_count=3,
            )
        )

        # Scheduled jobs and queued tasks
        jobs_handler = _rotating_handler(
            os.path.join(log_dir, "jobs.log"),
            logging.INFO,
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ),
            max_bytes=5 * 1024 * 1024,  # 5MB
            backup_count=3,
        )
        for name in BACKGROUND_LOGGERS:
            logging.getLogger(name).addHandler(jobs_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    app.logger.info(f"Logging configured - Level: {logging.getLevelName(log_level)}")
