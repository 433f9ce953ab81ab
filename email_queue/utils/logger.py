import logging
import os
import sys
import uuid
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pythonjsonlogger.json import JsonFormatter
from colorama import Fore, Style, init
from typing import Optional

from email_queue.config import settings

# Initialize color output for Windows terminals
init(autoreset=True)

SERVICE_NAME = "email_queue"


class ColorFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": Fore.CYAN,
        "INFO": Fore.GREEN,
        "WARNING": Fore.YELLOW,
        "ERROR": Fore.RED,
        "CRITICAL": Fore.MAGENTA,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        message = super().format(record)
        return f"{color}{message}{Style.RESET_ALL}"


_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Attach a request ID to every log record emitted by the current task."""
    value = request_id or str(uuid.uuid4())
    _request_id.set(value)
    return value


def get_request_id() -> Optional[str]:
    return _request_id.get()


def clear_request_id():
    _request_id.set(None)


class CustomJsonFormatter(JsonFormatter):
    def process_log_record(self, log_data: dict) -> dict:
        log_data["service"] = SERVICE_NAME
        log_data["request_id"] = get_request_id()
        return log_data


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(f"{SERVICE_NAME}.{name}")
    logger.setLevel(settings.log_level.upper())

    if not logger.handlers:
        os.makedirs(settings.log_dir, exist_ok=True)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(
            ColorFormatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        )

        json_file_handler = RotatingFileHandler(
            os.path.join(settings.log_dir, "structured_logs.json"),
            maxBytes=10_000_000,
            backupCount=60,
        )
        json_file_handler.setFormatter(
            CustomJsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )

        # Errors also go to a dedicated file for delivery triage
        error_handler = RotatingFileHandler(
            os.path.join(settings.log_dir, "delivery_errors.log"),
            maxBytes=5_000_000,
            backupCount=30,
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        )

        logger.addHandler(console_handler)
        logger.addHandler(json_file_handler)
        logger.addHandler(error_handler)
        logger.propagate = False

    return logger
