import logging
import os
import re
import sys
import json
from logging.handlers import RotatingFileHandler
from pathlib import Path

# --- Constants ---
LOG_DIR = Path(os.environ.get('LOG_DIR', Path(__file__).resolve().parent.parent / 'logs'))
LOG_FILE = LOG_DIR / 'ai_providers.log'
MAX_BYTES = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5

# Noisy third-party loggers kept at WARNING
QUIET_LOGGERS = ("httpx", "httpcore")


def _redact(message: str) -> str:
    for pattern, replacement in RedactingFormatter.SENSITIVE_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


class RedactingFormatter(logging.Formatter):
    """
    Plain-text formatter that masks API keys and bearer tokens.
    """
    SENSITIVE_PATTERNS = [
        (re.compile(r'(Bearer\s+)[^\s]+', re.I), r'\1[REDACTED]'),
        (re.compile(r'([?&]key=)[^&\s"\']+', re.I), r'\1[REDACTED]'),
        (re.compile(r'(api[_-]?key["\']?\s*[:=]\s*["\']?)[^"\'\s,}]+', re.I), r'\1[REDACTED]'),
        (re.compile(r'(x-goog-api-key["\']?\s*[:=]\s*["\']?)[^"\'\s,}]+', re.I), r'\1[REDACTED]'),
    ]

    def format(self, record):
        return _redact(super().format(record))


class JsonFormatter(logging.Formatter):
    """
    Formats log records as a JSON string.
    """
    def format(self, record):
        log_object = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": _redact(record.getMessage()),
        }
        if record.exc_info:
            log_object['exc_info'] = _redact(self.formatException(record.exc_info))

        return json.dumps(log_object)


def setup_logging(log_level=None, log_file=LOG_FILE):
    """
    Configures logging.
    - Console: Human-readable plain text.
    - File: Machine-readable JSON, with rotation (skipped if the log
      directory cannot be created).
    """
    if log_level is None:
        log_level = getattr(logging, os.environ.get('LOG_LEVEL', 'INFO').upper(), logging.INFO)

    # --- Root Logger Configuration ---
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # --- Formatters ---
    plain_formatter = RedactingFormatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    json_formatter = JsonFormatter()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(plain_formatter)

    # Clear existing handlers to avoid duplicates
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    root_logger.addHandler(console_handler)

    # --- Rotating File Handler (JSON) ---
    if log_file is not None:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=MAX_BYTES,
                backupCount=BACKUP_COUNT,
                encoding='utf-8'
            )
        except OSError as e:
            root_logger.warning(f"File logging disabled: {e}")
        else:
            file_handler.setLevel(log_level)
            file_handler.setFormatter(json_formatter)
            root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


# --- Initial Setup ---
# Initialize logging when the module is imported
setup_logging()
logger = logging.getLogger("ai.providers")
