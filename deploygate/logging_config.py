"""
Centralized Logging Configuration for DeployGate

Provides structured logging with:
- JSON format for production
- Colored console output for development
- The current attempt id on every record emitted while an attempt is driven
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Optional

from deploygate.tracing import get_attempt_id


# ============================================================================
# Configuration
# ============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "console")  # 'console' or 'json'
LOG_FILE = os.getenv("LOG_FILE")  # Optional file path


# ============================================================================
# Filters and Formatters
# ============================================================================

class AttemptContextFilter(logging.Filter):
    """Stamp records with the attempt id bound to the current task"""

    def filter(self, record):
        record.attempt_id = get_attempt_id()
        return True


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output"""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')

        if record.levelname in ['ERROR', 'CRITICAL']:
            prefix = f"{color}[{record.levelname}]{self.RESET}"
        else:
            prefix = f"{color}[{record.name}]{self.RESET}"

        attempt_id = getattr(record, "attempt_id", None)
        suffix = f" ({attempt_id})" if attempt_id else ""

        line = f"{timestamp} {prefix} {record.getMessage()}{suffix}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JSONFormatter(logging.Formatter):
    """JSON formatter for production/log aggregation"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        attempt_id = getattr(record, "attempt_id", None)
        if attempt_id:
            log_entry["attempt_id"] = attempt_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


# ============================================================================
# Logger Setup
# ============================================================================

def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None,
                  log_file: Optional[str] = None, stream=None) -> logging.Logger:
    """Configure the root logger with appropriate handlers"""
    level = (level or LOG_LEVEL).upper()
    fmt = fmt or LOG_FORMAT
    log_file = log_file or LOG_FILE

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(getattr(logging, level, logging.INFO))
    console_handler.addFilter(AttemptContextFilter())
    console_handler.setFormatter(JSONFormatter() if fmt == "json" else ColoredFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.addFilter(AttemptContextFilter())
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module.

    Usage:
        from deploygate.logging_config import get_logger
        logger = get_logger(__name__)

        logger.info("[GATE] Attempt accepted")
        logger.error("[GATE] Rollback failed", exc_info=True)
    """
    return logging.getLogger(name)
