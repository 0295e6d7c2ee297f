"""
Logging configuration for AuditReady
Provides structured logging with security event support
"""

import json
import logging
import sys
from typing import Optional


class JSONLineFormatter(logging.Formatter):
    """Render records as one JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            payload["context"] = context
        return json.dumps(payload, default=str)


class SecurityLogger:
    """Enhanced logger for security events"""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self._setup_logger()

    def _setup_logger(self):
        """Setup logger with appropriate handlers and formatters"""
        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(JSONLineFormatter())

            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    def _log(self, level: int, message: str, extra: Optional[dict]):
        self.logger.log(level, message, extra={"context": extra} if extra else None)

    def info(self, message: str, extra: Optional[dict] = None):
        """Log info message"""
        self._log(logging.INFO, message, extra)

    def warning(self, message: str, extra: Optional[dict] = None):
        """Log warning message"""
        self._log(logging.WARNING, message, extra)

    def error(self, message: str, extra: Optional[dict] = None):
        """Log error message"""
        self._log(logging.ERROR, message, extra)

    def critical(self, message: str, extra: Optional[dict] = None):
        """Log critical message"""
        self._log(logging.CRITICAL, message, extra)

    def debug(self, message: str, extra: Optional[dict] = None):
        """Log debug message"""
        self._log(logging.DEBUG, message, extra)


def mask_identifier(value: Optional[str]) -> Optional[str]:
    """Mask an identifier for log output, keeping the first and last 4 characters."""
    if not value:
        return value
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-4:]}"


def get_logger(name: str) -> SecurityLogger:
    """Get logger instance for the specified module"""
    return SecurityLogger(name)
