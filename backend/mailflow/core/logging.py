"""
Centralized Logging Configuration for Mailflow

Provides structured logging with:
- Configurable log levels
- JSON and human-readable formatters
- Request and flow context tracking
- Sensitive data masking (secrets and recipient addresses)
"""

import os
import re
import sys
import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any, Union
from contextvars import ContextVar

# Context variable for request-scoped data
_request_context: ContextVar[Dict[str, Any]] = ContextVar('request_context', default={})


class LogContext:
    """
    Context manager for adding contextual information to log records.

    Usage:
        with LogContext(request_id="abc123", flow_trigger_id="u1_3_evt"):
            logger.info("Expanding flow")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._token = None

    def __enter__(self):
        current = _request_context.get().copy()
        current.update(self.context)
        self._token = _request_context.set(current)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token:
            _request_context.reset(self._token)
        return False

    @staticmethod
    def get(key: str, default: Any = None) -> Any:
        """Get a value from the current context."""
        return _request_context.get().get(key, default)

    @staticmethod
    def get_all() -> Dict[str, Any]:
        """Get all context values."""
        return _request_context.get().copy()


class SensitiveDataFilter(logging.Filter):
    """
    Filter to mask sensitive data in log records.

    Masks:
    - API keys and webhook secrets
    - Unsubscribe tokens
    - Email addresses (partial)
    """

    SENSITIVE_PATTERNS = [
        ('api_key', '***API_KEY***'),
        ('password', '***PASSWORD***'),
        ('secret', '***SECRET***'),
        ('authorization', '***AUTH***'),
        ('bearer', '***BEARER***'),
        ('token', '***TOKEN***'),
    ]

    EMAIL_RE = re.compile(r'([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})')

    def filter(self, record: logging.LogRecord) -> bool:
        if hasattr(record, 'msg') and isinstance(record.msg, str):
            msg_lower = record.msg.lower()
            for pattern, replacement in self.SENSITIVE_PATTERNS:
                if pattern in msg_lower:
                    record.msg = self._mask_value(record.msg, pattern, replacement)
            record.msg = self.mask_email(record.msg)
        return True

    @classmethod
    def mask_email(cls, text: str) -> str:
        """Keep the first character of the local part: j***@example.com."""
        return cls.EMAIL_RE.sub(r'\1***\2', text)

    @staticmethod
    def _mask_value(msg: str, pattern: str, replacement: str) -> str:
        """Mask sensitive values in the message."""
        patterns = [
            rf'({pattern}[\s=:]+)[^\s,\}}\]]+',  # key=value or key: value
            rf'("{pattern}"[\s:]+)"[^"]*"',  # JSON string value
        ]
        for p in patterns:
            msg = re.sub(p, rf'\g<1>{replacement}', msg, flags=re.IGNORECASE)
        return msg


class ContextualFilter(logging.Filter):
    """Add request context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _request_context.get()
        for key, value in context.items():
            setattr(record, key, value)

        if not hasattr(record, 'request_id'):
            record.request_id = 'N/A'

        return True


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    Ideal for log aggregation systems like ELK, Datadog, etc.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        context = _request_context.get()
        if context:
            log_data['context'] = context

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info),
            }

        # Add extra fields
        extras = {
            k: v for k, v in record.__dict__.items()
            if k not in logging.LogRecord.__dict__ and not k.startswith('_')
            and k not in ['message', 'args', 'exc_info', 'exc_text', 'stack_info', 'msg']
        }
        if extras:
            log_data['extra'] = extras

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """
    Human-readable formatter with colors for console output.
    """

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'
    BOLD = '\033[1m'

    def __init__(self, fmt: str = None, use_colors: bool = True):
        super().__init__(fmt or '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s')
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        context = _request_context.get()
        if context:
            context_str = ' | '.join(f'{k}={v}' for k, v in context.items())
            record.msg = f"[{context_str}] {record.msg}"

        if self.use_colors:
            color = self.COLORS.get(record.levelname, '')
            record.levelname = f"{color}{self.BOLD}{record.levelname}{self.RESET}"

        return super().format(record)


def configure_logging(
    level: Union[str, int] = None,
    json_format: bool = None,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure global logging settings.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (auto-detected if None)
        log_file: Optional file path for logging
    """
    level = level or os.getenv('LOG_LEVEL', 'INFO')
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if json_format is None:
        json_format = os.getenv('LOG_FORMAT', 'text').lower() == 'json'

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if json_format:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ColoredFormatter())

    console_handler.addFilter(SensitiveDataFilter())
    console_handler.addFilter(ContextualFilter())

    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(JSONFormatter())  # Always JSON for files
        file_handler.addFilter(SensitiveDataFilter())
        file_handler.addFilter(ContextualFilter())
        root_logger.addHandler(file_handler)

    # Set levels for noisy third-party libraries
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the standard configuration.

    Usage:
        logger = get_logger(__name__)
        logger.info("Hello, world!")
    """
    return logging.getLogger(name)


# Initialize logging on module import with defaults
configure_logging()
