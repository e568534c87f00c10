import json
import logging
import re
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context variables for correlation; asyncio tasks each get their own copy
fetch_id_var: ContextVar[Optional[str]] = ContextVar('fetch_id', default=None)
method_var: ContextVar[Optional[str]] = ContextVar('method', default=None)
page_var: ContextVar[Optional[int]] = ContextVar('page', default=None)
stage_var: ContextVar[Optional[str]] = ContextVar('stage', default=None)


class SecretMasker:
    """Masks sensitive information in log messages."""

    def __init__(self):
        """Initialize secret masker with patterns."""
        self.patterns = [
            # api_key=... in query strings and key: value pairs
            r'(?i)(api_key|apikey|api-key)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{8,})["\']?',
            # Last.fm shared secrets and session keys
            r'(?i)(secret|session_key|sk)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{8,})["\']?',
            # Generic tokens and passwords
            r'(?i)(token|password|auth)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
        ]

        self.compiled_patterns = [re.compile(pattern) for pattern in self.patterns]

    def mask_secrets(self, text: str) -> str:
        """Mask sensitive information in text."""
        if not text:
            return text

        masked_text = text

        for pattern in self.compiled_patterns:
            def replace_match(match):
                prefix = match.group(1)
                secret = match.group(2)
                # Keep first 4 and last 4 characters, mask the rest
                if len(secret) > 8:
                    masked_secret = secret[:4] + '*' * (len(secret) - 8) + secret[-4:]
                else:
                    masked_secret = '*' * len(secret)
                return f"{prefix}={masked_secret}"

            masked_text = pattern.sub(replace_match, masked_text)

        return masked_text

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive information in dictionary values and secret-named keys."""
        if not data:
            return data

        masked_data = {}

        for key, value in data.items():
            if key.lower() in ('api_key', 'apikey', 'secret', 'session_key', 'password') and isinstance(value, str):
                masked_data[key] = '*' * len(value)
            elif isinstance(value, str):
                masked_data[key] = self.mask_secrets(value)
            elif isinstance(value, dict):
                masked_data[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [self.mask_dict(item) if isinstance(item, dict)
                                    else self.mask_secrets(item) if isinstance(item, str)
                                    else item for item in value]
            else:
                masked_data[key] = value

        return masked_data


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self):
        """Initialize formatter."""
        super().__init__()
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        fetch_id = fetch_id_var.get()
        method = method_var.get()
        page = page_var.get()
        stage = stage_var.get()

        log_entry = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': self.masker.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if fetch_id:
            log_entry['fetchId'] = fetch_id
        if method:
            log_entry['method'] = method
        if page is not None:
            log_entry['page'] = page
        if stage:
            log_entry['stage'] = stage

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        if hasattr(record, 'fields') and record.fields:
            log_entry['fields'] = self.masker.mask_dict(record.fields)

        return json.dumps(log_entry, ensure_ascii=False)


class CorrelationContext:
    """Context manager for correlation data."""

    def __init__(self, fetch_id: Optional[str] = None,
                 method: Optional[str] = None,
                 page: Optional[int] = None,
                 stage: Optional[str] = None):
        """Initialize correlation context."""
        self._values = {
            fetch_id_var: fetch_id,
            method_var: method,
            page_var: page,
            stage_var: stage,
        }
        self._tokens = []

    def __enter__(self):
        """Set correlation context."""
        for var, value in self._values.items():
            if value is not None:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Restore correlation context."""
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


def setup_logging(level: str = 'INFO',
                  log_file: Optional[str] = None,
                  structured: bool = True) -> logging.Logger:
    """Setup logging for the scrobblestats logger tree."""
    logger = logging.getLogger('scrobblestats')
    logger.setLevel(getattr(logging, level.upper()))

    logger.handlers.clear()

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = 'scrobblestats') -> logging.Logger:
    """Get logger with structured formatting."""
    return logging.getLogger(name)


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None, **kwargs):
    """Log message with additional fields."""
    level_no = getattr(logging, level.upper())
    if not logger.isEnabledFor(level_no):
        return

    record = logger.makeRecord(
        logger.name, level_no,
        '', 0, message, (), None
    )

    if fields:
        record.fields = dict(fields)
    if kwargs:
        if not hasattr(record, 'fields'):
            record.fields = {}
        record.fields.update(kwargs)

    logger.handle(record)


def log_fetch_start(logger: logging.Logger, fetch_id: str, method: str,
                    username: str, limit: str, **kwargs):
    """Log fetch start."""
    with CorrelationContext(fetch_id=fetch_id, method=method, stage='start'):
        log_with_fields(logger, 'INFO', 'Fetch started', {
            'username': username,
            'limit': limit,
            **kwargs
        })


def log_page_fetched(logger: logging.Logger, page: int, total_pages: int,
                     record_count: int, **kwargs):
    """Log a fetched page."""
    with CorrelationContext(page=page, stage='page'):
        log_with_fields(logger, 'DEBUG', 'Page fetched', {
            'total_pages': total_pages,
            'record_count': record_count,
            **kwargs
        })


def log_fetch_complete(logger: logging.Logger, fetch_id: str, method: str,
                       total_records: int, pages: int, **kwargs):
    """Log fetch completion."""
    with CorrelationContext(fetch_id=fetch_id, method=method, stage='complete'):
        log_with_fields(logger, 'INFO', 'Fetch completed', {
            'total_records': total_records,
            'pages': pages,
            **kwargs
        })


def log_error(logger: logging.Logger, message: str, error: Exception, **kwargs):
    """Log error with exception details."""
    log_with_fields(logger, 'ERROR', message, {
        'error_type': type(error).__name__,
        'error_message': str(error),
        **kwargs
    })
