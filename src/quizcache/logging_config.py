"""
Structured logging for QuizCache.

Every cache component logs through a ``CacheLogger`` which attaches the
component name, the operation being performed and any bound fields (for
example the cache name of a ``CacheManager``). Correlation, user and cache
context travel in context variables so that log lines emitted while a
warming job or a user request is being served can be grouped.
"""

import json
import logging
import logging.config
import os
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4


correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
cache_name: ContextVar[Optional[str]] = ContextVar('cache_name', default=None)

# Fields the filter guarantees on every record
CONTEXT_DEFAULTS = {
    'correlation_id': 'unknown',
    'user_id': 'anonymous',
    'cache_name': '-',
    'component': 'unknown',
    'operation': 'unknown',
}


class CorrelationFilter(logging.Filter):
    """Fill context fields on records that did not receive them explicitly."""

    def filter(self, record):
        context = {
            'correlation_id': correlation_id.get(),
            'user_id': user_id.get(),
            'cache_name': cache_name.get(),
        }
        for field_name, default in CONTEXT_DEFAULTS.items():
            if getattr(record, field_name, None) is None:
                setattr(record, field_name, context.get(field_name) or default)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    _RESERVED = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'line': record.lineno,
        }
        for field_name, default in CONTEXT_DEFAULTS.items():
            entry[field_name] = getattr(record, field_name, default)

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            entry['exception'] = {
                'type': exc_type.__name__,
                'message': str(exc_value),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key in entry or key in self._RESERVED or key.startswith('_'):
                    continue
                entry[key] = value if _is_json_value(value) else str(value)

        return json.dumps(entry, default=str)


def _is_json_value(value: Any) -> bool:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return False
    return True


class ColoredFormatter(logging.Formatter):
    """Console formatter colouring the level and tagging the component."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        formatted = super().format(record)

        tags = []
        component = getattr(record, 'component', None)
        if component and component != 'unknown':
            tags.append(f"[{component}]")
        name = getattr(record, 'cache_name', None)
        if name and name != '-':
            tags.append(f"[cache={name}]")
        tags.append(f"[{str(getattr(record, 'correlation_id', 'unknown'))[:8]}]")

        return f"{color}{formatted}{self.RESET} {''.join(tags)}"


class CacheLogger:
    """Component logger accepting an operation name and structured fields."""

    def __init__(self, name: str, component: Optional[str] = None, **fields):
        self.logger = logging.getLogger(name)
        self.component = component or name.split('.')[-1]
        self.fields = fields

    def bind(self, **fields) -> 'CacheLogger':
        """Return a logger that adds ``fields`` to every record."""
        return CacheLogger(self.logger.name, self.component, **{**self.fields, **fields})

    def _log(self, level: int, message: str, operation: Optional[str], exc_info: bool = False, **kwargs):
        if not self.logger.isEnabledFor(level):
            return
        extra = {
            **self.fields,
            **kwargs,
            'component': self.component,
            'operation': operation or 'unknown',
        }
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.DEBUG, message, operation, **kwargs)

    def info(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.INFO, message, operation, **kwargs)

    def warning(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.WARNING, message, operation, **kwargs)

    def error(self, message: str, operation: Optional[str] = None, **kwargs):
        self._log(logging.ERROR, message, operation, **kwargs)

    def exception(self, message: str, operation: Optional[str] = None, **kwargs):
        """Log at error level with the active exception attached."""
        self._log(logging.ERROR, message, operation or 'exception', exc_info=True, **kwargs)


class LoggingConfig:
    """Builds and applies the logging configuration."""

    DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    QUIET_LOGGERS = {'asyncio': 'WARNING', 'pydantic': 'WARNING'}

    @classmethod
    def get_config_dict(
        cls,
        level: Union[str, int] = 'INFO',
        format_type: str = 'json',
        log_file: Optional[str] = None,
        console_output: bool = True,
        correlation_tracking: bool = True
    ) -> Dict[str, Any]:
        """
        Build a ``logging.config.dictConfig`` dictionary.

        Args:
            level: Logging level for the root and ``quizcache`` loggers
            format_type: Console format, one of 'json', 'colored' or 'standard'
            log_file: Optional file path; files are always written as JSON
            console_output: Attach a stdout handler
            correlation_tracking: Attach the context filter to every handler

        Returns:
            Logging configuration dictionary
        """
        filters = ['correlation'] if correlation_tracking else []
        handlers: Dict[str, Dict[str, Any]] = {}

        if console_output:
            handlers['console'] = {
                'class': 'logging.StreamHandler',
                'level': level,
                'formatter': format_type,
                'filters': filters,
                'stream': 'ext://sys.stdout'
            }
        if log_file:
            handlers['file'] = {
                'class': 'logging.FileHandler',
                'level': level,
                'formatter': 'json',
                'filters': filters,
                'filename': log_file
            }

        return {
            'version': 1,
            'disable_existing_loggers': False,
            'filters': {
                'correlation': {'()': CorrelationFilter}
            },
            'formatters': {
                'json': {'()': JSONFormatter, 'include_extra': True},
                'colored': {'()': ColoredFormatter, 'format': cls.DEFAULT_FORMAT},
                'standard': {'format': cls.DEFAULT_FORMAT}
            },
            'handlers': handlers,
            'loggers': {
                'quizcache': {'level': level},
                **{name: {'level': quiet} for name, quiet in cls.QUIET_LOGGERS.items()}
            },
            'root': {
                'level': level,
                'handlers': list(handlers)
            }
        }

    @classmethod
    def setup_logging(
        cls,
        level: Union[str, int] = logging.INFO,
        format_type: str = 'json',
        log_file: Optional[str] = None,
        console_output: bool = True,
        correlation_tracking: bool = True
    ) -> None:
        """Apply the configuration, replacing any handlers on the root logger."""
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logging.config.dictConfig(cls.get_config_dict(
            level=level,
            format_type=format_type,
            log_file=log_file,
            console_output=console_output,
            correlation_tracking=correlation_tracking
        ))

        CacheLogger(__name__, 'logging_config').info(
            "Logging system initialized",
            operation="setup_logging",
            format_type=format_type,
            log_file=log_file
        )


class CorrelationContext:
    """Set correlation, user and cache context for the enclosed block."""

    def __init__(self, correlation_id_value: Optional[str] = None, user_id_value: Optional[str] = None,
                 cache_name_value: Optional[str] = None):
        self.correlation_id_value = correlation_id_value or str(uuid4())
        self.user_id_value = user_id_value
        self.cache_name_value = cache_name_value
        self._tokens = []

    def __enter__(self):
        self._tokens.append((correlation_id, correlation_id.set(self.correlation_id_value)))
        if self.user_id_value:
            self._tokens.append((user_id, user_id.set(self.user_id_value)))
        if self.cache_name_value:
            self._tokens.append((cache_name, cache_name.set(self.cache_name_value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


def get_logger(name: str, component: Optional[str] = None) -> CacheLogger:
    """Get a QuizCache logger instance."""
    return CacheLogger(name, component)


def get_correlation_id() -> Optional[str]:
    return correlation_id.get()


def get_user_id() -> Optional[str]:
    return user_id.get()


def initialize_logging():
    """Initialize logging from the monitoring settings."""
    from .config import get_settings

    settings = get_settings()
    monitoring = settings.monitoring
    production = settings.is_production()

    LoggingConfig.setup_logging(
        level=monitoring.log_level.value,
        format_type='json' if production else monitoring.log_format,
        log_file=monitoring.log_file or ('logs/quizcache.log' if production else None),
    )


# Auto-initialize if not in test environment
if not os.getenv('TESTING'):
    initialize_logging()
