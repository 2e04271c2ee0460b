"""
Logging configuration for the KRDS cache.

Standard library logging carries handlers and formatters, wired through
``logging.config.dictConfig``. Cache components log through ``KrdsLogger``,
which tags every record with the component, the operation and (when known)
the backend. structlog is configured on top so adapters that log through
``structlog.get_logger`` land in the same handlers with the same fields.
"""

import json
import logging
import logging.config
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import partialmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4

import structlog


correlation_id: ContextVar[Optional[str]] = ContextVar('krds_correlation_id', default=None)

LOG_FORMATS = ('json', 'colored', 'standard')

# Fields the filter guarantees on every record
CONTEXT_FIELDS = ('correlation_id', 'component', 'operation', 'backend')


class CacheContextFilter(logging.Filter):
    """Fill in correlation id, component, operation and backend on every record."""

    def filter(self, record):
        record.correlation_id = correlation_id.get() or '-'
        for name in CONTEXT_FIELDS[1:]:
            if not hasattr(record, name):
                setattr(record, name, None)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line; Hangul is written as-is, not escaped."""

    # Attributes every LogRecord has; anything else arrived through ``extra``
    _STANDARD_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record):
        entry: Dict[str, Any] = {
            'ts': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'source': f"{record.module}:{record.funcName}:{record.lineno}",
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry['error'] = {
                'type': exc_type.__name__,
                'message': str(exc_value),
                'traceback': ''.join(traceback.format_exception(exc_type, exc_value, exc_tb)),
            }

        if self.include_extra:
            entry.update(self._extras(record, entry))

        return json.dumps(entry, default=str, ensure_ascii=False)

    def _extras(self, record: logging.LogRecord, entry: Dict[str, Any]) -> Dict[str, Any]:
        extras = {}
        for key, value in vars(record).items():
            if key in entry or key in self._STANDARD_ATTRS or key in CONTEXT_FIELDS or key.startswith('_'):
                continue
            try:
                json.dumps(value, ensure_ascii=False)
            except (TypeError, ValueError):
                value = str(value)
            extras[key] = value
        return extras


class ColoredFormatter(logging.Formatter):
    """Human readable console output: colored level plus component context."""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        line = super().format(record)
        context = [
            f"{name}={getattr(record, name)}"
            for name in CONTEXT_FIELDS[1:]
            if getattr(record, name, None) is not None
        ]
        color = self.LEVEL_COLORS.get(record.levelno, '')
        suffix = f" ({', '.join(context)})" if context else ''
        return f"{color}{line}{self.RESET}{suffix} [{getattr(record, 'correlation_id', '-')[:8]}]"


class KrdsLogger:
    """
    Component logger.

    Every call takes the message, an optional ``operation`` and arbitrary
    keyword context, which ends up as top-level fields in JSON output. Avoid
    context names that clash with ``LogRecord`` attributes (``name``,
    ``module``, ``args`` and so on).
    """

    def __init__(self, name: str, component: Optional[str] = None):
        self.logger = logging.getLogger(name)
        self.component = component or name.rsplit('.', 1)[-1]

    def log(self, level: int, message: str, operation: Optional[str] = None,
            exc_info: bool = False, stacklevel: int = 2, **context):
        if not self.logger.isEnabledFor(level):
            return
        context.update(component=self.component, operation=operation)
        self.logger.log(level, message, exc_info=exc_info, extra=context, stacklevel=stacklevel)

    debug = partialmethod(log, logging.DEBUG)
    info = partialmethod(log, logging.INFO)
    warning = partialmethod(log, logging.WARNING)
    error = partialmethod(log, logging.ERROR)

    def exception(self, message: str, operation: Optional[str] = None, **context):
        """Log at ERROR with the active exception's traceback."""
        self.log(logging.ERROR, message, operation, exc_info=True, stacklevel=3, **context)


class LoggingConfig:
    """Logging setup for applications embedding the cache."""

    DEFAULT_FORMAT = '%(asctime)s %(levelname)-8s %(name)s: %(message)s'
    QUIET_LOGGERS = ('redis', 'asyncio')

    @classmethod
    def get_config_dict(
        cls,
        level: Union[str, int] = 'INFO',
        format_type: str = 'json',
        log_file: Optional[str] = None,
        console_output: bool = True,
        correlation_tracking: bool = True,
    ) -> Dict[str, Any]:
        """Build a ``dictConfig`` mapping; files always get JSON."""
        if format_type not in LOG_FORMATS:
            raise ValueError(f"Unknown log format: {format_type} (expected one of {', '.join(LOG_FORMATS)})")

        filters = ['cache_context'] if correlation_tracking else []
        handlers: Dict[str, Dict[str, Any]] = {}
        if console_output:
            handlers['console'] = {
                'class': 'logging.StreamHandler',
                'level': level,
                'formatter': format_type,
                'filters': filters,
                'stream': 'ext://sys.stdout',
            }
        if log_file:
            handlers['file'] = {
                'class': 'logging.FileHandler',
                'level': level,
                'formatter': 'json',
                'filters': filters,
                'filename': str(log_file),
                'encoding': 'utf-8',
            }

        return {
            'version': 1,
            'disable_existing_loggers': False,
            'filters': {'cache_context': {'()': CacheContextFilter}},
            'formatters': {
                'json': {'()': JSONFormatter, 'include_extra': True},
                'colored': {'()': ColoredFormatter, 'fmt': cls.DEFAULT_FORMAT},
                'standard': {'format': cls.DEFAULT_FORMAT},
            },
            'handlers': handlers,
            'loggers': {name: {'level': 'WARNING'} for name in cls.QUIET_LOGGERS},
            'root': {'level': level, 'handlers': list(handlers)},
        }

    @classmethod
    def setup_logging(
        cls,
        level: Union[str, int] = logging.INFO,
        format_type: str = 'json',
        log_file: Optional[str] = None,
        console_output: bool = True,
        correlation_tracking: bool = True,
    ) -> None:
        """
        Configure root logging and structlog.

        Args:
            level: Logging level name or number
            format_type: Console format: 'json', 'colored' or 'standard'
            log_file: Optional log file path
            console_output: Log to stdout
            correlation_tracking: Attach correlation ids and component context
        """
        config = cls.get_config_dict(level, format_type, log_file, console_output, correlation_tracking)
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logging.config.dictConfig(config)
        cls._configure_structlog()

        get_logger(__name__, 'logging_config').info(
            "Logging configured",
            operation="setup_logging",
            format_type=format_type,
            log_file=log_file,
        )

    @staticmethod
    def _configure_structlog() -> None:
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.stdlib.filter_by_level,
                structlog.processors.format_exc_info,
                structlog.stdlib.render_to_log_kwargs,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=False,
        )


class CorrelationContext:
    """Scope a correlation id over a block of cache calls (sync or async)."""

    def __init__(self, value: Optional[str] = None):
        self.value = value or uuid4().hex
        self._token = None

    def __enter__(self) -> 'CorrelationContext':
        self._token = correlation_id.set(self.value)
        structlog.contextvars.bind_contextvars(correlation_id=self.value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        structlog.contextvars.unbind_contextvars('correlation_id')
        correlation_id.reset(self._token)

    async def __aenter__(self) -> 'CorrelationContext':
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.__exit__(exc_type, exc_val, exc_tb)


def get_logger(name: str, component: Optional[str] = None) -> KrdsLogger:
    return KrdsLogger(name, component)


def get_correlation_id() -> Optional[str]:
    return correlation_id.get()
