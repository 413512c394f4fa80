"""
Structured Logging for sbclient

JSON log records carrying a per-task correlation id. Loggers accept context
as keyword arguments (``logger.info("...", entity_path="orders")``); the
keywords land on the record and in the JSON output.

Author: sbclient contributors
Date: 2026-10-17
"""

import contextvars
import json
import logging
import time
import traceback
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, Iterator, MutableMapping, Optional, Tuple


_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'sbclient_correlation_id', default=None
)

# Attributes every LogRecord has; anything else on a record is context.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {'message', 'asctime', 'taskName'}

# Keyword arguments consumed by Logger.log itself.
_LOG_KWARGS = frozenset({'exc_info', 'stack_info', 'stacklevel', 'extra'})


class CorrelationContext:
    """Correlation id of the current task, generated on first use."""

    HEADER = 'x-correlation-id'

    @staticmethod
    def get_correlation_id() -> str:
        corr_id = _correlation_id.get()
        if not corr_id:
            corr_id = str(uuid.uuid4())
            _correlation_id.set(corr_id)
        return corr_id

    @staticmethod
    def set_correlation_id(corr_id: str) -> None:
        _correlation_id.set(corr_id)

    @staticmethod
    def clear_correlation_id() -> None:
        _correlation_id.set(None)

    @staticmethod
    @contextmanager
    def scope(corr_id: Optional[str] = None) -> Iterator[str]:
        """
        Bind ``corr_id`` (or a new id) for the duration of a block.

        The previous id is restored on exit.
        """
        token = _correlation_id.set(corr_id or str(uuid.uuid4()))
        try:
            yield _correlation_id.get()
        finally:
            _correlation_id.reset(token)


class StructuredFormatter(logging.Formatter):
    """Renders a record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', None) or CorrelationContext.get_correlation_id(),
        }
        payload.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith('_') and key not in payload
        )

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            payload['exception'] = {
                'type': exc_type.__name__,
                'message': str(exc_value),
                'traceback': ''.join(traceback.format_exception(exc_type, exc_value, exc_tb)),
            }

        return json.dumps(payload, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into record attributes.

    ``None``-valued keywords are dropped so optional context (a session id,
    a page size) only appears when it is known. Every record carries the
    correlation id that was current when it was emitted.
    """

    def __init__(self, name: str):
        super().__init__(logging.getLogger(name), {})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        context = {key: kwargs.pop(key) for key in list(kwargs) if key not in _LOG_KWARGS}
        extra = dict(kwargs.get('extra') or {})
        extra.update((key, value) for key, value in context.items() if value is not None)
        extra.setdefault('correlation_id', CorrelationContext.get_correlation_id())
        kwargs['extra'] = extra
        return msg, kwargs

    def log_page_fetched(
        self,
        entity_kind: str,
        path: str,
        skip: int,
        top: Optional[int],
        item_count: int,
        continuation_token: Optional[str],
        **kwargs
    ) -> None:
        self.debug(
            f"page_fetched: {entity_kind} {path} skip={skip} items={item_count}",
            operation="page_fetched",
            entity_kind=entity_kind,
            path=path,
            skip=skip,
            top=top,
            item_count=item_count,
            continuation_token=continuation_token,
            **kwargs
        )

    def log_record_dropped(self, entity_kind: str, path: str, reason: str, **kwargs) -> None:
        """Warn about a list record the decoder rejected."""
        self.warning(
            f"record_dropped: {entity_kind} {path}: {reason}",
            operation="record_dropped",
            entity_kind=entity_kind,
            path=path,
            reason=reason,
            **kwargs
        )

    def log_message_operation(self, operation: str, entity_path: str, message_id: str, **kwargs) -> None:
        self.info(
            f"{operation}: {entity_path} message={message_id}",
            operation=operation,
            entity_path=entity_path,
            message_id=message_id,
            **kwargs
        )

    def log_lock_operation(
        self,
        operation: str,
        entity_path: str,
        message_id: str,
        lock_token: Optional[str] = None,
        **kwargs
    ) -> None:
        self.debug(
            f"{operation}: {entity_path} message={message_id}",
            operation=operation,
            entity_path=entity_path,
            message_id=message_id,
            lock_token=lock_token,
            **kwargs
        )

    def log_error(self, operation: str, error_type: str, error_message: str, **kwargs) -> None:
        self.error(
            f"Error in {operation}: {error_message}",
            operation=operation,
            error_type=error_type,
            error_message=error_message,
            **kwargs
        )


def track_operation_time(logger: StructuredLogger, operation: str):
    """Log the duration of an async operation at debug level, success or failure."""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.perf_counter()
            outcome: Dict[str, Any] = {}
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                outcome = {'error_type': type(e).__name__, 'error_message': str(e)}
                raise
            finally:
                logger.debug(
                    f"Operation {'failed' if outcome else 'completed'}: {operation}",
                    operation=operation,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                    **outcome
                )
        return wrapper
    return decorator


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Replace the root handlers with a single stream handler.

    Args:
        level: Log level name; unknown names fall back to INFO
        json_format: JSON lines when True, plain text otherwise
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(
        StructuredFormatter() if json_format
        else logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(log_level)
    logging.getLogger('sbclient').setLevel(log_level)
