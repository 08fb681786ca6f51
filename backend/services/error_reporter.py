import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import Config
from errors import (
    CascadeError,
    ConstraintViolationError,
    RecordNotFoundError,
    StoreError,
    TransportError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_CODES = (
    (ValidationError, "VALIDATION_ERROR"),
    (RecordNotFoundError, "NOT_FOUND"),
    (ConstraintViolationError, "CONFLICT"),
    (TransportError, "NETWORK_ERROR"),
    (CascadeError, "CASCADE_PARTIAL_FAILURE"),
    (StoreError, "STORE_ERROR"),
)


def error_code(error: Exception) -> str:
    for error_type, code in _CODES:
        if isinstance(error, error_type):
            return code
    return "INTERNAL_ERROR"


@dataclass
class AppError:
    """User-facing record of a failed operation"""
    code: str
    message: str
    context: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self):
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "details": self.details,
            "timestamp": self.timestamp,
        }


class ErrorReporter:
    """Bounded queue of recent errors shown to the viewer

    One instance per hosting process or viewer, handed to whoever
    needs to report; nothing here is module-global.
    """

    def __init__(self, max_size: Optional[int] = None):
        self._errors = deque(maxlen=max_size or Config.ERROR_QUEUE_SIZE)
        self._lock = threading.Lock()

    def report(self, error: Exception, context: Optional[str] = None) -> AppError:
        details = dict(getattr(error, "details", {}) or {})
        if isinstance(error, CascadeError):
            details["completed_levels"] = error.completed_levels
            details["failed_level"] = error.failed_level

        app_error = AppError(code=error_code(error), message=str(error), context=context, details=details)
        with self._lock:
            self._errors.append(app_error)
        logger.error(f"[{app_error.code}] {context or 'unknown'}: {app_error.message}")
        return app_error

    def recent(self, limit: int = 10) -> List[AppError]:
        with self._lock:
            return list(self._errors)[-limit:][::-1]

    def clear(self):
        with self._lock:
            self._errors.clear()

    def __len__(self):
        with self._lock:
            return len(self._errors)
