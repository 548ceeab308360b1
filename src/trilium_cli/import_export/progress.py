"""Error collection and progress reporting for long-running operations."""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from .types import OperationError, ProgressCallback, ProgressEvent, ProgressEventType

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 50


class ErrorCollector:
    """Accumulate typed errors and free-text warnings without ever raising."""

    def __init__(self) -> None:
        self._errors: list[OperationError] = []
        self._warnings: list[str] = []
        self._lock = threading.Lock()

    def add_error(self, code: str, message: str, details: Optional[dict[str, Any]] = None) -> OperationError:
        error = OperationError(code=code, message=message, details=dict(details or {}))
        self.record(error)
        return error

    def record(self, error: OperationError) -> None:
        with self._lock:
            self._errors.append(error)
        logger.debug(f"Recorded error {error.code}: {error.message}")

    def add_warning(self, message: str) -> None:
        with self._lock:
            self._warnings.append(message)
        logger.warning(message)

    @property
    def errors(self) -> list[OperationError]:
        with self._lock:
            return list(self._errors)

    @property
    def warnings(self) -> list[str]:
        with self._lock:
            return list(self._warnings)

    def has_errors(self) -> bool:
        return bool(self._errors)

    def has_warnings(self) -> bool:
        return bool(self._warnings)

    def clear(self) -> None:
        with self._lock:
            self._errors.clear()
            self._warnings.clear()

    def summary(self) -> dict[str, Any]:
        with self._lock:
            codes: dict[str, int] = {}
            for error in self._errors:
                codes[error.code] = codes.get(error.code, 0) + 1
            return {
                "error_count": len(self._errors),
                "warning_count": len(self._warnings),
                "errors_by_code": codes,
            }


class ProgressTracker:
    """Emit start/progress/complete events for a fixed number of items.

    Callback failures are logged and discarded so that reporting can never
    interrupt the operation being reported on.
    """

    def __init__(
        self,
        operation_id: str,
        total: int,
        callback: Optional[ProgressCallback] = None,
        *,
        enabled: bool = True,
    ) -> None:
        self.operation_id = operation_id
        self.total = total
        self.callback = callback if enabled else None
        self.current = 0
        self._lock = threading.Lock()

    def start(self, message: str = "Starting") -> None:
        self._emit(ProgressEventType.START, message, 0)

    def progress(self, current: Optional[int] = None, message: str = "", **data: Any) -> None:
        with self._lock:
            self.current = current if current is not None else self.current + 1
            value = self.current
        percentage = round(value / self.total * 100) if self.total else 100
        self._emit(ProgressEventType.PROGRESS, message, value, percentage=percentage, **data)

    def complete(self, message: str = "Completed") -> None:
        self._emit(ProgressEventType.COMPLETE, message, self.total, percentage=100)

    def error(self, message: str, **data: Any) -> None:
        self._emit(ProgressEventType.ERROR, message, self.current, **data)

    def _emit(self, kind: ProgressEventType, message: str, current: int, **data: Any) -> None:
        if self.callback is None:
            return
        event = ProgressEvent(
            id=self.operation_id,
            type=kind,
            message=message,
            current=current,
            total=self.total,
            data=data,
        )
        try:
            self.callback(event)
        except Exception:
            logger.warning(f"Progress callback failed for {self.operation_id}", exc_info=True)
