# flowlib/results.py
"""Status reporting shared by the correction filters."""

import enum
import time
from typing import Any, Dict, List, Optional, Tuple


class FilterStatus(enum.Enum):
    OK = "ok"
    NOT_INITIALIZED = "not_initialized"
    IO_ERROR = "io_error"
    EMPTY_INPUT = "empty_input"
    # fallback reasons, reported next to an OK status
    SINGULAR_SYSTEM = "singular_system"
    DEGENERATE_FREQUENCY = "degenerate_frequency"


class FilterReport:
    """
    Outcome of a filter operation.

    `bool(report)` is True only if the operation succeeded. A successful operation
    that had to substitute a safe default somewhere (e.g. a zero plane for a
    singular fit) still reports OK but lists the substitution in `fallbacks`.
    """
    def __init__(self,
                 status: FilterStatus = FilterStatus.OK,
                 duration: float = 0.0,
                 message: str = "",
                 fallbacks: Optional[List[Tuple[FilterStatus, Any]]] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.status = status
        self.duration = duration
        self.message = message
        self.fallbacks = list(fallbacks) if fallbacks else []
        self.details = dict(details) if details else {}

    @property
    def ok(self) -> bool:
        return self.status is FilterStatus.OK

    @property
    def used_fallback(self) -> bool:
        return len(self.fallbacks) > 0

    def add_fallback(self, reason: FilterStatus, detail: Any = None):
        self.fallbacks.append((reason, detail))

    def __bool__(self):
        return self.ok

    def __repr__(self):
        return (f"FilterReport(status={self.status.name}, duration={self.duration:.4f}s, "
                f"fallbacks={len(self.fallbacks)}, message={self.message!r})")

    @classmethod
    def failure(cls, status: FilterStatus, message: str = "") -> "FilterReport":
        return cls(status=status, message=message)


class Stopwatch:
    """Measures the wall-clock duration of a filter stage."""
    def __init__(self):
        self._start = None
        self.elapsed = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.elapsed = time.perf_counter() - self._start
        return False
