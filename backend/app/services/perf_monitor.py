"""Performance monitoring utilities for the LCA ingestion pipeline."""
import time
import logging
import threading
import functools
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("lca-api.perf")


def timed_async(func: Callable) -> Callable:
    """
    Decorator that measures and logs execution time for async functions.

    Usage::

        @timed_async
        async def reconcile(...):
            ...
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.debug(
                "%s timed",
                func.__qualname__,
                extra={"step": func.__qualname__, "duration_ms": duration_ms},
            )
    return wrapper


class PerformanceTracker:
    """
    Thread-safe in-memory tracker for pipeline-level metrics.

    Tracks:
    - Ingestions completed and failed
    - Cumulative and average ingestion duration
    - Per-step durations and the slowest step seen
    - Error count broken down by step name
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ingestions_completed: int = 0
        self._ingestions_failed: int = 0
        self._total_ingestion_duration_ms: float = 0.0
        self._step_durations: Dict[str, list] = {}   # step -> [duration_ms, ...]
        self._error_counts: Dict[str, int] = {}      # step -> count
        self._slowest_step: Optional[str] = None
        self._slowest_step_ms: float = 0.0

    # ------------------------------------------------------------------
    # Public write API
    # ------------------------------------------------------------------

    def record_ingestion_complete(self, duration_ms: float) -> None:
        with self._lock:
            self._ingestions_completed += 1
            self._total_ingestion_duration_ms += duration_ms

    def record_ingestion_failed(self) -> None:
        with self._lock:
            self._ingestions_failed += 1

    def record_step_duration(self, step: str, duration_ms: float) -> None:
        with self._lock:
            self._step_durations.setdefault(step, []).append(duration_ms)
            if duration_ms > self._slowest_step_ms:
                self._slowest_step_ms = duration_ms
                self._slowest_step = step

    def record_step_error(self, step: str) -> None:
        with self._lock:
            self._error_counts[step] = self._error_counts.get(step, 0) + 1

    # ------------------------------------------------------------------
    # Public read API
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        """
        Return a snapshot of all collected metrics.

        Returns
        -------
        dict with keys:
            ingestions_completed       : int
            ingestions_failed          : int
            avg_ingestion_duration_ms  : float  (0 if none completed)
            slowest_step               : str | None
            slowest_step_ms            : float
            error_count                : int   (total across all steps)
            error_count_by_step        : dict  {step: count}
            step_avg_durations_ms      : dict  {step: avg_ms}
        """
        with self._lock:
            avg = (
                round(self._total_ingestion_duration_ms / self._ingestions_completed, 2)
                if self._ingestions_completed > 0
                else 0.0
            )
            step_avgs = {
                step: round(sum(durations) / len(durations), 2) if durations else 0.0
                for step, durations in self._step_durations.items()
            }
            return {
                "ingestions_completed": self._ingestions_completed,
                "ingestions_failed": self._ingestions_failed,
                "avg_ingestion_duration_ms": avg,
                "slowest_step": self._slowest_step,
                "slowest_step_ms": round(self._slowest_step_ms, 2),
                "error_count": sum(self._error_counts.values()),
                "error_count_by_step": dict(self._error_counts),
                "step_avg_durations_ms": step_avgs,
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._ingestions_completed = 0
            self._ingestions_failed = 0
            self._total_ingestion_duration_ms = 0.0
            self._step_durations.clear()
            self._error_counts.clear()
            self._slowest_step = None
            self._slowest_step_ms = 0.0

    @asynccontextmanager
    async def step(self, name: str):
        """Time one pipeline step; failures are counted against the step and re-raised."""
        start = time.perf_counter()
        try:
            yield
        except Exception:
            self.record_step_error(name)
            raise
        finally:
            self.record_step_duration(name, round((time.perf_counter() - start) * 1000, 2))


# Module-level singleton, import this instance everywhere else.
tracker = PerformanceTracker()
