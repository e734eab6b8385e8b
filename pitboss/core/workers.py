# ============================================================================
# Pitboss -- Background Workers (pitboss/core/workers.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   The threads that keep the engine "always on":
#
#     IngestionWorker    one per log source; tails the file and feeds every
#                        new event through the IssueDetector
#     AnomalyWorker      one; samples monitored state signals, finishes
#                        deferred causal analysis, expires stale attempts
#     PersistenceWorker  one; writes the state file every few seconds
#
#   Each worker is a daemon thread looping on a stop Event. wait(timeout)
#   doubles as the sleep, so stop() wakes a worker immediately instead of
#   waiting out the interval.
#
# FAILURE POLICY:
#   A worker never dies from a bad cycle. The exception is logged to the
#   error log and the loop carries on at the next interval. Ingestion I/O,
#   persistence and queries never share a lock, so a slow disk in one
#   cannot stall the others.
# ============================================================================

from __future__ import annotations

import threading
from typing import Optional, Callable

from .decision_engine import DecisionEngine
from .exceptions import PersistenceError
from .issue_detector import IssueDetector
from .log_ingestor import LogTailer
from .state_store import StateStore
from ..monitoring.logger import get_app_logger, get_error_logger


class PeriodicWorker:
    """Runs tick() every interval seconds on a daemon thread."""

    name = "worker"

    def __init__(self, interval: float):
        self.interval = max(0.01, float(interval))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.cycles = 0
        self.failures = 0
        self.logger = get_app_logger(f"pitboss.workers.{self.name}")
        self.error_logger = get_error_logger(f"pitboss.workers.{self.name}.errors")

    def tick(self) -> None:
        raise NotImplementedError

    def run_once(self) -> bool:
        """One cycle with the failure policy applied. True if it succeeded."""
        self.cycles += 1
        try:
            self.tick()
            return True
        except Exception as e:
            self.failures += 1
            self.error_logger.error(
                "worker_cycle_failed",
                worker=self.name,
                error=f"{type(e).__name__}: {e}",
                exc_info=True,
            )
            return False

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(timeout=self.interval)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"pitboss-{self.name}", daemon=True)
        self._thread.start()
        self.logger.info("worker_started", worker=self.name, interval=self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.logger.info("worker_stopped", worker=self.name, cycles=self.cycles, failures=self.failures)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class IngestionWorker(PeriodicWorker):
    """Tails one log source and hands every event to the detector."""

    def __init__(self, tailer: LogTailer, detector: IssueDetector, interval: float = 1.0):
        self.name = f"ingest-{tailer.source}"
        super().__init__(interval)
        self.tailer = tailer
        self.detector = detector
        self.events = 0

    def tick(self) -> None:
        for event in self.tailer.poll():
            self.events += 1
            self.detector.process_event(event)


class AnomalyWorker(PeriodicWorker):
    """Periodic detection housekeeping."""

    name = "anomaly"

    def __init__(
        self,
        detector: IssueDetector,
        decisions: Optional[DecisionEngine] = None,
        interval: float = 10.0,
        deferred_batch: int = 500,
    ):
        super().__init__(interval)
        self.detector = detector
        self.decisions = decisions
        self.deferred_batch = deferred_batch

    def tick(self) -> None:
        self.detector.sample_signals()
        self.detector.run_deferred(self.deferred_batch)
        if self.decisions is not None:
            self.decisions.expire_stale_attempts()


class PersistenceWorker(PeriodicWorker):
    """Writes the state file every interval; a failed write is retried next cycle."""

    name = "persistence"

    def __init__(self, store: StateStore, interval: float = 5.0, on_error: Optional[Callable[[Exception], None]] = None):
        super().__init__(interval)
        self.store = store
        self.on_error = on_error

    def tick(self) -> None:
        try:
            self.store.persist()
        except PersistenceError as e:
            self.error_logger.error("persist_failed", **e.to_dict())
            if self.on_error is not None:
                self.on_error(e)
            raise

    def stop(self, timeout: float = 5.0) -> None:
        super().stop(timeout)
        # Final write so a clean shutdown loses nothing
        self.run_once()
