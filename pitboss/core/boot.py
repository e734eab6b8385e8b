# ===========================================================================
# Pitboss -- BOOT PIPELINE
# ===========================================================================
# FILE: pitboss/core/boot.py
#
# WHAT THIS IS:
#   The single entry point that starts Pitboss. It runs every startup
#   step in the correct order and produces a fully wired engine, with a
#   BootResult saying exactly what worked and what did not.
#
#   The pipeline:
#     1. Load + validate config
#     2. Set up structured logging
#     3. Open the state store and load the persisted state file
#     4. Build the components (ingestor, detector, knowledge base,
#        decision engine, query facade) and connect them
#     5. Create one tailer per configured log source
#     6. Return a PitbossEngine; start() launches the worker threads
#
# USAGE:
#   from pitboss.core.boot import boot_pitboss
#
#   engine = boot_pitboss(".")
#   print(engine.boot_result.summary())
#   engine.start()
#   ...
#   engine.facade.query("active issues")
#   ...
#   engine.stop()
#
# DESIGN DECISIONS:
#   - boot_pitboss() does NOT crash on a bad config value or a corrupt
#     state file. Problems land in BootResult.warnings / errors and the
#     engine comes up with defaults / empty state.
#   - boot_pitboss() is the ONLY function that constructs components, so
#     the HTTP server and tests get exactly the same wiring.
# ===========================================================================

from __future__ import annotations

import time
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any, Callable, Tuple

from .config import Config, SEVERITY_NAMES, load_config, validate_config, ensure_directories
from .decision_engine import DecisionEngine
from .issue_detector import IssueDetector, DetectionResult
from .knowledge_base import FixKnowledgeBase
from .log_ingestor import LogIngestor, LogTailer
from .models import LogEvent
from .query_facade import QueryFacade
from .state_store import StateStore
from .workers import IngestionWorker, AnomalyWorker, PersistenceWorker, PeriodicWorker
from ..monitoring.flight_recorder import FlightRecorder
from ..monitoring.logger import initialize_logging, get_app_logger


@dataclass
class BootResult:
    """
    Result of the boot pipeline.

    Attributes:
        success: True if the engine is wired and usable.
        state_loaded: True if a persisted state file was read.
        sources: Names of the log sources being tailed.
        warnings: Non-fatal issues found during boot.
        errors: Problems that left part of the engine on defaults.
    """
    boot_timestamp: str = ""
    success: bool = False
    state_loaded: bool = False
    sources: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        """Human-readable boot summary for the console."""
        lines = []
        lines.append("=" * 50)
        lines.append("  PITBOSS BOOT STATUS")
        lines.append("=" * 50)
        lines.append(f"  Overall:  {'READY' if self.success else 'FAILED'}")
        lines.append(f"  State:    {'RESTORED' if self.state_loaded else 'FRESH'}")
        lines.append(f"  Sources:  {', '.join(self.sources) if self.sources else '(none)'}")

        if self.warnings:
            lines.append("")
            lines.append("  WARNINGS:")
            for w in self.warnings:
                lines.append(f"    [!] {w}")

        if self.errors:
            lines.append("")
            lines.append("  ERRORS:")
            for e in self.errors:
                lines.append(f"    [X] {e}")

        lines.append("=" * 50)
        return "\n".join(lines)


class PitbossEngine:
    """
    Every component, wired. Built by boot_pitboss(); not meant to be
    constructed by hand.
    """

    def __init__(
        self,
        config: Config,
        store: StateStore,
        ingestor: LogIngestor,
        detector: IssueDetector,
        knowledge: FixKnowledgeBase,
        decisions: DecisionEngine,
        facade: QueryFacade,
        boot_result: BootResult,
    ):
        self.config = config
        self.store = store
        self.ingestor = ingestor
        self.recorder: FlightRecorder = ingestor.recorder
        self.detector = detector
        self.knowledge = knowledge
        self.decisions = decisions
        self.facade = facade
        self.boot_result = boot_result
        self.tailers: List[LogTailer] = []
        self.workers: List[PeriodicWorker] = []
        self._lifecycle_lock = threading.Lock()
        self.started_at: Optional[float] = None
        self.logger = get_app_logger("pitboss.engine")

    # ------------------------------------------------------------------
    # Direct feeding (tests, the HTTP /ingest route, embedded use)
    # ------------------------------------------------------------------

    def ingest_line(self, line: str, source: str = "default") -> Tuple[Optional[LogEvent], DetectionResult]:
        """Structure one line and run detection on it."""
        event = self.ingestor.ingest(line, source)
        if event is None:
            return None, DetectionResult()
        return event, self.detector.process_event(event)

    def ingest_lines(self, lines, source: str = "default") -> DetectionResult:
        combined = DetectionResult()
        for line in lines:
            _event, result = self.ingest_line(line, source)
            combined.issues.extend(result.issues)
            combined.created.extend(result.created)
            combined.deferred += result.deferred
            combined.failures.extend(result.failures)
        return combined

    def set_state(self, path: str, value: Any) -> int:
        """Write game/system state; invariants run on the write."""
        return self.store.set(path, value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def add_source(self, name: str, path: str) -> LogTailer:
        tailer = LogTailer(path, name, self.ingestor, self.store)
        self.tailers.append(tailer)
        return tailer

    @property
    def running(self) -> bool:
        return any(w.running for w in self.workers)

    def start(self) -> None:
        """Launch ingestion, anomaly and persistence workers."""
        with self._lifecycle_lock:
            if self.running:
                return
            cfg = self.config
            self.workers = [
                IngestionWorker(t, self.detector, cfg.ingest.poll_interval_seconds)
                for t in self.tailers
            ]
            self.workers.append(AnomalyWorker(
                self.detector,
                self.decisions,
                cfg.anomaly.recompute_interval_seconds,
            ))
            self.workers.append(PersistenceWorker(
                self.store,
                cfg.state_store.persist_interval_seconds,
                on_error=lambda e: self.detector.report_internal_failure("persistence", e),
            ))
            for worker in self.workers:
                worker.start()
            self.started_at = time.time()
        self.logger.info("engine_started", workers=[w.name for w in self.workers])

    def stop(self) -> None:
        """Stop every worker. The persistence worker writes one last time."""
        with self._lifecycle_lock:
            # Persistence last, so it saves what the other workers produced
            for worker in sorted(self.workers, key=lambda w: isinstance(w, PersistenceWorker)):
                worker.stop()
            self.workers = []
        self.logger.info("engine_stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "started_at": self.started_at,
            "workers": {w.name: {"running": w.running, "cycles": w.cycles, "failures": w.failures} for w in self.workers},
            "sources": [t.source for t in self.tailers],
            "boot": {
                "success": self.boot_result.success,
                "state_loaded": self.boot_result.state_loaded,
                "warnings": list(self.boot_result.warnings),
                "errors": list(self.boot_result.errors),
            },
        }


def boot_pitboss(
    project_dir: str = ".",
    config: Optional[Config] = None,
    clock: Callable[[], float] = time.time,
) -> PitbossEngine:
    """
    Run the complete boot pipeline and return a wired (not yet started)
    engine. Never raises for configuration or state-file problems; see
    engine.boot_result.

    Args:
        project_dir: Folder holding config/default_config.yaml.
        config: Pre-built Config (skips the YAML load; used by tests).
        clock: Time source for every component.
    """
    result = BootResult(boot_timestamp=datetime.now().strftime("%Y-%m-%d %H:%M:%S"))

    # === STEP 1: Configuration ===
    if config is None:
        try:
            config = load_config(project_dir)
        except Exception as e:
            result.errors.append(f"Config load failed, using defaults: {e}")
            config = Config()
    for problem in validate_config(config):
        result.errors.append(problem)
    if config.decision.activation_severity not in SEVERITY_NAMES:
        config.decision.activation_severity = "medium"

    # === STEP 2: Logging ===
    try:
        ensure_directories(config)
    except OSError as e:
        result.warnings.append(f"Could not create directories: {e}")
    initialize_logging(config.logging.log_dir)
    logger = get_app_logger("pitboss.boot")
    logger.info("boot_step", step=1, detail="configuration loaded", errors=len(result.errors))

    # === STEP 3: State ===
    store = StateStore(config.state_store, clock=clock)
    had_state_file = store.persist_path.exists()
    result.state_loaded = store.load()
    if had_state_file and not result.state_loaded:
        result.warnings.append("State file could not be read; starting empty")
    logger.info("boot_step", step=3, detail="state store ready", restored=result.state_loaded, entries=len(store))

    # === STEP 4: Components ===
    recorder = FlightRecorder(config.ingest.recent_events)
    ingestor = LogIngestor(config.ingest, recorder=recorder, clock=clock)
    detector = IssueDetector(store, config, clock=clock)
    knowledge = FixKnowledgeBase(store, detector.issues, config.learning, clock=clock)
    decisions = DecisionEngine(store, detector.issues, knowledge, config.decision, clock=clock)
    facade = QueryFacade(store, detector, knowledge, decisions, ingestor, clock=clock)

    detector.attach()
    detector.add_issue_listener(decisions.on_issue)
    logger.info("boot_step", step=4, detail="components wired")

    engine = PitbossEngine(config, store, ingestor, detector, knowledge, decisions, facade, result)

    # === STEP 5: Log sources ===
    for source in config.ingest.sources:
        if not source.path:
            continue
        engine.add_source(source.name, source.path)
        result.sources.append(source.name)
        if not Path(source.path).exists():
            result.warnings.append(f"Log source '{source.name}' not found yet: {source.path}")

    result.success = True
    logger.info(
        "boot_complete",
        success=result.success,
        sources=result.sources,
        warnings=len(result.warnings),
        errors=len(result.errors),
    )
    return engine
