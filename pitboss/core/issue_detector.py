# ============================================================================
# Pitboss -- Issue Detector (pitboss/core/issue_detector.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Runs four independent detection strategies and merges what they find
#   into one canonical Issue per problem:
#
#     1. PATTERN  -- log lines matched against severity-tagged signatures
#     2. STATE    -- invariant predicates re-checked after state writes
#                    (pitboss/core/invariants.py)
#     3. ANOMALY  -- rolling z-scores over numeric signals
#                    (pitboss/core/anomaly.py)
#     4. CAUSAL   -- backward walk through recent state changes, attached
#                    as evidence; repeated causes become their own Issue
#                    (pitboss/core/causal.py)
#
# MERGE / DEDUP:
#   A candidate is keyed by hash(type, source, evidence signature). If an
#   open Issue owns that key, its occurrence_count goes up, last_seen
#   moves, severity becomes max(old, new) and the reporting method is
#   added to "methods". Otherwise a new Issue is created. A key whose
#   Issue was already resolved starts a fresh Issue "<key>-r<n>" so the
#   resolved record stays untouched as history.
#
#   Keys hash onto a fixed set of striped locks (detection.lock_stripes),
#   so two threads detecting the same problem cannot create two Issues
#   while unrelated problems rarely wait on each other.
#
# TIME BUDGET:
#   process_event() gives each event detection.budget_ms. Causal
#   enrichment that would run past the budget is queued for the
#   background pass (run_deferred) and the event is still acknowledged.
#
# SELF-MONITORING:
#   A strategy that raises is logged, recorded as a low-severity
#   "strategy_failure" Issue against the engine itself, and the other
#   strategies keep running.
#
# INTERNET ACCESS: NONE
# ============================================================================

from __future__ import annotations

import re
import time
import queue
import threading
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable, Tuple, Pattern

from .anomaly import AnomalyDetector
from .causal import CausalAnalyzer
from .config import Config
from .exceptions import StrategyError
from .invariants import Invariant, InvariantRegistry, default_invariants
from .issues import IssueRepository
from .models import (
    Issue,
    IssueCandidate,
    IssueStatus,
    LogEvent,
    Severity,
    DetectionMethod,
    ChangeRecord,
)
from .state_store import StateStore
from ..monitoring.logger import get_app_logger, get_error_logger, IssueLogEntry


# State written by the engine itself never triggers invariant checks
INTERNAL_ROOTS = ("issues", "ingest", "learning", "engine")

SELF_SOURCE = "engine"


class _IssueClosed(Exception):
    """The Issue was closed between the index read and the merge write."""


# ============================================================================
# SECTION 1: LOG SIGNATURES
# ============================================================================

@dataclass
class SignatureRule:
    """
    One severity-tagged log signature.

    Rules are tried by severity tier (critical first) and, inside a tier,
    by ascending priority. The first rule that matches wins.

    name:             Issue type produced (unless type_group is set)
    type_group:       regex group whose text becomes the Issue type
    levels:           only lines at these levels are considered
    signature_fields: event fields that tell one occurrence from another
                      (the same pot mismatch at table 42 and table 17 are
                      two different Issues)
    """
    name: str
    severity: Severity
    pattern: Pattern
    priority: int = 100
    levels: Optional[Tuple[str, ...]] = ("ERROR", "CRITICAL", "WARN")
    type_group: Optional[int] = None
    signature_fields: Tuple[str, ...] = ("table_id", "player_id", "error_code")
    use_message_signature: bool = False

    def match(self, event: LogEvent) -> Optional[re.Match]:
        if self.levels is not None and event.level not in self.levels:
            return None
        return self.pattern.search(event.message)


def default_rules() -> List[SignatureRule]:
    return [
        SignatureRule(
            name="chip_mismatch",
            severity=Severity.CRITICAL,
            pattern=re.compile(r"\bchip_mismatch\b|\bchips?\b.*\b(mismatch|error|discrepanc\w*)\b", re.I),
            priority=10,
        ),
        SignatureRule(
            name="database_error",
            severity=Severity.CRITICAL,
            pattern=re.compile(r"\bdatabase_error\b|\b(database|mysql|db)\b.*\b(error|failed|failure)\b", re.I),
            priority=20,
        ),
        SignatureRule(
            name="pot_mismatch",
            severity=Severity.HIGH,
            pattern=re.compile(r"\bpot_mismatch\b|\bpot\b.*\b(mismatch|error)\b", re.I),
            priority=10,
        ),
        SignatureRule(
            name="connection_failure",
            severity=Severity.HIGH,
            pattern=re.compile(
                r"\bconnection_fail\w*\b|\b(connection|disconnect\w*|socket)\b.*\b(failed|error|refused|lost|timeout)\b",
                re.I,
            ),
            priority=20,
        ),
        SignatureRule(
            name="error_token",
            severity=Severity.MEDIUM,
            pattern=re.compile(r"\b([a-z][a-z0-9]*(?:_[a-z0-9]+)+)\b"),
            priority=1000,
            levels=("ERROR", "CRITICAL"),
            type_group=1,
        ),
        SignatureRule(
            name="unclassified_error",
            severity=Severity.LOW,
            pattern=re.compile(r"\S"),
            priority=2000,
            levels=("ERROR", "CRITICAL"),
            signature_fields=("error_code",),
            use_message_signature=True,
        ),
    ]


# ============================================================================
# SECTION 2: RESULTS
# ============================================================================

@dataclass
class DetectionResult:
    """What one process_event / check_state call produced."""
    issues: List[Issue] = field(default_factory=list)
    created: List[str] = field(default_factory=list)
    deferred: int = 0
    failures: List[str] = field(default_factory=list)

    @property
    def issue_ids(self) -> List[str]:
        return [i.id for i in self.issues]


# ============================================================================
# SECTION 3: THE DETECTOR
# ============================================================================

class IssueDetector:
    """
    Four strategies, one merge step.

    Usage:
        detector = IssueDetector(store, config)
        detector.attach()                       # start watching state writes
        result = detector.process_event(event)  # from the LogIngestor
        detector.run_deferred()                 # background pass
    """

    def __init__(
        self,
        store: StateStore,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or Config()
        self.issues = IssueRepository(store)
        self._clock = clock

        self._rules: List[SignatureRule] = []
        for rule in default_rules():
            self.register_rule(rule)
        self.invariants = InvariantRegistry()
        for invariant in default_invariants():
            self.invariants.register(invariant)
        self.anomaly = AnomalyDetector(self.config.anomaly)
        self.causal = CausalAnalyzer(store, self.config.causal)

        self._merge_locks = [threading.Lock() for _ in range(max(1, self.config.detection.lock_stripes))]
        self._deferred: "queue.Queue[Tuple[str, IssueCandidate]]" = queue.Queue()
        self._issue_listeners: List[Callable[[Issue, bool], None]] = []
        self._detach: Optional[Callable[[], None]] = None

        self._stats: Dict[str, int] = {
            "events": 0,
            "state_checks": 0,
            "candidates": 0,
            "created": 0,
            "merged": 0,
            "deferred": 0,
            "strategy_failures": 0,
        }
        self._stats_lock = threading.Lock()

        self.logger = get_app_logger("pitboss.issue_detector")
        self.error_logger = get_error_logger("pitboss.issue_detector.errors")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_rule(self, rule: SignatureRule) -> None:
        self._rules = [r for r in self._rules if r.name != rule.name]
        self._rules.append(rule)
        # Stable sort keeps registration order inside equal (tier, priority)
        self._rules.sort(key=lambda r: (-int(r.severity), r.priority))

    @property
    def rules(self) -> List[SignatureRule]:
        return list(self._rules)

    def register_invariant(self, invariant: Invariant) -> None:
        self.invariants.register(invariant)

    def add_issue_listener(self, callback: Callable[[Issue, bool], None]) -> None:
        """callback(issue, created) after every merge."""
        self._issue_listeners.append(callback)

    def attach(self) -> None:
        """Run state verification after every external state write."""
        if self._detach is None:
            self._detach = self.store.add_listener(self._on_state_change)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    def _count(self, key: str, n: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += n

    # ------------------------------------------------------------------
    # Strategy isolation
    # ------------------------------------------------------------------

    def _isolated(self, strategy: str, method: DetectionMethod, fn, *args):
        try:
            return fn(*args), None
        except Exception as e:
            error = StrategyError(strategy, e)
            self._count("strategy_failures")
            self.error_logger.error(
                "strategy_failed",
                strategy=strategy,
                error=f"{type(e).__name__}: {e}",
                exc_info=True,
            )
            self.report_internal_failure(strategy, e, method=method)
            return None, error

    def report_internal_failure(
        self,
        component: str,
        error: Exception,
        method: DetectionMethod = DetectionMethod.STATE,
        issue_type: str = "strategy_failure",
    ) -> Optional[Issue]:
        """
        Record a failure inside the engine as a low-severity Issue.
        Returns the Issue, or None if even that could not be stored.
        """
        candidate = IssueCandidate(
            type=issue_type,
            severity=Severity.LOW,
            source=SELF_SOURCE,
            method=method,
            evidence={
                "component": component,
                "error_type": type(error).__name__,
                "message": str(error)[:500],
            },
            signature={"component": component, "error_type": type(error).__name__},
            detected_at=self._clock(),
        )
        try:
            issue, _created = self.merge(candidate)
            return issue
        except Exception as e:
            self.error_logger.error(
                "self_monitoring_failed",
                component=component,
                error=f"{type(e).__name__}: {e}",
            )
            return None

    # ------------------------------------------------------------------
    # Strategy 1: pattern matching
    # ------------------------------------------------------------------

    def match_patterns(self, event: LogEvent) -> Optional[IssueCandidate]:
        for rule in self._rules:
            match = rule.match(event)
            if match is None:
                continue
            issue_type = match.group(rule.type_group) if rule.type_group else rule.name
            signature = {
                f: event.fields[f] for f in rule.signature_fields if f in event.fields
            }
            if rule.use_message_signature:
                signature["message"] = event.signature
            return IssueCandidate(
                type=issue_type,
                severity=rule.severity,
                source=event.subsystem,
                method=DetectionMethod.PATTERN,
                evidence={
                    "rule": rule.name,
                    "line": event.raw[:2000],
                    "message": event.message[:1000],
                    "level": event.level,
                    "log_source": event.source,
                    "fields": dict(event.fields),
                },
                signature=signature,
                detected_at=event.timestamp,
            )
        return None

    def observe_event_signals(self, event: LogEvent) -> List[IssueCandidate]:
        candidates = []
        for name in self.config.anomaly.log_fields:
            value = event.fields.get(name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            candidate = self.anomaly.observe(
                f"{event.subsystem}.{name}",
                value,
                source=event.subsystem,
                detected_at=event.timestamp,
                context={"line": event.raw[:500]},
            )
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def process_event(self, event: LogEvent) -> DetectionResult:
        """Run pattern + anomaly detection for one structured log event."""
        started = time.monotonic()
        self._count("events")
        result = DetectionResult()

        candidates: List[IssueCandidate] = []
        matched, error = self._isolated("pattern", DetectionMethod.PATTERN, self.match_patterns, event)
        if error:
            result.failures.append("pattern")
        elif matched is not None:
            candidates.append(matched)

        anomalies, error = self._isolated("anomaly", DetectionMethod.ANOMALY, self.observe_event_signals, event)
        if error:
            result.failures.append("anomaly")
        elif anomalies:
            candidates.extend(anomalies)

        self._finish(candidates, started, result)
        return result

    def check_state(self, path: str, detected_at: Optional[float] = None) -> DetectionResult:
        """Evaluate every invariant watching path."""
        started = time.monotonic()
        self._count("state_checks")
        result = DetectionResult()
        at = detected_at if detected_at is not None else self._clock()

        candidates: List[IssueCandidate] = []
        for invariant in self.invariants.watching(path):
            found, error = self._isolated(
                f"state:{invariant.name}",
                DetectionMethod.STATE,
                self._evaluate_invariant,
                invariant,
                path,
                at,
            )
            if error:
                result.failures.append(f"state:{invariant.name}")
            elif found:
                candidates.extend(found)

        self._finish(candidates, started, result)
        return result

    def _evaluate_invariant(self, invariant: Invariant, path: str, at: float) -> List[IssueCandidate]:
        return invariant.evaluate(self.store.subtree(invariant.watch_prefix), at, path)

    def _on_state_change(self, record: ChangeRecord) -> None:
        if record.path.split(".")[0] in INTERNAL_ROOTS:
            return
        self.check_state(record.path, detected_at=record.timestamp)

    def sample_signals(self) -> DetectionResult:
        """Anomaly pass over monitored state paths (periodic task)."""
        started = time.monotonic()
        result = DetectionResult()
        found, error = self._isolated("anomaly", DetectionMethod.ANOMALY, self.anomaly.sample_state, self.store)
        if error:
            result.failures.append("anomaly")
        self._finish(found or [], started, result)
        return result

    def _finish(self, candidates: List[IssueCandidate], started: float, result: DetectionResult) -> None:
        budget = self.config.detection.budget_ms / 1000.0
        for candidate in candidates:
            self._count("candidates")
            causal = None
            deferred = (time.monotonic() - started) >= budget
            if not deferred:
                causal, error = self._isolated("causal", DetectionMethod.CAUSAL, self.causal.trace, candidate)
                if error:
                    result.failures.append("causal")
                elif causal:
                    candidate.evidence["causal"] = causal

            issue, created = self.merge(candidate)
            result.issues.append(issue)
            if created:
                result.created.append(issue.id)

            if deferred:
                self._deferred.put((issue.id, candidate))
                self._count("deferred")
                result.deferred += 1
            elif causal:
                self._link_cause(issue, causal, result)

    def _link_cause(self, issue: Issue, causal: Dict[str, Any], result: Optional[DetectionResult] = None) -> None:
        if issue.type == "cascading_change":
            return
        cascade, error = self._isolated(
            "causal", DetectionMethod.CAUSAL, self.causal.link, issue.id, issue.severity, causal,
        )
        if error and result is not None:
            result.failures.append("causal")
        if cascade is not None:
            cascade_issue, created = self.merge(cascade)
            if result is not None:
                result.issues.append(cascade_issue)
                if created:
                    result.created.append(cascade_issue.id)

    # ------------------------------------------------------------------
    # Deferred (background) causal analysis
    # ------------------------------------------------------------------

    @property
    def deferred_count(self) -> int:
        return self._deferred.qsize()

    def run_deferred(self, max_items: Optional[int] = None) -> int:
        """Finish causal enrichment for queued detections. Returns count."""
        done = 0
        while max_items is None or done < max_items:
            try:
                issue_id, candidate = self._deferred.get_nowait()
            except queue.Empty:
                break
            done += 1
            causal, error = self._isolated("causal", DetectionMethod.CAUSAL, self.causal.trace, candidate)
            if error or not causal:
                continue

            def attach(issue: Issue, causal=causal) -> None:
                issue.evidence["causal"] = causal

            try:
                issue = self.issues.modify(issue_id, attach)
            except Exception as e:
                self.error_logger.error("deferred_attach_failed", issue_id=issue_id, error=str(e))
                continue
            self._link_cause(issue, causal)
        return done

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def _lock_for(self, key: str) -> threading.Lock:
        # Keys are hex digests, so the leading digits spread evenly
        return self._merge_locks[int(key[:8], 16) % len(self._merge_locks)]

    @staticmethod
    def _absorb(issue: Issue, candidate: IssueCandidate) -> None:
        if not issue.is_open:
            raise _IssueClosed(issue.id)
        issue.occurrence_count += 1
        issue.last_seen = max(issue.last_seen, candidate.detected_at)
        issue.severity = max(issue.severity, candidate.severity)
        if candidate.method.value not in issue.methods:
            issue.methods.append(candidate.method.value)
        causal = issue.evidence.get("causal")
        issue.evidence.update(candidate.evidence)
        if causal is not None and "causal" not in candidate.evidence:
            issue.evidence["causal"] = causal

    def merge(self, candidate: IssueCandidate) -> Tuple[Issue, bool]:
        """
        Fold a candidate into the canonical Issue set.
        Returns (issue, created).
        """
        key = candidate.key
        index_path = self.issues.index_path(key)
        created = False

        with self._lock_for(key):
            index = self.store.get(index_path) or {}
            current_id = index.get("current")
            issue = None
            if current_id and self.issues.get(current_id) is not None:
                try:
                    issue = self.issues.modify(current_id, lambda i: self._absorb(i, candidate))
                except _IssueClosed:
                    # Resolved or cleared elsewhere; this is a recurrence
                    issue = None

            if issue is None:
                recurrence = index.get("recurrences", -1) + 1
                issue_id = key if recurrence == 0 else f"{key}-r{recurrence}"
                issue = Issue(
                    id=issue_id,
                    type=candidate.type,
                    severity=candidate.severity,
                    source=candidate.source,
                    detection_method=candidate.method,
                    first_seen=candidate.detected_at,
                    last_seen=candidate.detected_at,
                    occurrence_count=1,
                    status=IssueStatus.DETECTED,
                    evidence=dict(candidate.evidence),
                    signature=dict(candidate.signature),
                    methods=[candidate.method.value],
                )
                self.issues.create(issue)
                self.store.set(index_path, {
                    "current": issue_id,
                    "recurrences": recurrence,
                    "type": candidate.type,
                    "source": candidate.source,
                })
                created = True

        self._count("created" if created else "merged")
        entry = IssueLogEntry.build(
            issue_id=issue.id,
            issue_type=issue.type,
            severity=issue.severity.label,
            source=issue.source,
            method=candidate.method.value,
            occurrence_count=issue.occurrence_count,
            status=issue.status.value,
        )
        if created:
            self.logger.info("issue_detected", **entry)
        else:
            self.logger.debug("issue_merged", **entry)

        for callback in list(self._issue_listeners):
            try:
                callback(issue, created)
            except Exception as e:
                self.error_logger.error(
                    "issue_listener_failed",
                    issue_id=issue.id,
                    error=f"{type(e).__name__}: {e}",
                )
        return issue, created

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["deferred_pending"] = self.deferred_count
        stats["rules"] = len(self._rules)
        stats["invariants"] = len(self.invariants)
        stats["anomaly_signals"] = len(self.anomaly.signals)
        return stats
