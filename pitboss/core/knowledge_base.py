# ============================================================================
# Pitboss -- Fix Knowledge Base (pitboss/core/knowledge_base.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Remembers every remediation attempt and turns that history into
#   ranked fix suggestions that improve over time.
#
#   Three tables, all persisted through the StateStore document:
#
#     attempts      -- every Attempt ever recorded (immutable)
#     patterns      -- success/failure tallies per "issue_type::method",
#                      plus a generalized "category:<cat>::method" tally
#                      so a brand-new issue type still gets suggestions
#     misdiagnoses  -- "method X looked right for symptom S, failed, and
#                      method Y turned out to be the fix"
#
# MISDIAGNOSIS LINKING:
#   When an attempt SUCCEEDS, every earlier failed or abandoned attempt on
#   the same Issue with a different method is linked into a
#   MisdiagnosisRecord keyed (issue type, failed method). The wasted time
#   is the sum of those attempts' durations. Each failed attempt is
#   linked at most once.
#
# CONFIDENCE:
#   confidence = wilson_lower_bound(successes, samples) * recency_weight
#
#   The Wilson lower bound keeps "1 success out of 1" from outranking
#   "45 out of 50". Partial fixes count as half a success. The recency
#   weight decays from 1.0 toward 0.5 as a pattern goes stale:
#
#     weight = 0.5 + 0.5 * 0.5 ** (age_hours / half_life_hours)
#
# INTERNET ACCESS: NONE
# ============================================================================

from __future__ import annotations

import math
import time
import uuid
import threading
from collections import OrderedDict, Counter
from typing import Optional, Dict, Any, List, Callable, Tuple

from .config import LearningConfig
from .issues import IssueRepository
from .models import (
    Attempt,
    AttemptResult,
    FixSuggestion,
    Issue,
    MisdiagnosisRecord,
    Pattern,
    digest,
)
from .state_store import StateStore
from ..monitoring.logger import get_app_logger, get_audit_logger, AttemptLogEntry


STATS_PATH = "learning.stats"

# Type words that name a whole family of problems. The first one found
# in an issue type (scanning right to left) is its category.
CATEGORY_WORDS = (
    "mismatch", "anomaly", "timeout", "connection", "database",
    "phase", "health", "orphaned", "crash", "leak", "desync",
)


def generalize_issue_type(issue_type: str) -> str:
    """
    Map an issue type to its category.

        pot_mismatch                -> mismatch
        server_duration_ms_anomaly  -> anomaly
        deck_shuffle_failed         -> failed
    """
    words = [w for w in issue_type.lower().split("_") if w]
    if not words:
        return "unknown"
    for word in reversed(words):
        if word in CATEGORY_WORDS:
            return word
    return words[-1]


def wilson_lower_bound(successes: float, samples: int, z: float = 1.96) -> float:
    """Lower bound of the Wilson score interval for a success proportion."""
    if samples <= 0:
        return 0.0
    p = successes / samples
    z2 = z * z
    centre = p + z2 / (2 * samples)
    margin = z * math.sqrt((p * (1 - p) + z2 / (4 * samples)) / samples)
    return max(0.0, (centre - margin) / (1 + z2 / samples))


class FixKnowledgeBase:
    """
    Attempts in, suggestions out.

    Usage:
        kb = FixKnowledgeBase(store, repo, config.learning)
        kb.record_attempt(issue.id, "restart_table", AttemptResult.FAILURE, duration_ms=60000)
        kb.record_attempt(issue.id, "rollback_pot", AttemptResult.SUCCESS, duration_ms=5000)
        kb.suggest_fixes(issue)   # rollback_pot first, restart_table warned
    """

    def __init__(
        self,
        store: StateStore,
        issues: Optional[IssueRepository] = None,
        config: Optional[LearningConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.issues = issues or IssueRepository(store)
        self.config = config or LearningConfig()
        self._clock = clock

        self._attempts: List[Attempt] = []
        self._by_issue: Dict[str, List[Attempt]] = {}
        self._patterns: "OrderedDict[str, Pattern]" = OrderedDict()
        self._misdiagnoses: "OrderedDict[Tuple[str, str], MisdiagnosisRecord]" = OrderedDict()
        self._linked: set = set()
        self._lock = threading.Lock()

        self.logger = get_app_logger("pitboss.knowledge_base")
        self.audit = get_audit_logger("pitboss.knowledge_base.audit")

        store.attach_table("attempts", self._dump_attempts, self._load_attempts)
        store.attach_table("patterns", self._dump_patterns, self._load_patterns)
        store.attach_table("misdiagnoses", self._dump_misdiagnoses, self._load_misdiagnoses)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    @staticmethod
    def exact_key(issue_type: str, method: str) -> str:
        return f"{issue_type}::{method}"

    @staticmethod
    def category_key(issue_type: str, method: str) -> str:
        return f"category:{generalize_issue_type(issue_type)}::{method}"

    def record_attempt(
        self,
        issue_id: str,
        method: str,
        result,
        context: Optional[Dict[str, Any]] = None,
        duration_ms: float = 0.0,
        started_at: Optional[float] = None,
    ) -> Attempt:
        """
        Store one remediation outcome and update the learned tallies.
        Raises UnknownIssueError for an unknown issue id.
        """
        issue = self.issues.require(issue_id)
        result = AttemptResult(result)
        now = self._clock()
        duration_ms = max(0.0, float(duration_ms or 0.0))

        details = dict(context or {})
        details.setdefault("state_digest", digest(self.store.snapshot("game")))
        details.setdefault("severity", issue.severity.label)

        attempt = Attempt(
            id=uuid.uuid4().hex[:16],
            issue_id=issue_id,
            issue_type=issue.type,
            method=method,
            result=result,
            started_at=started_at if started_at is not None else now - duration_ms / 1000.0,
            duration_ms=duration_ms,
            context=details,
        )

        with self._lock:
            earlier = list(self._by_issue.get(issue_id, []))
            self._attempts.append(attempt)
            self._by_issue.setdefault(issue_id, []).append(attempt)
            self._tally(self.exact_key(issue.type, method), issue.type, method, attempt, now)
            self._tally(
                self.category_key(issue.type, method),
                f"category:{generalize_issue_type(issue.type)}",
                method,
                attempt,
                now,
            )
            linked = []
            if result == AttemptResult.SUCCESS:
                linked = self._link_misdiagnoses(issue, attempt, earlier, now)

        self.audit.info(
            "attempt_recorded",
            **AttemptLogEntry.build(
                attempt_id=attempt.id,
                issue_id=issue_id,
                method=method,
                result=result.value,
                duration_ms=duration_ms,
                issue_type=issue.type,
            ),
        )
        for record in linked:
            self.audit.info(
                "misdiagnosis_linked",
                issue_id=issue_id,
                symptom=record.symptom_signature,
                attempted_method=record.attempted_method,
                correct_method=record.correct_method,
                time_wasted_ms=record.time_wasted_ms,
                occurrences=record.occurrences,
            )
        self.store.set(STATS_PATH, self.stats())
        return attempt

    def _tally(self, key: str, issue_type: str, method: str, attempt: Attempt, now: float) -> None:
        # Caller holds self._lock
        pattern = self._patterns.get(key)
        if pattern is None:
            pattern = Pattern(key=key, issue_type=issue_type, method=method)
            self._patterns[key] = pattern
        if attempt.result == AttemptResult.SUCCESS:
            pattern.success_count += 1
            pattern.success_duration_ms += attempt.duration_ms
        elif attempt.result == AttemptResult.PARTIAL:
            pattern.partial_count += 1
        else:
            pattern.failure_count += 1
        pattern.total_duration_ms += attempt.duration_ms
        pattern.last_updated = now
        self._patterns.move_to_end(key)

    def _root_cause(self, issue: Issue, success: Attempt) -> str:
        cause = success.context.get("root_cause")
        if cause:
            return str(cause)
        nearest = (issue.evidence.get("causal") or {}).get("nearest")
        if isinstance(nearest, dict) and nearest.get("path"):
            return nearest["path"]
        return f"resolved by {success.method}"

    def _link_misdiagnoses(
        self,
        issue: Issue,
        success: Attempt,
        earlier: List[Attempt],
        now: float,
    ) -> List[MisdiagnosisRecord]:
        # Caller holds self._lock
        failed: Dict[str, List[Attempt]] = OrderedDict()
        for attempt in earlier:
            if attempt.id in self._linked:
                continue
            if not attempt.result.is_failure or attempt.method == success.method:
                continue
            failed.setdefault(attempt.method, []).append(attempt)

        root_cause = self._root_cause(issue, success)
        updated = []
        for method, attempts in failed.items():
            key = (issue.type, method)
            record = self._misdiagnoses.get(key)
            if record is None:
                record = MisdiagnosisRecord(
                    symptom_signature=issue.type,
                    attempted_method=method,
                    correct_method=success.method,
                    actual_root_cause=root_cause,
                )
                self._misdiagnoses[key] = record
            record.correct_method = success.method
            record.actual_root_cause = root_cause
            record.time_wasted_ms += sum(a.duration_ms for a in attempts)
            record.occurrences += len(attempts)
            record.linked_attempt_ids.extend(a.id for a in attempts)
            record.last_updated = now
            self._linked.update(a.id for a in attempts)
            updated.append(record)
        return updated

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def _recency_weight(self, pattern: Pattern, now: float) -> float:
        half_life = self.config.recency_half_life_hours
        if half_life <= 0:
            return 1.0
        age_hours = max(0.0, now - pattern.last_updated) / 3600.0
        return 0.5 + 0.5 * 0.5 ** (age_hours / half_life)

    def confidence(self, pattern: Pattern, now: Optional[float] = None) -> float:
        now = self._clock() if now is None else now
        lower = wilson_lower_bound(pattern.weighted_successes, pattern.samples, self.config.wilson_z)
        return lower * self._recency_weight(pattern, now)

    def suggest_fixes(self, issue: Issue) -> List[FixSuggestion]:
        """Ranked remediation methods for the Issue, best first."""
        now = self._clock()
        category_prefix = f"category:{generalize_issue_type(issue.type)}"
        with self._lock:
            exact = [p for p in self._patterns.values() if p.issue_type == issue.type]
            category = [p for p in self._patterns.values() if p.issue_type == category_prefix]
            misdiagnosed = {
                method: record for (symptom, method), record in self._misdiagnoses.items()
                if symptom == issue.type
            }
            failed_here = Counter(
                a.method for a in self._by_issue.get(issue.id, []) if a.result.is_failure
            )

        known = {p.method for p in exact}
        candidates: List[FixSuggestion] = []
        for pattern in exact:
            candidates.append(self._suggestion(pattern, self.confidence(pattern, now), "exact"))
        for pattern in category:
            if pattern.method in known:
                continue
            score = self.confidence(pattern, now) * self.config.category_discount
            candidates.append(self._suggestion(pattern, score, "category"))

        threshold = self.config.misdiagnosis_cost_threshold_ms
        costly = {
            m for m, record in misdiagnosed.items() if record.time_wasted_ms > threshold
        }
        kept = [s for s in candidates if s.method not in costly]
        if not kept:
            kept = candidates

        for suggestion in kept:
            warnings = []
            record = misdiagnosed.get(suggestion.method)
            if record is not None:
                suggestion.misdiagnosis = record.to_dict()
                warnings.append(
                    f"Misdiagnosed {record.occurrences} time(s) for {issue.type}; "
                    f"{record.correct_method} fixed it instead "
                    f"(root cause: {record.actual_root_cause})"
                )
            if failed_here.get(suggestion.method):
                warnings.append(
                    f"Already failed {failed_here[suggestion.method]} time(s) on this issue"
                )
            if warnings:
                suggestion.warning = "; ".join(warnings)

        kept.sort(key=lambda s: (
            -round(s.confidence, 9),
            s.misdiagnosis is not None,
            -s.samples,
            s.method,
        ))
        return kept

    @staticmethod
    def _suggestion(pattern: Pattern, confidence: float, source: str) -> FixSuggestion:
        return FixSuggestion(
            method=pattern.method,
            confidence=confidence,
            success_rate=pattern.success_rate,
            samples=pattern.samples,
            expected_time_ms=pattern.expected_time_ms,
            source=source,
        )

    # ------------------------------------------------------------------
    # Avoidance
    # ------------------------------------------------------------------

    def methods_to_avoid(self, issue_type: str) -> List[Dict[str, Any]]:
        """Methods known to be wrong for this issue type, costliest first."""
        with self._lock:
            records = [r for r in self._misdiagnoses.values() if r.symptom_signature == issue_type]
            hopeless = [
                p for p in self._patterns.values()
                if p.issue_type == issue_type and p.success_count == 0
                and p.partial_count == 0 and p.failure_count >= 3
            ]
        avoid = [
            {
                "method": r.attempted_method,
                "reason": "misdiagnosis",
                "time_wasted_ms": r.time_wasted_ms,
                "correct_method": r.correct_method,
                "occurrences": r.occurrences,
            }
            for r in records
        ]
        seen = {a["method"] for a in avoid}
        for pattern in hopeless:
            if pattern.method in seen:
                continue
            avoid.append({
                "method": pattern.method,
                "reason": "never_succeeded",
                "time_wasted_ms": pattern.total_duration_ms,
                "correct_method": None,
                "occurrences": pattern.failure_count,
            })
        avoid.sort(key=lambda a: -a["time_wasted_ms"])
        return avoid

    def misdiagnosis_prevention(self, issue_type: str) -> Dict[str, Any]:
        """Warnings and the approach that worked, before anyone starts."""
        with self._lock:
            records = [r for r in self._misdiagnoses.values() if r.symptom_signature == issue_type]
        if not records:
            return {
                "issue_type": issue_type,
                "warnings": [],
                "correct_approach": None,
                "failed_methods": [],
                "time_wasted_ms": 0.0,
            }
        correct = Counter()
        for record in records:
            correct[record.correct_method] += record.occurrences
        records.sort(key=lambda r: -r.time_wasted_ms)
        return {
            "issue_type": issue_type,
            "warnings": [
                f"{r.attempted_method} has been tried {r.occurrences} time(s) for "
                f"{issue_type} without success; root cause was {r.actual_root_cause}"
                for r in records
            ],
            "correct_approach": correct.most_common(1)[0][0],
            "failed_methods": [r.attempted_method for r in records],
            "time_wasted_ms": sum(r.time_wasted_ms for r in records),
        }

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def attempts_for(self, issue_id: str) -> List[Attempt]:
        with self._lock:
            return list(self._by_issue.get(issue_id, []))

    def patterns(self, issue_type: Optional[str] = None) -> List[Pattern]:
        with self._lock:
            patterns = list(self._patterns.values())
        if issue_type is not None:
            patterns = [p for p in patterns if p.issue_type == issue_type]
        return patterns

    def misdiagnoses(self, issue_type: Optional[str] = None) -> List[MisdiagnosisRecord]:
        with self._lock:
            records = list(self._misdiagnoses.values())
        if issue_type is not None:
            records = [r for r in records if r.symptom_signature == issue_type]
        return records

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            results = Counter(a.result.value for a in self._attempts)
            return {
                "attempts": len(self._attempts),
                "issues_attempted": len(self._by_issue),
                "patterns": len(self._patterns),
                "misdiagnoses": len(self._misdiagnoses),
                "time_wasted_ms": sum(r.time_wasted_ms for r in self._misdiagnoses.values()),
                "results": dict(results),
            }

    # ------------------------------------------------------------------
    # Persistence tables
    # ------------------------------------------------------------------

    def _dump_attempts(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [a.to_dict() for a in self._attempts]

    def _load_attempts(self, rows: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._attempts = [Attempt.from_dict(r) for r in rows or []]
            self._by_issue = {}
            for attempt in self._attempts:
                self._by_issue.setdefault(attempt.issue_id, []).append(attempt)

    def _dump_patterns(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [p.to_dict() for p in self._patterns.values()]

    def _load_patterns(self, rows: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._patterns = OrderedDict()
            for row in rows or []:
                pattern = Pattern.from_dict(row)
                self._patterns[pattern.key] = pattern

    def _dump_misdiagnoses(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [r.to_dict() for r in self._misdiagnoses.values()]

    def _load_misdiagnoses(self, rows: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._misdiagnoses = OrderedDict()
            self._linked = set()
            for row in rows or []:
                record = MisdiagnosisRecord.from_dict(row)
                self._misdiagnoses[record.key] = record
                self._linked.update(record.linked_attempt_ids)
