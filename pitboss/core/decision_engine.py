# ============================================================================
# Pitboss -- Decision Engine (pitboss/core/decision_engine.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Owns the Issue lifecycle. It is the only component that changes an
#   Issue's status:
#
#     detected --(severity >= activation)--> active
#     detected --(low-severity repeat flood)--> suppressed
#     active   --start_attempt-->             resolving
#     resolving --success-->                  resolved
#     resolving --failure/partial/timeout-->  active  (+ next suggestions)
#     detected|active|resolving|suppressed --clear_issue--> resolved
#
#   Also decides what to work on next (prioritize / decide) and whether
#   the situation needs a human (escalation).
#
# IN-FLIGHT ATTEMPTS:
#   start_attempt() hands out a ticket and remembers when the work began
#   (mirrored at engine.in_flight so it survives a restart). An attempt
#   that never reports back within decision.attempt_timeout_seconds is
#   recorded as ABANDONED by expire_stale_attempts() and the Issue goes
#   back to active.
#
# ESCALATION:
#   Escalate when the number of open critical Issues reaches
#   critical_threshold or the number of active Issues reaches max_active.
#   The state lives at engine.escalation and clears by itself once the
#   triggering Issues are resolved. Every change goes to the audit log.
#
# PRIORITY:
#   priority = severity weight (critical 10, high 7, medium 4, low 1)
#            + min(occurrence_count / 10, 1) * 5
# ============================================================================

from __future__ import annotations

import time
import uuid
import threading
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Callable, Tuple

from .config import DecisionConfig
from .exceptions import AttemptTimeout, InvalidTransitionError
from .issues import IssueRepository
from .knowledge_base import FixKnowledgeBase
from .models import (
    Attempt,
    AttemptResult,
    Issue,
    IssueStatus,
    Severity,
    SEVERITY_WEIGHTS,
)
from .state_store import StateStore
from ..monitoring.logger import get_app_logger, get_audit_logger, DecisionLogEntry


ESCALATION_PATH = "engine.escalation"
IN_FLIGHT_PATH = "engine.in_flight"

WORKING_STATUSES = (IssueStatus.ACTIVE, IssueStatus.RESOLVING)


# ============================================================================
# SECTION 1: RESULT TYPES
# ============================================================================

@dataclass
class AttemptTicket:
    """Handle for a remediation that has started but not reported back."""
    ticket_id: str
    issue_id: str
    method: str
    started_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Outcome:
    """What record_outcome() did."""
    attempt: Attempt
    issue: Issue
    suggestions: List[Dict[str, Any]] = field(default_factory=list)
    avoid: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt.to_dict(),
            "issue": self.issue.to_dict(),
            "suggestions": self.suggestions,
            "avoid": self.avoid,
        }


@dataclass
class DecisionReport:
    """One pass of decide(): what to work on, in order."""
    generated_at: float
    priorities: List[Dict[str, Any]]
    escalation: Dict[str, Any]
    in_flight: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EscalationPolicy:
    critical_threshold: int = 1
    max_active: int = 10

    def evaluate(self, active: List[Issue]) -> Tuple[bool, List[str], List[str]]:
        """Returns (escalated, reasons, triggering issue ids)."""
        critical = [i for i in active if i.severity == Severity.CRITICAL]
        reasons = []
        triggering: List[str] = []
        if self.critical_threshold > 0 and len(critical) >= self.critical_threshold:
            reasons.append(f"{len(critical)} critical issue(s) open")
            triggering.extend(i.id for i in critical)
        if self.max_active > 0 and len(active) >= self.max_active:
            reasons.append(f"{len(active)} active issues (limit {self.max_active})")
            triggering.extend(i.id for i in active if i.id not in triggering)
        return bool(reasons), reasons, triggering


def priority_score(issue: Issue) -> float:
    return SEVERITY_WEIGHTS[issue.severity] + min(issue.occurrence_count / 10.0, 1.0) * 5


# ============================================================================
# SECTION 2: THE ENGINE
# ============================================================================

class DecisionEngine:
    """
    Issue lifecycle, attempt tracking and escalation.

    Usage:
        engine = DecisionEngine(store, repo, kb, config.decision)
        detector.add_issue_listener(engine.on_issue)
        ticket = engine.start_attempt(issue_id, "rollback_pot")
        outcome = engine.record_outcome(issue_id, "rollback_pot", "success")
    """

    def __init__(
        self,
        store: StateStore,
        issues: IssueRepository,
        knowledge: FixKnowledgeBase,
        config: Optional[DecisionConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.issues = issues
        self.knowledge = knowledge
        self.config = config or DecisionConfig()
        self._clock = clock

        self.policy = EscalationPolicy(
            critical_threshold=self.config.critical_threshold,
            max_active=self.config.max_active,
        )

        self._in_flight: Dict[str, AttemptTicket] = {}
        for data in (store.get(IN_FLIGHT_PATH) or {}).values():
            ticket = AttemptTicket(**data)
            self._in_flight[ticket.ticket_id] = ticket
        self._lock = threading.Lock()
        self._escalation_lock = threading.Lock()
        self._history: deque = deque(maxlen=self.config.history_limit)

        self.logger = get_app_logger("pitboss.decision_engine")
        self.audit = get_audit_logger("pitboss.decision_engine.audit")

        try:
            self.activation_severity = Severity.parse(self.config.activation_severity)
        except (KeyError, ValueError):
            self.logger.warning(
                "activation_severity_invalid",
                value=self.config.activation_severity,
                fallback="medium",
            )
            self.activation_severity = Severity.MEDIUM

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _move(
        self,
        issue_id: str,
        target: IssueStatus,
        reason: str,
        resolution: Optional[str] = None,
    ) -> Issue:
        before = self.issues.require(issue_id).status
        issue = self.issues.transition(issue_id, target, resolution=resolution, at=self._clock())
        if before != target:
            self.audit.info(
                "issue_transition",
                **DecisionLogEntry.build(
                    action="transition",
                    reason=reason,
                    issue_ids=[issue_id],
                    details={"from": before.value, "to": target.value, "resolution": resolution},
                ),
            )
        return issue

    def _ensure_active(self, issue: Issue, reason: str) -> Issue:
        if issue.status == IssueStatus.DETECTED:
            return self._move(issue.id, IssueStatus.ACTIVE, reason)
        return issue

    def on_issue(self, issue: Issue, created: bool = True) -> Issue:
        """
        React to a new or merged Issue. Safe to use directly as an
        IssueDetector listener.
        """
        current = self.issues.get(issue.id) or issue
        try:
            if current.status == IssueStatus.DETECTED:
                if current.severity >= self.activation_severity:
                    current = self._move(current.id, IssueStatus.ACTIVE, "severity_threshold")
                elif current.occurrence_count >= self.config.suppress_after:
                    current = self._move(current.id, IssueStatus.SUPPRESSED, "repeated_low_severity")
        except InvalidTransitionError as e:
            # Another thread moved it first; its decision stands
            self.logger.info("transition_skipped", issue_id=issue.id, reason=str(e))
        self.evaluate_escalation()
        return current

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _save_in_flight(self) -> None:
        # Caller holds self._lock
        self.store.set(IN_FLIGHT_PATH, {t: ticket.to_dict() for t, ticket in self._in_flight.items()})

    def in_flight(self, issue_id: Optional[str] = None) -> List[AttemptTicket]:
        with self._lock:
            tickets = list(self._in_flight.values())
        if issue_id is not None:
            tickets = [t for t in tickets if t.issue_id == issue_id]
        return sorted(tickets, key=lambda t: t.started_at)

    def start_attempt(self, issue_id: str, method: str) -> AttemptTicket:
        """Mark work as started. detected is promoted to active first."""
        issue = self._ensure_active(self.issues.require(issue_id), "attempt_started")
        self._move(issue.id, IssueStatus.RESOLVING, "attempt_started")
        ticket = AttemptTicket(
            ticket_id=uuid.uuid4().hex[:12],
            issue_id=issue_id,
            method=method,
            started_at=self._clock(),
        )
        with self._lock:
            self._in_flight[ticket.ticket_id] = ticket
            self._save_in_flight()
        self.logger.info("attempt_started", issue_id=issue_id, method=method, ticket_id=ticket.ticket_id)
        return ticket

    def _claim_ticket(
        self,
        issue_id: str,
        method: str,
        ticket_id: Optional[str],
    ) -> Optional[AttemptTicket]:
        with self._lock:
            ticket = None
            if ticket_id is not None:
                ticket = self._in_flight.get(ticket_id)
            else:
                matching = [
                    t for t in self._in_flight.values()
                    if t.issue_id == issue_id and t.method == method
                ]
                if matching:
                    ticket = min(matching, key=lambda t: t.started_at)
            if ticket is not None:
                del self._in_flight[ticket.ticket_id]
                self._save_in_flight()
            return ticket

    def _has_in_flight(self, issue_id: str) -> bool:
        with self._lock:
            return any(t.issue_id == issue_id for t in self._in_flight.values())

    def record_outcome(
        self,
        issue_id: str,
        method: str,
        result,
        context: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[float] = None,
        ticket_id: Optional[str] = None,
    ) -> Outcome:
        """
        Record how an attempt went and move the Issue accordingly.
        A failed or partial outcome comes back with the next suggestions.
        """
        result = AttemptResult(result)
        self.issues.require(issue_id)
        ticket = self._claim_ticket(issue_id, method, ticket_id)
        return self._record(issue_id, method, result, context, duration_ms, ticket)

    def _record(
        self,
        issue_id: str,
        method: str,
        result: AttemptResult,
        context: Optional[Dict[str, Any]],
        duration_ms: Optional[float],
        ticket: Optional[AttemptTicket],
    ) -> Outcome:
        issue = self.issues.require(issue_id)
        now = self._clock()
        started_at = ticket.started_at if ticket else None
        if duration_ms is None:
            duration_ms = (now - started_at) * 1000.0 if started_at is not None else 0.0

        attempt = self.knowledge.record_attempt(
            issue_id,
            method,
            result,
            context=context,
            duration_ms=duration_ms,
            started_at=started_at,
        )

        if result == AttemptResult.SUCCESS:
            issue = self._resolve(issue, method)
        elif issue.is_open and issue.status != IssueStatus.SUPPRESSED:
            issue = self._ensure_active(issue, "attempt_recorded")
            if issue.status == IssueStatus.RESOLVING and not self._has_in_flight(issue_id):
                issue = self._move(issue_id, IssueStatus.ACTIVE, f"attempt_{result.value}")

        outcome = Outcome(attempt=attempt, issue=issue)
        if result != AttemptResult.SUCCESS and issue.is_open:
            outcome.suggestions = [s.to_dict() for s in self.knowledge.suggest_fixes(issue)]
            outcome.avoid = self.knowledge.methods_to_avoid(issue.type)
        self.evaluate_escalation()
        return outcome

    def _resolve(self, issue: Issue, method: str) -> Issue:
        if not issue.is_open:
            return issue
        if issue.status == IssueStatus.SUPPRESSED:
            return self._move(issue.id, IssueStatus.RESOLVED, "attempt_succeeded", resolution=method)
        issue = self._ensure_active(issue, "attempt_succeeded")
        if issue.status == IssueStatus.ACTIVE:
            issue = self._move(issue.id, IssueStatus.RESOLVING, "attempt_succeeded")
        return self._move(issue.id, IssueStatus.RESOLVED, "attempt_succeeded", resolution=method)

    def clear_issue(self, issue_id: str, note: Optional[str] = None) -> Issue:
        """Manual clearance: resolve without a successful attempt."""
        issue = self._move(issue_id, IssueStatus.RESOLVED, "manual_clearance", resolution="manual")
        if note:
            def annotate(i: Issue) -> None:
                i.evidence["clearance_note"] = note

            issue = self.issues.modify(issue_id, annotate, caused_by_issue_id=issue_id)
        with self._lock:
            stale = [t for t, ticket in self._in_flight.items() if ticket.issue_id == issue_id]
            for t in stale:
                del self._in_flight[t]
            if stale:
                self._save_in_flight()
        self.evaluate_escalation()
        return issue

    def expire_stale_attempts(self, now: Optional[float] = None) -> List[Attempt]:
        """Record attempts that never reported back as abandoned."""
        now = self._clock() if now is None else now
        timeout = self.config.attempt_timeout_seconds
        with self._lock:
            stale = [t for t in self._in_flight.values() if now - t.started_at >= timeout]

        abandoned = []
        for ticket in stale:
            # A real outcome may have claimed the ticket since the scan
            claimed = self._claim_ticket(ticket.issue_id, ticket.method, ticket.ticket_id)
            if claimed is None:
                continue
            waited = now - claimed.started_at
            error = AttemptTimeout(claimed.issue_id, claimed.method, waited)
            self.logger.warning("attempt_timeout", **error.to_dict(), ticket_id=claimed.ticket_id)
            try:
                outcome = self._record(
                    claimed.issue_id,
                    claimed.method,
                    AttemptResult.ABANDONED,
                    {"reason": "timeout", "waited_seconds": round(waited, 3)},
                    waited * 1000.0,
                    claimed,
                )
            except InvalidTransitionError as e:
                self.logger.info("transition_skipped", issue_id=ticket.issue_id, reason=str(e))
                continue
            abandoned.append(outcome.attempt)
        return abandoned

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def active_issues(self) -> List[Issue]:
        return self.issues.all(WORKING_STATUSES)

    def escalation(self) -> Dict[str, Any]:
        return self.store.get(ESCALATION_PATH) or {
            "escalated": False,
            "reasons": [],
            "issue_ids": [],
            "changed_at": None,
        }

    def evaluate_escalation(self) -> Dict[str, Any]:
        with self._escalation_lock:
            escalated, reasons, triggering = self.policy.evaluate(self.active_issues())
            previous = self.escalation()
            if previous["escalated"] == escalated and previous["reasons"] == reasons:
                return previous
            state = {
                "escalated": escalated,
                "reasons": reasons,
                "issue_ids": triggering,
                "changed_at": self._clock(),
            }
            self.store.set(ESCALATION_PATH, state)

        if previous["escalated"] != escalated:
            self.audit.warning(
                "escalation_changed",
                **DecisionLogEntry.build(
                    action="escalate" if escalated else "deescalate",
                    reason="; ".join(reasons) or "triggering issues resolved",
                    issue_ids=triggering or previous["issue_ids"],
                ),
            )
        return state

    # ------------------------------------------------------------------
    # Prioritization
    # ------------------------------------------------------------------

    def prioritize(self, issues: Optional[List[Issue]] = None) -> List[Tuple[Issue, float]]:
        """Issues with their priority, highest first (ties: oldest first)."""
        if issues is None:
            issues = self.active_issues()
        ranked = [(issue, priority_score(issue)) for issue in issues]
        ranked.sort(key=lambda pair: (-pair[1], pair[0].first_seen))
        return ranked

    def decide(self) -> DecisionReport:
        priorities = []
        for issue, score in self.prioritize():
            priorities.append({
                "issue_id": issue.id,
                "type": issue.type,
                "severity": issue.severity.label,
                "status": issue.status.value,
                "priority": round(score, 3),
                "occurrence_count": issue.occurrence_count,
                "suggestions": [s.to_dict() for s in self.knowledge.suggest_fixes(issue)],
                "avoid": self.knowledge.methods_to_avoid(issue.type),
            })
        report = DecisionReport(
            generated_at=self._clock(),
            priorities=priorities,
            escalation=self.evaluate_escalation(),
            in_flight=[t.to_dict() for t in self.in_flight()],
        )
        self._history.append(report)
        return report

    def history(self, limit: Optional[int] = None) -> List[DecisionReport]:
        reports = list(self._history)
        return reports[-limit:] if limit else reports
