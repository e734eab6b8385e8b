# ============================================================================
# Pitboss -- Query Facade (pitboss/core/query_facade.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   The one surface external callers (an operator, an automated agent, the
#   HTTP API) use to ask the engine questions and report remediation
#   outcomes.
#
#   Every method returns a QueryResult and NEVER raises:
#
#     QueryResult(ok=True,  data={...},  error=None)
#     QueryResult(ok=False, data=None,   error={"code", "message",
#                                               "fix_suggestion", "issue_id"})
#
#   A failed call is also recorded as a low-severity self-monitoring
#   Issue against the engine; error["issue_id"] is that Issue's id so the
#   caller can refer to it.
#
# QUERY LANGUAGE:
#   query() accepts either a structured dict:
#       {"kind": "issues", "status": "active"}
#       {"kind": "errors", "minutes": 30}
#       {"kind": "changes", "issue_id": "3f2a..."}
#   or short natural text:
#       "active issues"
#       "errors in the last 30 minutes"
#       "fixes for 3f2a..."
#       "what changed before 3f2a..."
#       "misdiagnosis for pot_mismatch"
#       "state of game.tables.42"
#   Anything else is a free-text search of recent log events.
# ============================================================================

from __future__ import annotations

import re
import time
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, List, Callable, Union

from .causal import IGNORED_ROOTS
from .decision_engine import DecisionEngine, priority_score
from .exceptions import PitbossError, QueryError
from .issue_detector import IssueDetector
from .knowledge_base import FixKnowledgeBase
from .log_ingestor import LogIngestor
from .models import AttemptResult, Issue, IssueStatus, Severity, DetectionMethod
from .state_store import StateStore
from ..monitoring.flight_recorder import FlightRecorder
from ..monitoring.logger import get_app_logger


UNIT_SECONDS = {
    "second": 1, "sec": 1, "s": 1,
    "minute": 60, "min": 60, "m": 60,
    "hour": 3600, "hr": 3600, "h": 3600,
    "day": 86400, "d": 86400,
}

_RE_ERRORS = re.compile(
    r"\berrors?\b.*?\blast\s+(?:(\d+)\s*)?(second|sec|minute|min|hour|hr|day)s?\b", re.I
)
_RE_ACTIVE = re.compile(r"^\s*(?:show\s+|list\s+)?(active|open|current|all)?\s*issues\s*$", re.I)
_RE_FIXES = re.compile(r"\b(?:fix|fixes|suggestions?)\s+for\s+(\S+)", re.I)
_RE_CHANGES = re.compile(r"\bwhat\s+changed\s+before\s+(\S+)", re.I)
_RE_MISDIAGNOSIS = re.compile(r"\bmisdiagnos\w*(?:\s+for\s+(\S+))?", re.I)
_RE_STATE = re.compile(r"\bstate\s+of\s+(\S+)", re.I)
_RE_RELATED = re.compile(r"\brelated\s+to\s+(\S+)", re.I)
_RE_STATS = re.compile(r"^\s*(?:stats|statistics|status|health)\s*$", re.I)


@dataclass
class QueryResult:
    ok: bool
    data: Any = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class QueryFacade:
    """
    Read/query surface over the running engine.

    Usage:
        facade = QueryFacade(store, detector, knowledge, decisions, ingestor)
        result = facade.query("active issues")
        if result.ok:
            for issue in result.data["issues"]: ...
    """

    def __init__(
        self,
        store: StateStore,
        detector: IssueDetector,
        knowledge: FixKnowledgeBase,
        decisions: DecisionEngine,
        ingestor: Optional[LogIngestor] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.detector = detector
        self.issues = detector.issues
        self.knowledge = knowledge
        self.decisions = decisions
        self.ingestor = ingestor
        self.recorder: FlightRecorder = ingestor.recorder if ingestor else FlightRecorder()
        self._clock = clock
        self.logger = get_app_logger("pitboss.query_facade")

    # ------------------------------------------------------------------
    # Error boundary
    # ------------------------------------------------------------------

    def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> QueryResult:
        try:
            return QueryResult(ok=True, data=fn(*args, **kwargs))
        except Exception as e:
            return self._failure(operation, e)

    def _failure(self, operation: str, error: Exception) -> QueryResult:
        if isinstance(error, PitbossError):
            code = error.error_code
            fix = error.fix_suggestion
        else:
            code = "INTERNAL"
            fix = None
            self.logger.error("query_failed", operation=operation, exc_info=True)
        issue = self.detector.report_internal_failure(
            f"query:{operation}",
            error,
            method=DetectionMethod.STATE,
            issue_type="query_failure",
        )
        self.logger.info(
            "query_rejected",
            operation=operation,
            code=code,
            error=str(error)[:300],
        )
        return QueryResult(
            ok=False,
            error={
                "code": code,
                "message": str(error),
                "fix_suggestion": fix,
                "issue_id": issue.id if issue else None,
            },
        )

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    @staticmethod
    def _issue_row(issue: Issue) -> Dict[str, Any]:
        row = issue.to_dict()
        row["priority"] = round(priority_score(issue), 3)
        return row

    def _active_issues(self, include_suppressed: bool = False) -> Dict[str, Any]:
        statuses = [IssueStatus.DETECTED, IssueStatus.ACTIVE, IssueStatus.RESOLVING]
        if include_suppressed:
            statuses.append(IssueStatus.SUPPRESSED)
        ranked = self.decisions.prioritize(self.issues.all(statuses))
        return {
            "issues": [self._issue_row(issue) for issue, _score in ranked],
            "count": len(ranked),
            "escalation": self.decisions.escalation(),
        }

    def get_active_issues(self, include_suppressed: bool = False) -> QueryResult:
        return self._call("get_active_issues", self._active_issues, include_suppressed)

    def _issue(self, issue_id: str) -> Dict[str, Any]:
        issue = self.issues.require(issue_id)
        data = self._issue_row(issue)
        data["attempts"] = [a.to_dict() for a in self.knowledge.attempts_for(issue_id)]
        data["in_flight"] = [t.to_dict() for t in self.decisions.in_flight(issue_id)]
        return data

    def get_issue(self, issue_id: str) -> QueryResult:
        return self._call("get_issue", self._issue, issue_id)

    def _issues_filtered(self, status: Optional[str] = None, severity: Optional[str] = None) -> Dict[str, Any]:
        if status in (None, "", "active", "open"):
            data = self._active_issues(include_suppressed=(status == "open"))
            issues = data["issues"]
        elif status == "all":
            issues = [self._issue_row(i) for i in self.issues.all()]
        else:
            try:
                wanted = IssueStatus(status)
            except ValueError:
                raise QueryError(f"Unknown issue status: {status!r}")
            issues = [self._issue_row(i) for i in self.issues.all([wanted])]
        if severity:
            try:
                floor = Severity.parse(severity)
            except KeyError:
                raise QueryError(f"Unknown severity: {severity!r}")
            issues = [i for i in issues if Severity.parse(i["severity"]) >= floor]
        return {"issues": issues, "count": len(issues)}

    def _fixes(self, issue_id: str) -> Dict[str, Any]:
        issue = self.issues.require(issue_id)
        return {
            "issue_id": issue.id,
            "issue_type": issue.type,
            "suggestions": [s.to_dict() for s in self.knowledge.suggest_fixes(issue)],
            "avoid": self.knowledge.methods_to_avoid(issue.type),
            "prevention": self.knowledge.misdiagnosis_prevention(issue.type),
        }

    def get_suggested_fixes(self, issue_id: str) -> QueryResult:
        return self._call("get_suggested_fixes", self._fixes, issue_id)

    def _related(self, issue_id: str) -> Dict[str, Any]:
        issue = self.issues.require(issue_id)
        nearest = (issue.evidence.get("causal") or {}).get("nearest") or {}
        cause_path = nearest.get("path")
        entities = {
            str(v) for k, v in issue.signature.items()
            if k not in ("invariant", "signal", "direction", "message")
        }
        cascades = set()

        related = []
        for other in self.issues.all():
            if other.id == issue.id:
                continue
            reasons = []
            other_nearest = (other.evidence.get("causal") or {}).get("nearest") or {}
            if cause_path and other_nearest.get("path") == cause_path:
                reasons.append("shared_cause")
            if other.type == "cascading_change" and issue.id in other.evidence.get("issue_ids", []):
                reasons.append("cascade")
                cascades.update(other.evidence.get("issue_ids", []))
            if other.type == issue.type:
                reasons.append("same_type")
            other_entities = {str(v) for v in other.signature.values()}
            if entities and entities & other_entities:
                reasons.append("shared_entity")
            if reasons:
                related.append((other, reasons))

        # Siblings explained by the same cascade
        for other in self.issues.all():
            if other.id in cascades and other.id != issue.id and not any(o.id == other.id for o, _ in related):
                related.append((other, ["cascade"]))

        related.sort(key=lambda pair: (-len(pair[1]), -priority_score(pair[0])))
        return {
            "issue_id": issue.id,
            "related": [
                {"issue": self._issue_row(o), "relations": reasons}
                for o, reasons in related
            ],
        }

    def get_related_issues(self, issue_id: str) -> QueryResult:
        return self._call("get_related_issues", self._related, issue_id)

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    def record_attempt(
        self,
        issue_id: str,
        method: str,
        result: str,
        context: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[float] = None,
        ticket_id: Optional[str] = None,
    ) -> QueryResult:
        def run():
            if not method:
                raise QueryError("An attempt needs a method name.")
            try:
                parsed = AttemptResult(result)
            except ValueError as e:
                raise QueryError(
                    f"Unknown attempt result {result!r}; use success, failure, partial or abandoned."
                ) from e
            outcome = self.decisions.record_outcome(
                issue_id, method, parsed,
                context=context, duration_ms=duration_ms, ticket_id=ticket_id,
            )
            return outcome.to_dict()

        return self._call("record_attempt", run)

    def start_attempt(self, issue_id: str, method: str) -> QueryResult:
        return self._call(
            "start_attempt",
            lambda: self.decisions.start_attempt(issue_id, method).to_dict(),
        )

    def clear_issue(self, issue_id: str, note: Optional[str] = None) -> QueryResult:
        return self._call(
            "clear_issue",
            lambda: self.decisions.clear_issue(issue_id, note).to_dict(),
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _state(self, path: str) -> Dict[str, Any]:
        if not path:
            raise QueryError("A state query needs a path.")
        entry = self.store.get_entry(path)
        if entry is not None:
            return {"path": path, **entry.to_dict()}
        self.store.validate_path(path)
        keys = self.store.keys(path)
        return {
            "path": path,
            "value": self.store.subtree(path) if keys else None,
            "version": None,
            "updated_at": None,
            "children": len(keys),
        }

    def get_state(self, path: str) -> QueryResult:
        return self._call("get_state", self._state, path)

    def _history(self, prefix: str = "", since: Optional[float] = None, limit: int = 100) -> Dict[str, Any]:
        records = self.store.history(since=since, prefix=prefix, limit=limit)
        return {
            "prefix": prefix,
            "changes": [r.to_dict() for r in records],
            "count": len(records),
        }

    def state_history(self, prefix: str = "", since: Optional[float] = None, limit: int = 100) -> QueryResult:
        return self._call("state_history", self._history, prefix, since, limit)

    def _changes_before(self, issue_id: str, limit: int = 50) -> Dict[str, Any]:
        issue = self.issues.require(issue_id)
        window = self.detector.config.causal.window_seconds
        records = [
            r for r in self.store.history(since=issue.first_seen - window, until=issue.first_seen)
            if r.path.split(".")[0] not in IGNORED_ROOTS
        ]
        return {
            "issue_id": issue.id,
            "window_seconds": window,
            "causal": issue.evidence.get("causal"),
            "changes": [r.to_dict() for r in records[-limit:]],
        }

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def _errors(self, seconds: float = 3600, source: Optional[str] = None, text: str = "", limit: int = 100) -> Dict[str, Any]:
        since = self._clock() - seconds
        events = self.recorder.search(
            text=text, levels=("ERROR", "CRITICAL"), since=since, source=source, limit=limit,
        )
        return {
            "since": since,
            "window_seconds": seconds,
            "count": len(events),
            "events": [e.to_dict() for e in events],
        }

    def _search(self, text: str, limit: int = 50) -> Dict[str, Any]:
        events = self.recorder.search(text=text, limit=limit)
        return {"text": text, "count": len(events), "events": [e.to_dict() for e in events]}

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def _stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {s.value: 0 for s in IssueStatus}
        for issue in self.issues.all():
            by_status[issue.status.value] += 1
        return {
            "state": {
                "entries": len(self.store),
                "persist_count": self.store.persist_count,
                "last_persisted_at": self.store.last_persisted_at,
            },
            "ingest": self.ingestor.stats() if self.ingestor else {},
            "detection": self.detector.stats(),
            "learning": self.knowledge.stats(),
            "issues": by_status,
            "escalation": self.decisions.escalation(),
            "recent_events": self.recorder.size,
        }

    def stats(self) -> QueryResult:
        return self._call("stats", self._stats)

    # ------------------------------------------------------------------
    # query()
    # ------------------------------------------------------------------

    def query(self, question: Union[str, Dict[str, Any]]) -> QueryResult:
        """Answer a structured dict or a short natural-language question."""
        try:
            kind, params = self._parse(question)
        except Exception as e:
            return self._failure("query", e)
        return self._call(f"query:{kind}", self._dispatch, kind, params)

    def _parse(self, question: Union[str, Dict[str, Any]]):
        if isinstance(question, dict):
            params = dict(question)
            kind = params.pop("kind", None)
            if not kind:
                raise QueryError("A structured query needs a 'kind'.")
            return str(kind).lower(), params
        if not isinstance(question, str) or not question.strip():
            raise QueryError("Empty query.")

        text = question.strip()
        match = _RE_ERRORS.search(text)
        if match:
            amount = int(match.group(1) or 1)
            return "errors", {"seconds": amount * UNIT_SECONDS[match.group(2).lower()]}
        match = _RE_FIXES.search(text)
        if match:
            return "fixes", {"issue_id": match.group(1)}
        match = _RE_CHANGES.search(text)
        if match:
            return "changes", {"issue_id": match.group(1).rstrip("?")}
        match = _RE_MISDIAGNOSIS.search(text)
        if match:
            return "misdiagnoses", {"issue_type": match.group(1)}
        match = _RE_STATE.search(text)
        if match:
            return "state", {"path": match.group(1).rstrip("?")}
        match = _RE_RELATED.search(text)
        if match:
            return "related", {"issue_id": match.group(1).rstrip("?")}
        match = _RE_ACTIVE.match(text)
        if match:
            scope = (match.group(1) or "active").lower()
            return "issues", {"status": "active" if scope == "current" else scope}
        if _RE_STATS.match(text):
            return "stats", {}
        return "search", {"text": text}

    def _dispatch(self, kind: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if kind == "issues":
            return self._issues_filtered(params.get("status"), params.get("severity"))
        if kind == "issue":
            return self._issue(self._required(params, "issue_id"))
        if kind == "fixes":
            return self._fixes(self._required(params, "issue_id"))
        if kind == "changes":
            if params.get("issue_id"):
                return self._changes_before(params["issue_id"])
            return self._history(params.get("prefix", ""), params.get("since"), params.get("limit", 100))
        if kind == "errors":
            seconds = params.get("seconds")
            if seconds is None:
                seconds = float(params.get("minutes", 60)) * 60
            return self._errors(float(seconds), params.get("source"), params.get("text", ""))
        if kind == "misdiagnoses":
            issue_type = params.get("issue_type")
            data = {"records": [r.to_dict() for r in self.knowledge.misdiagnoses(issue_type)]}
            if issue_type:
                data["prevention"] = self.knowledge.misdiagnosis_prevention(issue_type)
            return data
        if kind == "stats":
            return self._stats()
        if kind == "state":
            return self._state(self._required(params, "path"))
        if kind == "related":
            return self._related(self._required(params, "issue_id"))
        if kind == "search":
            return self._search(params.get("text", ""), int(params.get("limit", 50)))
        if kind == "decide":
            return self.decisions.decide().to_dict()
        raise QueryError(f"Unsupported query kind: {kind!r}")

    @staticmethod
    def _required(params: Dict[str, Any], name: str) -> Any:
        value = params.get(name)
        if value in (None, ""):
            raise QueryError(f"Query is missing '{name}'.")
        return value
