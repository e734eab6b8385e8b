# ============================================================================
# Pitboss -- Shared Data Model (pitboss/core/models.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Defines every record that flows between the engine's components:
#
#     StateEntry / ChangeRecord   -- what the state store holds and remembers
#     LogEvent                    -- one structured log line
#     Issue                       -- one deduplicated detected problem
#     Attempt                     -- one remediation try (immutable)
#     Pattern                     -- success/failure tally per (type, method)
#     MisdiagnosisRecord          -- "this looked right, here is what works"
#     FixSuggestion               -- one ranked answer from suggest_fixes
#
#   Each concept has exactly one container type. Ordered tables use
#   OrderedDict in their owning component; records here are dataclasses
#   with to_dict() / from_dict() for persistence and the query API.
#
# SEVERITY ORDER:
#   Severity is an IntEnum where a BIGGER number is WORSE, so merging two
#   detections of the same problem is just max(a, b).
# ============================================================================

from __future__ import annotations

import json
import time
import hashlib
from enum import IntEnum, Enum
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class Severity(IntEnum):
    """Issue severity. Compare with < > ; max() picks the worst."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Accept a Severity, its int value, or its name in any case."""
        if isinstance(value, Severity):
            return value
        if isinstance(value, int):
            return cls(value)
        return cls[str(value).strip().upper()]


# Priority weights used when ordering active issues
SEVERITY_WEIGHTS = {
    Severity.CRITICAL: 10,
    Severity.HIGH: 7,
    Severity.MEDIUM: 4,
    Severity.LOW: 1,
}


class DetectionMethod(str, Enum):
    PATTERN = "pattern"
    STATE = "state"
    ANOMALY = "anomaly"
    CAUSAL = "causal"


class IssueStatus(str, Enum):
    DETECTED = "detected"
    ACTIVE = "active"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"


# Allowed lifecycle moves. RESOLVED is terminal; ACTIVE never goes back
# to DETECTED. Manual clearance is the only road to RESOLVED that does
# not pass through RESOLVING.
ALLOWED_TRANSITIONS = {
    IssueStatus.DETECTED: {IssueStatus.ACTIVE, IssueStatus.SUPPRESSED, IssueStatus.RESOLVED},
    IssueStatus.ACTIVE: {IssueStatus.RESOLVING, IssueStatus.RESOLVED},
    IssueStatus.RESOLVING: {IssueStatus.RESOLVED, IssueStatus.ACTIVE},
    IssueStatus.SUPPRESSED: {IssueStatus.RESOLVED},
    IssueStatus.RESOLVED: set(),
}

OPEN_STATUSES = (
    IssueStatus.DETECTED,
    IssueStatus.ACTIVE,
    IssueStatus.RESOLVING,
    IssueStatus.SUPPRESSED,
)


class AttemptResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"
    ABANDONED = "abandoned"

    @property
    def is_failure(self) -> bool:
        return self in (AttemptResult.FAILURE, AttemptResult.ABANDONED)


# ============================================================================
# SECTION 2: HELPERS
# ============================================================================

def canonical_json(value: Any) -> str:
    """Stable JSON text: sorted keys, no whitespace, str() for odd types."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def digest(value: Any) -> str:
    """Short content digest used in ChangeRecords and attempt contexts."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()[:16]


def stable_id(*parts: Any) -> str:
    """Deterministic id from the given parts (joined with '|')."""
    text = "|".join(canonical_json(p) if not isinstance(p, str) else p for p in parts)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


# ============================================================================
# SECTION 3: STATE RECORDS
# ============================================================================

@dataclass(frozen=True)
class StateEntry:
    """One committed value. Replaced, never mutated."""
    path: str
    value: Any
    version: int
    updated_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "version": self.version, "updated_at": self.updated_at}


@dataclass(frozen=True)
class ChangeRecord:
    """What changed, when, and (optionally) because of which Issue."""
    path: str
    old_digest: Optional[str]
    new_digest: str
    timestamp: float
    version: int
    caused_by_issue_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# SECTION 4: LOG EVENTS
# ============================================================================

@dataclass
class LogEvent:
    """One structured log line produced by the LogIngestor."""
    source: str
    subsystem: str
    level: str
    message: str
    timestamp: float
    fields: Dict[str, Any] = field(default_factory=dict)
    signature: str = ""
    raw: str = ""
    relaxed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# SECTION 5: ISSUES
# ============================================================================

@dataclass
class Issue:
    """
    A deduplicated detected problem.

    id is derived from (type, source, evidence signature) so the same
    problem reported twice (by the same or a different strategy) lands on
    the same record.
    """
    id: str
    type: str
    severity: Severity
    source: str
    detection_method: DetectionMethod
    first_seen: float
    last_seen: float
    occurrence_count: int = 1
    status: IssueStatus = IssueStatus.DETECTED
    evidence: Dict[str, Any] = field(default_factory=dict)
    signature: Dict[str, Any] = field(default_factory=dict)
    methods: List[str] = field(default_factory=list)
    resolved_at: Optional[float] = None
    resolution: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.label
        data["detection_method"] = self.detection_method.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Issue":
        data = dict(data)
        data["severity"] = Severity.parse(data["severity"])
        data["detection_method"] = DetectionMethod(data["detection_method"])
        data["status"] = IssueStatus(data.get("status", "detected"))
        return cls(**data)


@dataclass
class IssueCandidate:
    """What a detection strategy hands to the merge step."""
    type: str
    severity: Severity
    source: str
    method: DetectionMethod
    evidence: Dict[str, Any] = field(default_factory=dict)
    signature: Dict[str, Any] = field(default_factory=dict)
    detected_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return stable_id(self.type, self.source, self.signature)


# ============================================================================
# SECTION 6: LEARNING RECORDS
# ============================================================================

@dataclass(frozen=True)
class Attempt:
    """One remediation try. Immutable; corrections are new Attempts."""
    id: str
    issue_id: str
    issue_type: str
    method: str
    result: AttemptResult
    started_at: float
    duration_ms: float = 0.0
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["result"] = self.result.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attempt":
        data = dict(data)
        data["result"] = AttemptResult(data["result"])
        return cls(**data)


@dataclass
class Pattern:
    """Aggregate outcome counts for one (issue type or category, method)."""
    key: str
    issue_type: str
    method: str
    success_count: int = 0
    failure_count: int = 0
    partial_count: int = 0
    total_duration_ms: float = 0.0
    success_duration_ms: float = 0.0
    last_updated: float = 0.0

    @property
    def samples(self) -> int:
        return self.success_count + self.failure_count + self.partial_count

    @property
    def weighted_successes(self) -> float:
        # A partial fix counts as half a success
        return self.success_count + 0.5 * self.partial_count

    @property
    def success_rate(self) -> float:
        if self.samples == 0:
            return 0.0
        return self.weighted_successes / self.samples

    @property
    def expected_time_ms(self) -> float:
        if self.success_count:
            return self.success_duration_ms / self.success_count
        if self.samples:
            return self.total_duration_ms / self.samples
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success_rate"] = round(self.success_rate, 4)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pattern":
        data = {k: v for k, v in data.items() if k != "success_rate"}
        return cls(**data)


@dataclass
class MisdiagnosisRecord:
    """
    A method that looked plausible for a symptom, failed, and was later
    shown to be wrong by a different method that succeeded.
    """
    symptom_signature: str
    attempted_method: str
    correct_method: str
    actual_root_cause: str
    time_wasted_ms: float = 0.0
    occurrences: int = 0
    linked_attempt_ids: List[str] = field(default_factory=list)
    last_updated: float = 0.0

    @property
    def key(self) -> tuple:
        return (self.symptom_signature, self.attempted_method)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MisdiagnosisRecord":
        return cls(**data)


@dataclass
class FixSuggestion:
    """One ranked remediation candidate."""
    method: str
    confidence: float
    success_rate: float
    samples: int
    expected_time_ms: float
    warning: Optional[str] = None
    misdiagnosis: Optional[Dict[str, Any]] = None
    source: str = "exact"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["confidence"] = round(self.confidence, 4)
        data["success_rate"] = round(self.success_rate, 4)
        return data
