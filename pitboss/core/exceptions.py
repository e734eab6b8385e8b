# ===========================================================================
# Pitboss -- TYPED EXCEPTIONS
# ===========================================================================
# FILE: pitboss/core/exceptions.py
#
# WHAT THIS IS:
#   Custom error types for Pitboss. Each one carries a machine-readable
#   error code and a human-readable fix suggestion, so a failure can be
#   logged, shown on a dashboard, or returned by the query API without
#   anyone having to read a stack trace.
#
# HOW IT'S USED:
#   Most of these never escape the engine. The ingestor swallows
#   IngestionError after counting it, the state store turns a bad state
#   file into a fresh start, and the detector turns InvariantViolation
#   into an Issue. The ones that DO reach callers (UnknownIssueError,
#   InvalidTransitionError) are caught by the QueryFacade and converted
#   into structured error objects:
#
#     try:
#         facade.engine.decisions.start_attempt(issue_id, "reset_pot")
#     except UnknownIssueError as e:
#         return {"code": e.error_code, "message": str(e)}
#
# HIERARCHY:
#   All exceptions inherit from PitbossError, so "except PitbossError"
#   catches everything this package raises on purpose.
# ===========================================================================

from __future__ import annotations


class PitbossError(Exception):
    """
    Base class for all Pitboss errors.

    Attributes:
        fix_suggestion (str | None): Human-readable fix instruction.
        error_code (str | None): Machine-readable code like "PER-001".
    """

    def __init__(self, message, fix_suggestion=None, error_code=None):
        self.fix_suggestion = fix_suggestion
        self.error_code = error_code
        super().__init__(message)

    def to_dict(self):
        """Convert to dictionary for JSON logging or API responses."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": str(self),
            "fix_suggestion": self.fix_suggestion,
        }


# ---------------------------------------------------------------------------
# INGESTION ERRORS (ING-xxx)
# ---------------------------------------------------------------------------

class IngestionError(PitbossError):
    """
    A log line could not be structured, even with relaxed extractors.

    Never fatal. The ingestor counts it and drops the line.
    """
    def __init__(self, message=None, line=None):
        detail = f" Line: {line[:120]!r}" if line else ""
        super().__init__(
            message or f"Log line could not be parsed.{detail}",
            fix_suggestion=(
                "Check that the log source writes newline-delimited text. "
                "Register an extractor if the format is new."
            ),
            error_code="ING-001",
        )


# ---------------------------------------------------------------------------
# STATE / PERSISTENCE ERRORS (STA-xxx, PER-xxx)
# ---------------------------------------------------------------------------

class PersistenceError(PitbossError):
    """
    The state file could not be written or read.

    WHEN YOU'LL SEE THIS:
      - Disk full or read-only filesystem during a persistence cycle
      - State file truncated or hand-edited into invalid JSON
    A failed read backs up the file and starts empty; a failed write is
    logged by the persistence worker and retried on the next cycle.
    """
    def __init__(self, message=None, path=None):
        detail = f" Path: {path}" if path else ""
        super().__init__(
            message or f"State persistence failed.{detail}",
            fix_suggestion=(
                "Check free disk space and write permissions on the "
                "state_store.persist_path directory."
            ),
            error_code="PER-001",
        )


class InvalidPathError(PitbossError):
    """A StateStore path is empty, malformed, or outside known namespaces."""
    def __init__(self, message=None, path=None):
        super().__init__(
            message or f"Invalid state path: {path!r}",
            fix_suggestion=(
                "Use dot-delimited paths rooted in a configured namespace, "
                "e.g. 'game.tables.42.pot'."
            ),
            error_code="STA-001",
        )


# ---------------------------------------------------------------------------
# DETECTION ERRORS (DET-xxx)
# ---------------------------------------------------------------------------

class InvariantViolation(PitbossError):
    """
    Raised by an invariant predicate that found the state inconsistent.

    The detector catches it and records an Issue. The evidence dict is
    copied into the Issue as-is.
    """
    def __init__(self, message=None, evidence=None):
        self.evidence = dict(evidence or {})
        super().__init__(
            message or "State invariant violated.",
            fix_suggestion="Inspect the Issue evidence for the offending paths.",
            error_code="DET-001",
        )


class StrategyError(PitbossError):
    """A detection strategy raised. Wraps the underlying error for self-monitoring."""
    def __init__(self, strategy, cause):
        self.strategy = strategy
        self.cause = cause
        super().__init__(
            f"Detection strategy '{strategy}' failed: "
            f"{type(cause).__name__}: {cause}",
            fix_suggestion=(
                "The other strategies kept running. Check the error log "
                "for the stack trace of this strategy."
            ),
            error_code="DET-002",
        )


# ---------------------------------------------------------------------------
# KNOWLEDGE / DECISION ERRORS (KNB-xxx, DEC-xxx)
# ---------------------------------------------------------------------------

class UnknownIssueError(PitbossError):
    """No Issue with the given id exists."""
    def __init__(self, issue_id=None):
        self.issue_id = issue_id
        super().__init__(
            f"Unknown issue id: {issue_id!r}",
            fix_suggestion="List active issues first and use one of their ids.",
            error_code="KNB-001",
        )


class InvalidTransitionError(PitbossError):
    """An Issue status change that the lifecycle does not allow."""
    def __init__(self, issue_id=None, current=None, target=None):
        self.issue_id = issue_id
        super().__init__(
            f"Issue {issue_id} cannot move from '{current}' to '{target}'.",
            fix_suggestion=(
                "Resolved issues are final. Record an Attempt to move an "
                "active issue forward."
            ),
            error_code="DEC-001",
        )


class AttemptTimeout(PitbossError):
    """An in-flight Attempt produced no outcome before the timeout."""
    def __init__(self, issue_id=None, method=None, waited_seconds=0.0):
        self.issue_id = issue_id
        self.method = method
        super().__init__(
            f"Attempt '{method}' on issue {issue_id} timed out after "
            f"{waited_seconds:.0f}s and was marked abandoned.",
            fix_suggestion=(
                "Report remediation outcomes promptly, or raise "
                "decision.attempt_timeout_seconds for slow fixes."
            ),
            error_code="DEC-002",
        )


# ---------------------------------------------------------------------------
# QUERY ERRORS (QRY-xxx)
# ---------------------------------------------------------------------------

class QueryError(PitbossError):
    """A query could not be understood or answered."""
    def __init__(self, message=None):
        super().__init__(
            message or "Query not understood.",
            fix_suggestion=(
                "Ask for 'active issues', 'fixes for <id>', "
                "'what changed before <id>', or pass a structured dict."
            ),
            error_code="QRY-001",
        )
