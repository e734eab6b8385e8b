# ============================================================================
# Pitboss -- Issue Records (pitboss/core/issues.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Reads and writes canonical Issue records in the state store:
#
#     issues.records.<id>    -- the Issue itself (Issue.to_dict())
#     issues.index.<key>     -- which Issue id currently owns a signature
#                               key, and how many times it has recurred
#
#   Every modification goes through StateStore.update(), so a merge
#   bumping occurrence_count and a decision changing status can never
#   overwrite each other: both are read-modify-write on the same path
#   under that path's writer lock.
#
# LIFECYCLE RULES:
#   transition() enforces ALLOWED_TRANSITIONS from models.py and raises
#   InvalidTransitionError for anything else (e.g. active -> detected,
#   or anything out of resolved).
# ============================================================================

from __future__ import annotations

from typing import Optional, List, Callable, Iterable

from .exceptions import UnknownIssueError, InvalidTransitionError
from .models import Issue, IssueStatus, ALLOWED_TRANSITIONS
from .state_store import StateStore


RECORDS_PREFIX = "issues.records"
INDEX_PREFIX = "issues.index"


class IssueRepository:
    """Typed access to Issue records stored under issues.*"""

    def __init__(self, store: StateStore):
        self.store = store

    @staticmethod
    def record_path(issue_id: str) -> str:
        return f"{RECORDS_PREFIX}.{issue_id}"

    @staticmethod
    def index_path(key: str) -> str:
        return f"{INDEX_PREFIX}.{key}"

    def get(self, issue_id: str) -> Optional[Issue]:
        if not issue_id or "." in issue_id:
            return None
        data = self.store.get(self.record_path(issue_id))
        return Issue.from_dict(data) if data else None

    def require(self, issue_id: str) -> Issue:
        issue = self.get(issue_id)
        if issue is None:
            raise UnknownIssueError(issue_id)
        return issue

    def create(self, issue: Issue) -> Issue:
        self.store.set(self.record_path(issue.id), issue.to_dict())
        return issue

    def modify(
        self,
        issue_id: str,
        fn: Callable[[Issue], None],
        caused_by_issue_id: Optional[str] = None,
    ) -> Issue:
        """Apply fn to the Issue atomically and return the stored result."""
        if not issue_id or "." in issue_id:
            raise UnknownIssueError(issue_id)
        result = {}

        def apply(data):
            if not data:
                raise UnknownIssueError(issue_id)
            issue = Issue.from_dict(data)
            fn(issue)
            result["issue"] = issue
            return issue.to_dict()

        self.store.update(self.record_path(issue_id), apply, caused_by_issue_id=caused_by_issue_id)
        return result["issue"]

    def transition(
        self,
        issue_id: str,
        target: IssueStatus,
        resolution: Optional[str] = None,
        at: Optional[float] = None,
    ) -> Issue:
        """Move an Issue to target status, enforcing the lifecycle."""

        def apply(issue: Issue) -> None:
            if issue.status == target:
                return
            if target not in ALLOWED_TRANSITIONS[issue.status]:
                raise InvalidTransitionError(issue_id, issue.status.value, target.value)
            issue.status = target
            if target == IssueStatus.RESOLVED:
                issue.resolved_at = at
                issue.resolution = resolution

        return self.modify(issue_id, apply, caused_by_issue_id=issue_id)

    def all(self, statuses: Optional[Iterable[IssueStatus]] = None) -> List[Issue]:
        wanted = set(statuses) if statuses is not None else None
        issues = []
        for value in self.store.snapshot(RECORDS_PREFIX).values():
            if not value:
                continue
            issue = Issue.from_dict(value)
            if wanted is None or issue.status in wanted:
                issues.append(issue)
        issues.sort(key=lambda i: i.first_seen)
        return issues

    def open_issues(self) -> List[Issue]:
        return [i for i in self.all() if i.is_open]
