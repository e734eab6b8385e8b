# ============================================================================
# Pitboss -- State Store (pitboss/core/state_store.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   The single source of truth for everything the engine knows: game
#   state pushed by the game server, health figures pushed by collectors,
#   the engine's own Issue records, ingestion offsets, escalation state.
#
#   Values live under dot-delimited paths ("game.tables.42.pot"). Every
#   write bumps that path's version and leaves a ChangeRecord (digests
#   only, never the payload) in a bounded history, which is what causal
#   analysis walks when it asks "what changed right before this?".
#
# CONCURRENCY:
#   - One writer lock PER PATH. Writes to unrelated paths never wait on
#     each other.
#   - Reads take no lock. A committed StateEntry is frozen and is swapped
#     into the dict in one assignment, so a reader sees either the old
#     entry or the new one, never half of each.
#   - Values are deep-copied on the way in and on the way out, so a
#     caller mutating its own dict cannot change committed state.
#
# PERSISTENCE:
#   persist() writes <file>.tmp, fsyncs, then os.replace()s it over the
#   real file. A crash before the rename leaves the previous file intact.
#   load() never raises: an unreadable or schema-invalid file is moved to
#   <file>.corrupt.<timestamp>, a corruption event is logged, and the
#   store starts empty.
#
#   Other components can attach "tables" (the knowledge base's Attempts,
#   Patterns and MisdiagnosisRecords) that ride along in the same file.
#
# INTERNET ACCESS: NONE
# ============================================================================

from __future__ import annotations

import os
import copy
import json
import time
import queue
import threading
from collections import deque
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable, Tuple

from pydantic import BaseModel, Field, ValidationError

from .config import StateStoreConfig
from .exceptions import PersistenceError, InvalidPathError
from .models import StateEntry, ChangeRecord, digest
from ..monitoring.logger import get_app_logger, get_error_logger


SCHEMA_VERSION = 1

_CLOSED = object()


# ============================================================================
# SECTION 1: PERSISTED DOCUMENT SCHEMA
# ============================================================================

class PersistedEntry(BaseModel):
    value: Any = None
    version: int = Field(..., ge=1)
    updated_at: float = 0.0


class PersistedState(BaseModel):
    """Shape of the state file. Anything else is treated as corrupt."""
    schema_version: int = Field(..., ge=1)
    saved_at: float = 0.0
    entries: Dict[str, PersistedEntry] = Field(default_factory=dict)
    tables: Dict[str, Any] = Field(default_factory=dict)


def _flatten(node: Any, prefix: str, out: Dict[str, Any]) -> None:
    if isinstance(node, dict) and node:
        for key, child in node.items():
            _flatten(child, f"{prefix}.{key}" if prefix else str(key), out)
    elif prefix:
        out[prefix] = node


def _migrate(raw: Any) -> Any:
    """
    Bring an older document up to SCHEMA_VERSION.

    Unversioned documents are the old whole-blob format:
    {"state": {nested...}, "eventLog": [...]}. Their leaves become paths
    at version 1; the event log is not carried over.
    """
    if isinstance(raw, dict) and "schema_version" not in raw and isinstance(raw.get("state"), dict):
        flat: Dict[str, Any] = {}
        _flatten(raw["state"], "", flat)
        saved_at = raw.get("savedAt") or raw.get("saved_at") or 0.0
        if not isinstance(saved_at, (int, float)):
            saved_at = 0.0
        return {
            "schema_version": SCHEMA_VERSION,
            "saved_at": saved_at,
            "entries": {
                p: {"value": v, "version": 1, "updated_at": saved_at}
                for p, v in flat.items()
            },
            "tables": {},
        }
    return raw


def _matches(prefix: str, path: str) -> bool:
    return not prefix or path == prefix or path.startswith(prefix + ".")


# ============================================================================
# SECTION 2: SUBSCRIPTIONS
# ============================================================================

class Subscription:
    """
    A stream of ChangeRecords for one path prefix.

    Usage:
        sub = store.subscribe("game.tables")
        record = sub.get(timeout=1.0)     # None on timeout
        for record in sub:                # blocks until close()
            ...
        sub.close()
    """

    def __init__(self, store: "StateStore", prefix: str):
        self.prefix = prefix
        self._store = store
        self._queue: "queue.Queue" = queue.Queue()
        self.closed = False

    def matches(self, path: str) -> bool:
        return _matches(self.prefix, path)

    def _push(self, record: ChangeRecord) -> None:
        if not self.closed:
            self._queue.put(record)

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeRecord]:
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        return None if item is _CLOSED else item

    def drain(self) -> List[ChangeRecord]:
        """Everything queued right now, without blocking."""
        items = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return items
            if item is _CLOSED:
                return items
            items.append(item)

    def __iter__(self):
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put(_CLOSED)
        self._store._unsubscribe(self)


# ============================================================================
# SECTION 3: THE STORE
# ============================================================================

class StateStore:
    """
    Versioned key-path store with change history and atomic persistence.

    Usage:
        store = StateStore(config.state_store)
        store.load()
        v = store.set("game.tables.42.pot", 1000)
        store.get("game.tables.42.pot")            # 1000
        store.update("system.counters.bets", lambda n: (n or 0) + 1)
        store.persist()
    """

    def __init__(
        self,
        config: Optional[StateStoreConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or StateStoreConfig()
        self.persist_path = Path(self.config.persist_path)
        self._clock = clock

        self._entries: Dict[str, StateEntry] = {}
        self._path_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        self._history: deque = deque(maxlen=self.config.history_limit)
        self._history_lock = threading.Lock()

        self._subscriptions: List[Subscription] = []
        self._listeners: List[Tuple[str, Callable[[ChangeRecord], None]]] = []
        self._subs_lock = threading.Lock()

        self._tables: Dict[str, Tuple[Callable[[], Any], Callable[[Any], None]]] = {}
        self._pending_tables: Dict[str, Any] = {}
        self._persist_lock = threading.Lock()

        self.persist_count = 0
        self.last_persisted_at: Optional[float] = None
        self.logger = get_app_logger("pitboss.state_store")
        self.error_logger = get_error_logger("pitboss.state_store.errors")

    # ------------------------------------------------------------------
    # Paths and locks
    # ------------------------------------------------------------------

    def validate_path(self, path: str) -> None:
        """Raise InvalidPathError unless path is a well-formed path in a known namespace."""
        if not isinstance(path, str) or not path:
            raise InvalidPathError(path=path)
        segments = path.split(".")
        if any(not s or s != s.strip() for s in segments):
            raise InvalidPathError(path=path)
        namespaces = self.config.namespaces
        if namespaces and segments[0] not in namespaces:
            raise InvalidPathError(
                f"Path {path!r} is outside the known namespaces "
                f"({', '.join(namespaces)}).",
                path=path,
            )

    def _lock_for(self, path: str) -> threading.Lock:
        lock = self._path_locks.get(path)
        if lock is None:
            with self._locks_guard:
                lock = self._path_locks.setdefault(path, threading.Lock())
        return lock

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    def get(self, path: str, default: Any = None) -> Any:
        entry = self._entries.get(path)
        if entry is None:
            return default
        return copy.deepcopy(entry.value)

    def get_entry(self, path: str) -> Optional[StateEntry]:
        return self._entries.get(path)

    def version(self, path: str) -> int:
        entry = self._entries.get(path)
        return entry.version if entry else 0

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(p for p in self._entries.copy() if _matches(prefix, p))

    def snapshot(self, prefix: str = "") -> Dict[str, Any]:
        """Full (or prefix-filtered) state as {path: value}."""
        entries = self._entries.copy()
        return {
            path: copy.deepcopy(entry.value)
            for path, entry in sorted(entries.items())
            if _matches(prefix, path)
        }

    def subtree(self, prefix: str = "") -> Any:
        """
        State under prefix as a nested dict.

        subtree("game.chips") with paths game.chips.total and
        game.chips.by_table.42 gives {"total": ..., "by_table": {"42": ...}}.
        A value stored directly at prefix is the base; deeper paths
        overlay it.
        """
        entries = self._entries.copy()
        base = entries.get(prefix) if prefix else None
        dot = prefix + "." if prefix else ""
        children = sorted(p for p in entries if p.startswith(dot) and p != prefix)

        if base is not None and not children:
            return copy.deepcopy(base.value)

        result: Dict[str, Any] = {}
        if base is not None and isinstance(base.value, dict):
            result.update(copy.deepcopy(base.value))

        # Sorted order puts every parent path before its children
        for path in children:
            parts = path[len(dot):].split(".")
            node = result
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = {}
                    node[part] = child
                node = child
            node[parts[-1]] = copy.deepcopy(entries[path].value)
        return result

    def history(
        self,
        since: Optional[float] = None,
        prefix: str = "",
        limit: Optional[int] = None,
        until: Optional[float] = None,
    ) -> List[ChangeRecord]:
        """ChangeRecords oldest first, optionally filtered."""
        with self._history_lock:
            records = list(self._history)
        out = [
            r for r in records
            if _matches(prefix, r.path)
            and (since is None or r.timestamp >= since)
            and (until is None or r.timestamp <= until)
        ]
        if limit is not None:
            out = out[-limit:]
        return out

    # ------------------------------------------------------------------
    # Writes (single writer per path)
    # ------------------------------------------------------------------

    def set(self, path: str, value: Any, caused_by_issue_id: Optional[str] = None) -> int:
        """Write value at path. Returns the new version."""
        self.validate_path(path)
        stored = copy.deepcopy(value)
        with self._lock_for(path):
            entry, record = self._commit(path, stored, caused_by_issue_id)
        self._notify_listeners(record)
        return entry.version

    def update(
        self,
        path: str,
        fn: Callable[[Any], Any],
        caused_by_issue_id: Optional[str] = None,
    ) -> int:
        """
        Atomic read-modify-write. fn receives a private copy of the current
        value (None if absent) and returns the new value.
        """
        self.validate_path(path)
        with self._lock_for(path):
            current = self._entries.get(path)
            new_value = fn(copy.deepcopy(current.value) if current else None)
            entry, record = self._commit(path, copy.deepcopy(new_value), caused_by_issue_id)
        self._notify_listeners(record)
        return entry.version

    def _commit(
        self,
        path: str,
        stored: Any,
        caused_by_issue_id: Optional[str],
    ) -> Tuple[StateEntry, ChangeRecord]:
        # Caller holds the path lock
        old = self._entries.get(path)
        now = self._clock()
        entry = StateEntry(
            path=path,
            value=stored,
            version=(old.version if old else 0) + 1,
            updated_at=now,
        )
        self._entries[path] = entry
        record = ChangeRecord(
            path=path,
            old_digest=digest(old.value) if old else None,
            new_digest=digest(stored),
            timestamp=now,
            version=entry.version,
            caused_by_issue_id=caused_by_issue_id,
        )
        with self._history_lock:
            self._history.append(record)
        # Queue pushes stay under the path lock so each stream sees one
        # path's changes in commit order
        with self._subs_lock:
            subs = list(self._subscriptions)
        for sub in subs:
            if sub.matches(path):
                sub._push(record)
        return entry, record

    # ------------------------------------------------------------------
    # Subscriptions and listeners
    # ------------------------------------------------------------------

    def subscribe(self, prefix: str = "") -> Subscription:
        sub = Subscription(self, prefix)
        with self._subs_lock:
            self._subscriptions.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._subs_lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def add_listener(
        self,
        callback: Callable[[ChangeRecord], None],
        prefix: str = "",
    ) -> Callable[[], None]:
        """
        Call callback(record) synchronously after every committed write
        under prefix. Returns a function that removes the listener.
        """
        item = (prefix, callback)
        with self._subs_lock:
            self._listeners.append(item)

        def remove() -> None:
            with self._subs_lock:
                if item in self._listeners:
                    self._listeners.remove(item)

        return remove

    def _notify_listeners(self, record: ChangeRecord) -> None:
        with self._subs_lock:
            listeners = list(self._listeners)
        for prefix, callback in listeners:
            if not _matches(prefix, record.path):
                continue
            try:
                callback(record)
            except Exception as e:
                # A broken listener must not fail the writer
                self.error_logger.error(
                    "state_listener_failed",
                    path=record.path,
                    error=f"{type(e).__name__}: {e}",
                )

    # ------------------------------------------------------------------
    # Tables (extra persisted sections owned by other components)
    # ------------------------------------------------------------------

    def attach_table(
        self,
        name: str,
        dump: Callable[[], Any],
        load: Callable[[Any], None],
    ) -> None:
        """
        Persist dump() under tables[name]. If the last load() already read
        a table with this name, load(data) is called right away.
        """
        self._tables[name] = (dump, load)
        if name in self._pending_tables:
            self._load_table(name, load, self._pending_tables.pop(name))

    def _load_table(self, name: str, load: Callable[[Any], None], data: Any) -> None:
        try:
            load(data)
        except (TypeError, ValueError, KeyError) as e:
            self.error_logger.error(
                "state_table_invalid",
                table=name,
                error=f"{type(e).__name__}: {e}"[:500],
            )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_document(self) -> Dict[str, Any]:
        entries = self._entries.copy()
        return {
            "schema_version": SCHEMA_VERSION,
            "saved_at": self._clock(),
            "entries": {p: e.to_dict() for p, e in sorted(entries.items())},
            "tables": {name: dump() for name, (dump, _load) in self._tables.items()},
        }

    def persist(self) -> Path:
        """
        Atomically write the state file. Safe to call at any time, from any
        thread; concurrent calls are serialized.

        Raises PersistenceError if the file cannot be written. The previous
        file is left untouched in that case.
        """
        path = self.persist_path
        tmp = path.with_name(path.name + ".tmp")
        with self._persist_lock:
            document = self.to_document()
            try:
                payload = json.dumps(document, default=str)
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceError(
                    f"Could not write state file: {type(e).__name__}: {e}",
                    path=str(path),
                ) from e
            self.persist_count += 1
            self.last_persisted_at = document["saved_at"]

        self.logger.debug(
            "state_persisted",
            path=str(path),
            entries=len(document["entries"]),
            tables=sorted(document["tables"]),
        )
        return path

    def load(self) -> bool:
        """
        Replace in-memory state with the persisted file.

        Returns True if a valid file was loaded. Never raises: a missing
        file means a fresh start, a bad file is quarantined.
        """
        path = self.persist_path
        if not path.exists():
            self.logger.info("state_file_missing", path=str(path))
            return False

        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            document = PersistedState.model_validate(_migrate(raw))
        except (OSError, UnicodeDecodeError, ValueError, ValidationError) as e:
            self._quarantine(path, e)
            self._reset()
            return False

        if document.schema_version > SCHEMA_VERSION:
            self.logger.warning(
                "state_schema_newer",
                path=str(path),
                found=document.schema_version,
                supported=SCHEMA_VERSION,
            )

        entries: Dict[str, StateEntry] = {}
        for p, e in document.entries.items():
            try:
                self.validate_path(p)
            except InvalidPathError:
                self.logger.warning("state_entry_skipped", path=p)
                continue
            entries[p] = StateEntry(path=p, value=e.value, version=e.version, updated_at=e.updated_at)

        with self._locks_guard:
            self._entries = entries
        with self._history_lock:
            self._history.clear()

        self._pending_tables = dict(document.tables)
        for name, (_dump, load) in self._tables.items():
            if name in self._pending_tables:
                self._load_table(name, load, self._pending_tables.pop(name))

        self.logger.info(
            "state_loaded",
            path=str(path),
            entries=len(entries),
            tables=sorted(document.tables),
        )
        return True

    def _quarantine(self, path: Path, error: Exception) -> None:
        stamp = time.strftime("%Y%m%d-%H%M%S")
        backup = path.with_name(f"{path.name}.corrupt.{stamp}")
        try:
            os.replace(path, backup)
        except OSError as move_error:
            backup = None
            self.error_logger.error(
                "state_backup_failed",
                path=str(path),
                error=str(move_error),
            )
        self.error_logger.error(
            "state_file_corrupt",
            path=str(path),
            backup=str(backup) if backup else None,
            error=f"{type(error).__name__}: {error}"[:500],
        )

    def _reset(self) -> None:
        with self._locks_guard:
            self._entries = {}
        with self._history_lock:
            self._history.clear()
        self._pending_tables = {}

    def __len__(self) -> int:
        return len(self._entries)
