# ============================================================================
# Pitboss -- Log Ingestor (pitboss/core/log_ingestor.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Turns raw log text into structured LogEvents the detector can reason
#   about:
#
#     "[2026-10-01T12:00:00Z] [api] [ERROR] connection failed player=p7"
#        -> LogEvent(subsystem="server", level="ERROR",
#                    fields={"player": "p7", "player_id": "p7", ...})
#
# PIPELINE FOR ONE LINE:
#   1. Blank?                 -> skipped (counted)
#   2. Matches noise filter?  -> skipped (counted as filtered)
#   3. Strict parse: line shape, level, subsystem, strict extractors
#   4. Strict parse failed?   -> up to N relaxed re-parses (control chars
#                                stripped, truncated, relaxed extractors)
#   5. Still failing?         -> dropped and counted. Never an exception
#                                to the caller.
#
# LINE SHAPES UNDERSTOOD:
#   [ts] [component] [LEVEL] message
#   [ts] [component] message
#   2026-10-01T12:00:00Z LEVEL message
#   LEVEL message
#   [component] message
#   message
#
# FILE TAILING:
#   LogTailer remembers how far it has read each source in the state store
#   (ingest.offsets.<source>), so a restart picks up where it left off
#   instead of re-reading the whole backlog. Only complete lines are
#   consumed; a half-written last line waits for its newline. A file that
#   shrank or changed inode was rotated, and reading restarts at 0.
#
# INTERNET ACCESS: NONE
# ============================================================================

from __future__ import annotations

import os
import re
import json
import time
import threading
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Callable, Iterable, Tuple

from .config import IngestConfig
from .exceptions import IngestionError
from .models import LogEvent
from .state_store import StateStore
from ..monitoring.flight_recorder import FlightRecorder
from ..monitoring.logger import get_app_logger


# ============================================================================
# SECTION 1: LINE SHAPES, LEVELS, SUBSYSTEMS
# ============================================================================

LEVELS = {"ERROR", "ERR", "WARN", "WARNING", "INFO", "DEBUG", "TRACE", "FATAL", "CRITICAL"}

LEVEL_ALIASES = {"ERR": "ERROR", "WARNING": "WARN", "FATAL": "CRITICAL"}

_BRACKETED_FULL = re.compile(
    r"^\[(?P<ts>[^\]]+)\]\s*\[(?P<component>[^\]]+)\]\s*\[(?P<level>[A-Za-z]+)\]\s*(?P<msg>.*)$"
)
_BRACKETED_TS_COMPONENT = re.compile(
    r"^\[(?P<ts>[^\]]+)\]\s*\[(?P<component>[^\]]+)\]\s*(?P<msg>.*)$"
)
_ISO_TS_LEVEL = re.compile(
    r"^(?P<ts>\d{4}-\d{2}-\d{2}[T ][0-9:.]+(?:Z|[+-]\d{2}:?\d{2})?)\s+"
    r"(?P<level>[A-Za-z]+)\b[:\s]*(?P<msg>.*)$"
)
_LEVEL_FIRST = re.compile(
    r"^(?P<level>ERROR|ERR|WARN|WARNING|INFO|DEBUG|TRACE|FATAL|CRITICAL)\b[:\s]*(?P<msg>.*)$"
)
_COMPONENT_FIRST = re.compile(r"^\[(?P<component>[^\]]+)\]\s*(?P<msg>.*)$")

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

# Subsystem buckets, checked in order against the component, then the message
SUBSYSTEM_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("server", ("server", "http", "api", "socket", "websocket")),
    ("client", ("unity", "client", "ui", "frontend")),
    ("database", ("database", "mysql", "postgres", "db", "sql")),
    ("monitoring", ("monitor", "monitoring", "investigation", "pitboss")),
]
DEFAULT_SUBSYSTEM = "game"


def infer_level(message: str) -> str:
    lower = message.lower()
    if re.search(r"\b(error|exception|failed|failure|fatal)\b", lower):
        return "ERROR"
    if re.search(r"\bwarn(ing)?\b", lower):
        return "WARN"
    if re.search(r"\bdebug\b", lower):
        return "DEBUG"
    return "INFO"


def _bucket(text: str) -> Optional[str]:
    words = set(re.findall(r"[a-z]+", text.lower()))
    for subsystem, keywords in SUBSYSTEM_KEYWORDS:
        if words.intersection(keywords):
            return subsystem
    return None


def classify_subsystem(component: str, message: str) -> str:
    # An explicit component decides on its own; the message is only
    # consulted when the line has none
    if component:
        return _bucket(component) or DEFAULT_SUBSYSTEM
    return _bucket(message) or DEFAULT_SUBSYSTEM


def parse_timestamp(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    text = text.strip()
    try:
        return float(text)
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def message_signature(message: str) -> str:
    """Message with volatile parts (ids, numbers, quoted text) masked."""
    sig = re.sub(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", "<uuid>", message, flags=re.I)
    sig = re.sub(r"(['\"]).*?\1", "<str>", sig)
    sig = re.sub(r"\d+(\.\d+)?", "#", sig)
    return re.sub(r"\s+", " ", sig).strip()


# ============================================================================
# SECTION 2: EXTRACTORS
# ============================================================================
#
# An extractor takes the message text and returns a dict of fields.
# Strict extractors run on every line; relaxed ones only on re-parse.
# ============================================================================

def _coerce(value: str) -> Any:
    value = value.strip().strip("\"'")
    if re.fullmatch(r"-?\d+", value):
        try:
            return int(value)
        except ValueError:
            return value
    if re.fullmatch(r"-?\d+\.\d+", value):
        return float(value)
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


_KV = re.compile(r"\b([A-Za-z_][\w.-]*)=(\"[^\"]*\"|'[^']*'|[^\s,;]+)")


def extract_key_values(message: str) -> Dict[str, Any]:
    return {k.lower(): _coerce(v) for k, v in _KV.findall(message)}


_IDENTIFIER = re.compile(
    r"\b(table|player|user|session|hand|game)[ _-]?(?:id)?\s*[:#=]\s*([A-Za-z0-9_-]{1,64})",
    re.IGNORECASE,
)


def extract_identifiers(message: str) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for kind, value in _IDENTIFIER.findall(message):
        fields.setdefault(f"{kind.lower()}_id", _coerce(value))
    return fields


_ERROR_CODE = re.compile(r"\b(E\d{3,5}|ERR[_-]?\d{2,5}|[A-Z][A-Z0-9]{2,}(?:_[A-Z0-9]+)+)\b")


def extract_error_code(message: str) -> Dict[str, Any]:
    match = _ERROR_CODE.search(message)
    return {"error_code": match.group(1)} if match else {}


_DURATION = re.compile(r"(?<![\w.])(\d+(?:\.\d+)?)\s?(ms|s|sec|secs|seconds)\b", re.IGNORECASE)
_PERCENT = re.compile(r"(?<![\w.])(\d+(?:\.\d+)?)\s?%")
_NUMBER = re.compile(r"(?<![\w.])-?\d+(?:\.\d+)?(?![\w.])")


def extract_numbers(message: str) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    duration = _DURATION.search(message)
    if duration:
        value = float(duration.group(1))
        if duration.group(2).lower() != "ms":
            value *= 1000.0
        fields["duration_ms"] = value
    percent = _PERCENT.search(message)
    if percent:
        fields["percent"] = float(percent.group(1))
    numbers = [_coerce(n) for n in _NUMBER.findall(message)]
    if numbers:
        fields["numbers"] = numbers[:20]
    return fields


_OPERATION = re.compile(r"\b(bet|call|raise|fold|check|all[- ]in)\b", re.IGNORECASE)
_PHASE = re.compile(r"\b(waiting|preflop|flop|turn|river|showdown)\b", re.IGNORECASE)
_CHIPS = re.compile(r"(\d+)\s*chips?\b", re.IGNORECASE)


def extract_game_terms(message: str) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    op = _OPERATION.search(message)
    if op:
        fields["operation"] = op.group(1).lower().replace(" ", "-")
    phase = _PHASE.search(message)
    if phase:
        fields["phase"] = phase.group(1).lower()
    chips = _CHIPS.search(message)
    if chips:
        fields["chips"] = int(chips.group(1))
    return fields


_LOOSE_KV = re.compile(r"([A-Za-z_][\w.-]*)\s*[:=]\s*([^\s,;]+)")


def extract_loose_key_values(message: str) -> Dict[str, Any]:
    """Relaxed: also accepts 'key: value' and spaces around '='."""
    return {k.lower(): _coerce(v) for k, v in _LOOSE_KV.findall(message)}


def extract_json_payload(message: str) -> Dict[str, Any]:
    """Relaxed: the first {...} block, if it is valid JSON."""
    start = message.find("{")
    end = message.rfind("}")
    if start < 0 or end <= start:
        return {}
    try:
        payload = json.loads(message[start:end + 1])
    except ValueError:
        return {}
    return {str(k).lower(): v for k, v in payload.items()} if isinstance(payload, dict) else {}


DEFAULT_EXTRACTORS: List[Tuple[str, Callable[[str], Dict[str, Any]], bool]] = [
    ("key_values", extract_key_values, False),
    ("identifiers", extract_identifiers, False),
    ("error_code", extract_error_code, False),
    ("numbers", extract_numbers, False),
    ("game_terms", extract_game_terms, False),
    ("loose_key_values", extract_loose_key_values, True),
    ("json_payload", extract_json_payload, True),
]


# ============================================================================
# SECTION 3: THE INGESTOR
# ============================================================================

class LogIngestor:
    """
    Structures raw log lines. Thread-safe; one instance serves all sources.

    Usage:
        ingestor = LogIngestor(config.ingest)
        event = ingestor.ingest("ERROR pot_mismatch table=42", source="game")
        if event:
            detector.process_event(event)
    """

    def __init__(
        self,
        config: Optional[IngestConfig] = None,
        recorder: Optional[FlightRecorder] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or IngestConfig()
        self.recorder = recorder or FlightRecorder(self.config.recent_events)
        self._clock = clock
        self._noise = [re.compile(p) for p in self.config.noise_patterns]
        self._extractors: List[Tuple[str, Callable[[str], Dict[str, Any]], bool]] = list(DEFAULT_EXTRACTORS)
        self._stats = {
            "processed": 0,
            "events": 0,
            "blank": 0,
            "filtered": 0,
            "dropped": 0,
            "relaxed": 0,
        }
        self._stats_lock = threading.Lock()
        self.logger = get_app_logger("pitboss.log_ingestor")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_extractor(
        self,
        name: str,
        fn: Callable[[str], Dict[str, Any]],
        relaxed: bool = False,
    ) -> None:
        """Add an extractor. A name already registered is replaced."""
        self._extractors = [e for e in self._extractors if e[0] != name]
        self._extractors.append((name, fn, relaxed))

    def add_noise_pattern(self, pattern: str) -> None:
        self._noise.append(re.compile(pattern))

    def is_noise(self, line: str) -> bool:
        return any(p.search(line) for p in self._noise)

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def ingest(self, raw_line: str, source: str = "default") -> Optional[LogEvent]:
        """
        Structure one line. Returns None for blank, noise, or malformed
        lines; never raises.
        """
        self._count("processed")
        if isinstance(raw_line, bytes):
            raw_line = raw_line.decode("utf-8", errors="replace")
        line = (raw_line or "").rstrip("\r\n")
        if not line.strip():
            self._count("blank")
            return None
        if self.is_noise(line):
            self._count("filtered")
            return None

        event = None
        attempts = 1 + max(0, self.config.max_reparse_attempts)
        for attempt in range(attempts):
            try:
                if attempt == 0:
                    event = self._parse(line, source, relaxed=False)
                else:
                    event = self._parse(self._relax(line, attempt), source, relaxed=True)
                break
            except IngestionError:
                continue

        if event is None:
            self._count("dropped")
            self.logger.debug("line_dropped", source=source, preview=line[:80])
            return None

        if event.relaxed:
            self._count("relaxed")
        self._count("events")
        self.recorder.record(event)
        return event

    def ingest_lines(self, lines: Iterable[str], source: str = "default") -> List[LogEvent]:
        """Structure many lines (a pipe or a network feed)."""
        events = []
        for line in lines:
            event = self.ingest(line, source)
            if event is not None:
                events.append(event)
        return events

    def _relax(self, line: str, attempt: int) -> str:
        cleaned = _CONTROL_CHARS.sub(" ", line).replace("\ufffd", "")
        if attempt >= 2:
            cleaned = "".join(ch for ch in cleaned if ch.isprintable())
        return cleaned[: self.config.max_line_length].strip()

    def _looks_malformed(self, line: str) -> bool:
        if len(line) > self.config.max_line_length:
            return True
        if _CONTROL_CHARS.search(line):
            return True
        bad = line.count("\ufffd")
        if bad and bad * 4 >= len(line):
            return True
        return sum(ch.isalnum() for ch in line) < 2

    def _parse(self, line: str, source: str, relaxed: bool) -> LogEvent:
        if self._looks_malformed(line):
            raise IngestionError(line=line)

        ts_text, component, level, message = self._split(line)
        if not message.strip():
            raise IngestionError(line=line)

        fields: Dict[str, Any] = {}
        for name, fn, is_relaxed in self._extractors:
            if is_relaxed and not relaxed:
                continue
            try:
                extracted = fn(message) or {}
            except Exception as e:
                if not relaxed:
                    raise IngestionError(
                        f"Extractor '{name}' failed: {type(e).__name__}: {e}", line=line
                    ) from e
                # Relaxed pass: skip only the broken extractor
                continue
            for key, value in extracted.items():
                fields.setdefault(key, value)

        if component:
            fields.setdefault("component", component)

        timestamp = parse_timestamp(ts_text)
        return LogEvent(
            source=source,
            subsystem=classify_subsystem(component, message),
            level=level or infer_level(message),
            message=message.strip(),
            timestamp=timestamp if timestamp is not None else self._clock(),
            fields=fields,
            signature=message_signature(message),
            raw=line,
            relaxed=relaxed,
        )

    @staticmethod
    def _split(line: str) -> Tuple[Optional[str], str, Optional[str], str]:
        """Return (timestamp_text, component, level, message)."""
        stripped = line.strip()

        m = _BRACKETED_FULL.match(stripped)
        if m and m.group("level").upper() in LEVELS:
            level = m.group("level").upper()
            return m.group("ts"), m.group("component").strip(), LEVEL_ALIASES.get(level, level), m.group("msg")

        m = _BRACKETED_TS_COMPONENT.match(stripped)
        if m and parse_timestamp(m.group("ts")) is not None:
            return m.group("ts"), m.group("component").strip(), None, m.group("msg")

        m = _ISO_TS_LEVEL.match(stripped)
        if m and m.group("level").upper() in LEVELS:
            level = m.group("level").upper()
            return m.group("ts"), "", LEVEL_ALIASES.get(level, level), m.group("msg")

        m = _LEVEL_FIRST.match(stripped)
        if m:
            level = m.group("level").upper()
            return None, "", LEVEL_ALIASES.get(level, level), m.group("msg")

        m = _COMPONENT_FIRST.match(stripped)
        if m:
            return None, m.group("component").strip(), None, m.group("msg")

        return None, "", None, stripped

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)


# ============================================================================
# SECTION 4: FILE TAILING WITH PERSISTED OFFSETS
# ============================================================================

def offset_path_for(source: str) -> str:
    return "ingest.offsets." + (re.sub(r"[^A-Za-z0-9_-]", "_", source) or "default")


class LogTailer:
    """
    Reads new complete lines from one log file.

    Usage:
        tailer = LogTailer("/var/log/game/server.log", "server", ingestor, store)
        events = tailer.poll()      # only lines written since the last poll
    """

    def __init__(
        self,
        path: str,
        source: str,
        ingestor: LogIngestor,
        store: StateStore,
        chunk_bytes: Optional[int] = None,
        start_at_end: Optional[bool] = None,
    ):
        self.path = path
        self.source = source
        self.ingestor = ingestor
        self.store = store
        self.chunk_bytes = chunk_bytes or ingestor.config.read_chunk_bytes
        self.start_at_end = ingestor.config.start_at_end if start_at_end is None else start_at_end
        self.offset_path = offset_path_for(source)
        self.logger = get_app_logger("pitboss.log_tailer")

    @property
    def offset(self) -> int:
        saved = self.store.get(self.offset_path) or {}
        return int(saved.get("offset", 0))

    def _save_offset(self, offset: int, inode: int) -> None:
        self.store.set(self.offset_path, {
            "offset": offset,
            "inode": inode,
            "path": self.path,
            "updated_at": time.time(),
        })

    def poll(self) -> List[LogEvent]:
        """Ingest every complete line appended since the saved offset."""
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return []

        saved = self.store.get(self.offset_path)
        if saved is None:
            offset = st.st_size if self.start_at_end else 0
            if offset:
                self._save_offset(offset, st.st_ino)
                self.logger.info("tail_started_at_end", source=self.source, offset=offset)
        else:
            offset = int(saved.get("offset", 0))
            if st.st_size < offset or (saved.get("inode") not in (None, st.st_ino)):
                self.logger.info(
                    "log_rotated",
                    source=self.source,
                    old_offset=offset,
                    size=st.st_size,
                )
                offset = 0

        if st.st_size <= offset:
            if saved is not None and offset != int(saved.get("offset", 0)):
                self._save_offset(offset, st.st_ino)
            return []

        events: List[LogEvent] = []
        with open(self.path, "rb") as f:
            f.seek(offset)
            while True:
                chunk = f.read(self.chunk_bytes)
                if not chunk:
                    break
                last_newline = chunk.rfind(b"\n")
                if last_newline < 0:
                    if len(chunk) < self.chunk_bytes:
                        # Half-written last line; wait for its newline
                        break
                    # A single line longer than a chunk is consumed whole
                    # and left to the malformed-line handling
                    consumed = chunk
                else:
                    consumed = chunk[:last_newline + 1]
                for raw in consumed.split(b"\n"):
                    if not raw:
                        continue
                    line = raw.decode("utf-8", errors="replace").rstrip("\r")
                    event = self.ingestor.ingest(line, self.source)
                    if event is not None:
                        events.append(event)
                offset += len(consumed)
                self._save_offset(offset, st.st_ino)
                f.seek(offset)
        return events
