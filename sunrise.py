#!/usr/bin/env python3
"""Sunrise — a daily journal editor, one buffer per calendar day."""

from __future__ import annotations

import argparse
import asyncio
import datetime
import enum
import logging
import os
import re
import string
import tempfile
import threading
import time
import webbrowser
from dataclasses import dataclass, field
from importlib import metadata
from pathlib import Path
from typing import Callable, Iterable, NamedTuple, Optional

import platformdirs
from prompt_toolkit import Application
from prompt_toolkit.application.current import get_app
from prompt_toolkit.document import Document
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout.containers import HSplit, VSplit, Window, WindowAlign
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.layout import Layout
from prompt_toolkit.lexers import Lexer as PtLexer
from prompt_toolkit.styles import Style as PtStyle
from prompt_toolkit.widgets import TextArea

logger = logging.getLogger(__name__)

APP_NAME = "sunrise"
APP_AUTHOR = "marschium"

AUTOSAVE_DELAY = 5.0    # seconds after the last edit
FALLBACK_DAYS = 14      # how far back a new day looks for content to inherit
TICK_INTERVAL = 0.5     # seconds between autosave checks / repaints

DEMO_TEXT = """# Header
[ ] Something todo
[/] Something done
[x] Something cancelled
`monospaced something`
regular text
https://google.com/about.html?arg=hello%20world

"""

# ════════════════════════════════════════════════════════════════════════
#  Buffer Identifier
# ════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, order=True)
class BufferId:
    """Identifies one day's buffer by its local calendar date."""
    date: datetime.date

    @classmethod
    def today(cls) -> BufferId:
        return cls(datetime.date.today())

    @classmethod
    def yesterday(cls) -> BufferId:
        return cls.today().prev()

    @classmethod
    def from_parts(cls, year: int, month: int, day: int) -> Optional[BufferId]:
        """Build an id from numeric parts, or None if they are not a real date."""
        try:
            return cls(datetime.date(year, month, day))
        except (ValueError, OverflowError):
            return None

    def prev(self) -> BufferId:
        return BufferId(self.date - datetime.timedelta(days=1))

    def filepath(self) -> Path:
        """Relative storage path: unpadded ``year/month/day``."""
        d = self.date
        return Path(str(d.year), str(d.month), str(d.day))

    def __str__(self) -> str:
        return self.date.isoformat()


# ════════════════════════════════════════════════════════════════════════
#  Journal Store
# ════════════════════════════════════════════════════════════════════════


class ErrorKind(enum.Enum):
    NOT_FOUND = "not found"
    PERMISSION_DENIED = "permission denied"
    IO_FAILURE = "i/o failure"


class StoreError(Exception):
    """A load or save against the journal store failed."""

    def __init__(self, kind: ErrorKind, path: Path, detail: str = ""):
        self.kind = kind
        self.path = path
        self.detail = detail
        message = f"{kind.value}: {path}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)

    @classmethod
    def from_exception(cls, exc: Exception, path: Path) -> StoreError:
        if isinstance(exc, FileNotFoundError):
            kind = ErrorKind.NOT_FOUND
        elif isinstance(exc, PermissionError):
            kind = ErrorKind.PERMISSION_DENIED
        else:
            kind = ErrorKind.IO_FAILURE
        detail = exc.strerror if isinstance(exc, OSError) and exc.strerror else str(exc)
        return cls(kind, path, detail)


@dataclass
class TodayResolution:
    """Outcome of the first access to a day's buffer."""
    buffer_id: BufferId
    text: str = ""
    seeded_from: Optional[BufferId] = None
    persisted: bool = False     # today's file exists on disk afterwards
    errors: list[StoreError] = field(default_factory=list)

    @property
    def load_failed(self) -> bool:
        return self.persisted and self.seeded_from is None and bool(self.errors)


class JournalStore:
    """One UTF-8 file per day under ``root/{year}/{month}/{day}``."""

    def __init__(self, root: Path | str):
        self.root = Path(root).expanduser()

    def path_for(self, buffer_id: BufferId) -> Path:
        return self.root / buffer_id.filepath()

    def has(self, buffer_id: BufferId) -> bool:
        return self.path_for(buffer_id).exists()

    def load(self, buffer_id: BufferId) -> str:
        path = self.path_for(buffer_id)
        try:
            return path.read_bytes().decode("utf-8")
        except (OSError, UnicodeError) as exc:
            raise StoreError.from_exception(exc, path) from exc

    def save(self, buffer_id: BufferId, text: str) -> None:
        """Write the whole buffer, replacing whatever was there.

        Bytes are written verbatim (no newline translation). A crash
        mid-write can leave a truncated file.
        """
        path = self.path_for(buffer_id)
        try:
            data = text.encode("utf-8")
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except (OSError, UnicodeError) as exc:
            raise StoreError.from_exception(exc, path) from exc
        logger.debug("Saved %s (%d bytes)", path, len(data))

    def find_previous(self, buffer_id: BufferId,
                      limit: int = FALLBACK_DAYS) -> Optional[BufferId]:
        """Nearest existing day strictly before ``buffer_id``, at most ``limit`` back."""
        candidate = buffer_id
        for _ in range(limit):
            candidate = candidate.prev()
            if self.has(candidate):
                return candidate
        return None

    def resolve_today(self, today: Optional[BufferId] = None) -> TodayResolution:
        """Load today's buffer, seeding it from a recent day if it does not exist.

        Failures are logged and collected on the result rather than raised;
        the caller decides how to surface them.
        """
        today = today or BufferId.today()
        result = TodayResolution(buffer_id=today)

        if self.has(today):
            result.persisted = True
            try:
                result.text = self.load(today)
            except StoreError as exc:
                logger.warning("Could not load %s: %s", today, exc)
                result.errors.append(exc)
            return result

        source = self.find_previous(today)
        if source is None:
            logger.info("Nothing in the %d days before %s; starting empty",
                        FALLBACK_DAYS, today)
            return result

        try:
            text = self.load(source)
        except StoreError as exc:
            logger.warning("Could not seed %s from %s: %s", today, source, exc)
            result.errors.append(exc)
            return result
        result.text = text
        result.seeded_from = source
        logger.info("Seeded %s from %s", today, source)

        try:
            self.save(today, text)
            result.persisted = True
        except StoreError as exc:
            logger.warning("Could not persist seeded buffer %s: %s", today, exc)
            result.errors.append(exc)
        return result


# ════════════════════════════════════════════════════════════════════════
#  Buffer Index
# ════════════════════════════════════════════════════════════════════════

_MONTH_NAMES = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
                "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_DIGITS_RE = re.compile(r"[0-9]+")


def month_name(month: int) -> str:
    if 1 <= month <= 12:
        return _MONTH_NAMES[month - 1]
    return "???"


def _parse_segment(segment: str) -> Optional[int]:
    if _DIGITS_RE.fullmatch(segment):
        return int(segment)
    return None


def _buffer_id_for_path(relative: Path) -> Optional[BufferId]:
    parts = relative.parts
    if len(parts) < 3:
        return None
    year, month, day = (_parse_segment(p) for p in parts[-3:])
    if year is None or month is None or day is None:
        return None
    return BufferId.from_parts(year, month, day)


def build_index(root: Path | str) -> set[BufferId]:
    """Every BufferId with a file under ``root``. Rebuilt from scratch each call."""
    root = Path(root)
    found: set[BufferId] = set()
    if not root.is_dir():
        return found
    for path in root.rglob("*"):
        if not path.is_file():
            continue
        buffer_id = _buffer_id_for_path(path.relative_to(root))
        if buffer_id is None:
            logger.debug("Index skip: %s", path)
            continue
        found.add(buffer_id)
    return found


def group_index(ids: Iterable[BufferId]) -> dict[int, dict[int, list[BufferId]]]:
    """Group ids as ``{year: {month: [ids...]}}``, everything ascending."""
    tree: dict[int, dict[int, list[BufferId]]] = {}
    for buffer_id in sorted(ids):
        d = buffer_id.date
        tree.setdefault(d.year, {}).setdefault(d.month, []).append(buffer_id)
    return tree


def tree_items(ids: Iterable[BufferId]) -> list[tuple[BufferId, str]]:
    """Flatten the grouped index into labelled rows for the side panel."""
    items = []
    for year, months in group_index(ids).items():
        for month, days in months.items():
            for i, buffer_id in enumerate(days):
                prefix = f"{year} {month_name(month)}" if i == 0 else " " * 8
                items.append((buffer_id, f"{prefix} {buffer_id.date.day:>2}"))
    return items


# ════════════════════════════════════════════════════════════════════════
#  Markup Highlighter
# ════════════════════════════════════════════════════════════════════════

BODY_SIZE = 14.0
HEADER_MAX_SIZE = 26.0
HEADER_SIZE_STEP = 3.0
HEADER_MIN_SIZE = 16.0

TEXT_COLOR = "#dcdcdc"
HEADER_COLOR = "#e0af68"
CANCELLED_COLOR = "#b04a4a"
COMPLETED_COLOR = "#4f9a4f"
CODE_BACKGROUND = "#3c3c3c"
LINK_COLOR = "#7aa2f7"


class SpanKind(enum.Enum):
    PLAIN = "plain"
    HEADER = "header"
    OPEN_TASK = "open-task"
    CANCELLED_TASK = "cancelled-task"
    COMPLETED_TASK = "completed-task"
    CODE = "code"
    LINK = "link"


@dataclass(frozen=True)
class SpanStyle:
    size: float = BODY_SIZE
    color: str = TEXT_COLOR
    bold: bool = False
    monospace: bool = False
    background: Optional[str] = None
    underline: bool = False

    def to_pt_style(self) -> str:
        """Render as a prompt_toolkit style string (size has no terminal form)."""
        parts = [self.color]
        if self.bold:
            parts.append("bold")
        if self.underline:
            parts.append("underline")
        if self.background:
            parts.append(f"bg:{self.background}")
        return " ".join(parts)


PLAIN_STYLE = SpanStyle()
OPEN_TASK_STYLE = SpanStyle()
CANCELLED_TASK_STYLE = SpanStyle(color=CANCELLED_COLOR)
COMPLETED_TASK_STYLE = SpanStyle(color=COMPLETED_COLOR)
CODE_STYLE = SpanStyle(monospace=True, background=CODE_BACKGROUND)
LINK_STYLE = SpanStyle(color=LINK_COLOR, underline=True)


def header_size(level: int) -> float:
    """Font size for a header with ``level`` leading ``#``."""
    return max(HEADER_MAX_SIZE - (level - 1) * HEADER_SIZE_STEP, HEADER_MIN_SIZE)


def header_style(level: int) -> SpanStyle:
    size = header_size(level)
    return SpanStyle(size=size, color=HEADER_COLOR, bold=True,
                     underline=size >= HEADER_MAX_SIZE)


@dataclass(frozen=True)
class Span:
    """A run of text with one style. ``start``/``end`` are UTF-8 byte offsets."""
    start: int
    end: int
    kind: SpanKind
    style: SpanStyle
    text: str

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass
class LayoutJob:
    text: str
    spans: list[Span]
    wrap_width: float


class Match(NamedTuple):
    """Which construct matched at a scan position, and where it ends."""
    kind: SpanKind
    end: int
    style: SpanStyle


_HEADER_RE = re.compile(r"[ \t]*(#+)[^\n]*\n")
_OPEN_TASK_RE = re.compile(r"[ \t]*\[ ?\][^\n]*\n")
_CANCELLED_TASK_RE = re.compile(r"[ \t]*\[x\][^\n]*\n")
_COMPLETED_TASK_RE = re.compile(r"[ \t]*\[/\][^\n]*\n")
_CODE_RE = re.compile(r"`[^`]*`")
_LINK_RE = re.compile(r"[A-Za-z0-9]+://\S+")
_SCHEME_CHARS = frozenset(string.ascii_letters + string.digits)


def _at_line_start(text: str, pos: int) -> bool:
    return pos == 0 or text[pos - 1] == "\n"


def _header(text: str, pos: int) -> Optional[Match]:
    # A run of blanks is only worth matching from its first character.
    if pos and text[pos - 1] in " \t":
        return None
    m = _HEADER_RE.match(text, pos)
    if m is None:
        return None
    return Match(SpanKind.HEADER, m.end(), header_style(len(m.group(1))))


def _line_construct(pattern, kind, style):
    def recognize(text: str, pos: int) -> Optional[Match]:
        if not _at_line_start(text, pos):
            return None
        m = pattern.match(text, pos)
        return Match(kind, m.end(), style) if m else None
    return recognize


def _inline_construct(pattern, kind, style):
    def recognize(text: str, pos: int) -> Optional[Match]:
        m = pattern.match(text, pos)
        return Match(kind, m.end(), style) if m else None
    return recognize


def _link(text: str, pos: int) -> Optional[Match]:
    # A scheme starts at the beginning of an alphanumeric run, never inside one.
    if pos and text[pos - 1] in _SCHEME_CHARS:
        return None
    m = _LINK_RE.match(text, pos)
    return Match(SpanKind.LINK, m.end(), LINK_STYLE) if m else None


# Tried in this order at every scan position; first hit wins.
RECOGNIZERS: tuple[Callable[[str, int], Optional[Match]], ...] = (
    _header,
    _line_construct(_OPEN_TASK_RE, SpanKind.OPEN_TASK, OPEN_TASK_STYLE),
    _line_construct(_CANCELLED_TASK_RE, SpanKind.CANCELLED_TASK, CANCELLED_TASK_STYLE),
    _line_construct(_COMPLETED_TASK_RE, SpanKind.COMPLETED_TASK, COMPLETED_TASK_STYLE),
    _inline_construct(_CODE_RE, SpanKind.CODE, CODE_STYLE),
    _link,
)


def recognize(text: str, pos: int) -> Optional[Match]:
    for recognizer in RECOGNIZERS:
        match = recognizer(text, pos)
        if match is not None:
            return match
    return None


def tokenize(text: str) -> list[Span]:
    """Split ``text`` into contiguous styled spans covering every byte."""
    spans: list[Span] = []
    offset = 0
    plain_start = 0
    pos = 0

    def emit(start, end, kind, style):
        nonlocal offset
        piece = text[start:end]
        size = len(piece.encode("utf-8", "surrogatepass"))
        spans.append(Span(offset, offset + size, kind, style, piece))
        offset += size

    while pos < len(text):
        match = recognize(text, pos)
        if match is None:
            pos += 1
            continue
        if plain_start < pos:
            emit(plain_start, pos, SpanKind.PLAIN, PLAIN_STYLE)
        emit(pos, match.end, match.kind, match.style)
        pos = plain_start = match.end

    if plain_start < len(text):
        emit(plain_start, len(text), SpanKind.PLAIN, PLAIN_STYLE)
    return spans


class Highlighter:
    """Tokenizer with a one-slot cache.

    ``highlight`` returns the last result untouched until ``clear`` is
    called, whatever text it is given. The owner clears it on edits.
    """

    def __init__(self):
        self._spans: Optional[list[Span]] = None
        self.runs = 0

    def highlight(self, text: str) -> list[Span]:
        if self._spans is None:
            self._spans = tokenize(text)
            self.runs += 1
        return self._spans

    def clear(self) -> None:
        self._spans = None

    def layout(self, text: str, wrap_width: float) -> LayoutJob:
        return LayoutJob(text=text, spans=self.highlight(text), wrap_width=wrap_width)


def link_at(spans: list[Span], offset: int) -> Optional[str]:
    """The hyperlink token whose span touches character ``offset``, if any."""
    position = 0
    for span in spans:
        end = position + len(span.text)
        if span.kind is SpanKind.LINK and position <= offset <= end:
            return span.text
        position = end
    return None


# ════════════════════════════════════════════════════════════════════════
#  Task Cycle Engine
# ════════════════════════════════════════════════════════════════════════


class TaskMarker(enum.Enum):
    OPEN = "[ ]"
    COMPLETED = "[/]"
    CANCELLED = "[x]"
    NONE = ""


_TASK_MARKER_RE = re.compile(r"\s*(\[ ?\]|\[/\]|\[x\])")
_MARKER_TOKENS = {
    "[ ]": TaskMarker.OPEN,
    "[]": TaskMarker.OPEN,
    "[/]": TaskMarker.COMPLETED,
    "[x]": TaskMarker.CANCELLED,
}

# (find, replace), first match on the line wins.
_CYCLE_RULES = (
    ("[x]", "[/]"),
    ("[/]", "[x]"),
    ("[]", "[ ]"),
    ("[ ]", "[/]"),
)


def task_marker(line: str) -> TaskMarker:
    m = _TASK_MARKER_RE.match(line)
    if m is None:
        return TaskMarker.NONE
    return _MARKER_TOKENS[m.group(1)]


def cycle_task(text: str, cursor: int) -> tuple[str, int]:
    """Cycle the task marker on the cursor's line; return (text, cursor).

    Only the part of the line before the cursor is searched, from the
    cursor backwards. A line without any marker becomes an open task.
    """
    cursor = max(0, min(cursor, len(text)))
    line_start = text.rfind("\n", 0, cursor) + 1
    line = text[line_start:cursor]
    for find, replace in _CYCLE_RULES:
        index = line.rfind(find)
        if index < 0:
            continue
        start = line_start + index
        new_text = text[:start] + replace + text[start + len(find):]
        return new_text, cursor + len(replace) - len(find)
    new_text = text[:line_start] + "[ ] " + text[line_start:]
    return new_text, cursor + 4


# ════════════════════════════════════════════════════════════════════════
#  Update Status
# ════════════════════════════════════════════════════════════════════════


class UpdateStatus(enum.Enum):
    CHECKING = "checking"
    UNAVAILABLE = "unavailable"
    UPDATE_AVAILABLE = "update available"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"


class UpdateStateCell:
    """Status written by the update worker, read by the editor without waiting."""

    def __init__(self, status: UpdateStatus = UpdateStatus.CHECKING):
        self._status = status
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)

    def get(self) -> UpdateStatus:
        with self._lock:
            return self._status

    def set(self, status: UpdateStatus) -> None:
        with self._changed:
            self._status = status
            self._changed.notify_all()

    def wait_for(self, status: UpdateStatus, timeout: Optional[float] = None) -> bool:
        """Block until ``status`` is published. Worker side and tests only."""
        with self._changed:
            return self._changed.wait_for(lambda: self._status is status, timeout)


class UpdateService:
    """Front for the background update worker.

    ``check`` runs on a daemon thread and publishes progress to the cell;
    ``install`` swaps in the downloaded build and relaunches. Without a
    ``check`` the service reports UNAVAILABLE once started.
    """

    def __init__(self, check: Optional[Callable[[UpdateStateCell], None]] = None,
                 install: Optional[Callable[[], None]] = None):
        self.cell = UpdateStateCell()
        self._check = check
        self._install = install
        self._thread: Optional[threading.Thread] = None

    def start(self) -> UpdateService:
        if self._check is None:
            self.cell.set(UpdateStatus.UNAVAILABLE)
            return self
        self._thread = threading.Thread(
            target=self._run, name=f"{APP_NAME}-update", daemon=True)
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            self._check(self.cell)
        except Exception:
            logger.exception("Update check failed")
            self.cell.set(UpdateStatus.UNAVAILABLE)

    def state(self) -> UpdateStatus:
        return self.cell.get()

    def apply(self) -> bool:
        if self.state() is not UpdateStatus.DOWNLOADED or self._install is None:
            logger.info("Ignoring update request in state %s", self.state().value)
            return False
        logger.info("Applying downloaded update")
        self._install()
        return True


def current_version() -> str:
    try:
        return metadata.version(APP_NAME)
    except metadata.PackageNotFoundError:
        return "1.0.0"


# ════════════════════════════════════════════════════════════════════════
#  Session Controller
# ════════════════════════════════════════════════════════════════════════


@dataclass
class Buffer:
    """The resident day's text plus its save state."""
    text: str = ""
    saved: bool = True
    last_changed: Optional[float] = None
    load_failed: bool = False   # file exists but could not be read; don't overwrite
    save_failed: bool = False   # last autosave write failed; retried on close


class InputEvent(enum.Enum):
    CONTENT_CHANGED = "content-changed"
    KEY_PRESSED = "key-pressed"
    DOUBLE_CLICK = "double-click"


class Session:
    """Owns the resident buffer; the only thing the front end talks to."""

    def __init__(self, store: JournalStore,
                 highlighter: Optional[Highlighter] = None,
                 clock: Callable[[], float] = time.time,
                 today: Callable[[], BufferId] = BufferId.today,
                 opener: Callable[[str], object] = webbrowser.open,
                 update_service: Optional[UpdateService] = None):
        self.store = store
        self.highlighter = highlighter or Highlighter()
        self.clock = clock
        self.today = today
        self.opener = opener
        self.update_service = update_service or UpdateService()
        self.buffer_id = today()
        self.buffer = Buffer()
        self.available: set[BufferId] = set()
        self.last_error: Optional[str] = None
        self.notify: Callable[[str], None] = lambda message: None

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self, demo: bool = False) -> None:
        self._resolve_today()
        self.refresh_index()
        if demo:
            self.buffer.text = DEMO_TEXT
            self.highlighter.clear()

    def close(self) -> None:
        if not self.buffer.saved or self.buffer.save_failed:
            self._save_current("exit")

    def refresh_index(self) -> None:
        self.available = build_index(self.store.root)

    def _activate(self, buffer_id: BufferId, text: str, saved: bool,
                  load_failed: bool = False) -> None:
        self.buffer_id = buffer_id
        self.buffer = Buffer(text=text, saved=saved, load_failed=load_failed)
        self.highlighter.clear()

    def _resolve_today(self) -> None:
        resolution = self.store.resolve_today(self.today())
        self._activate(resolution.buffer_id, resolution.text,
                       saved=resolution.persisted,
                       load_failed=resolution.load_failed)
        for exc in resolution.errors:
            self._report("Could not prepare today's buffer", exc)

    def _report(self, prefix: str, exc: StoreError) -> None:
        message = f"{prefix}: {exc}"
        logger.warning(message)
        self.last_error = message
        self.notify(message)

    # ── Persistence ──────────────────────────────────────────────────

    def _save_current(self, reason: str) -> bool:
        buf = self.buffer
        if buf.load_failed and buf.saved and not buf.save_failed:
            logger.info("Not writing %s on %s: it was never loaded", self.buffer_id, reason)
            return False
        try:
            self.store.save(self.buffer_id, buf.text)
        except StoreError as exc:
            self._report(f"Save on {reason} failed", exc)
            return False
        buf.saved = True
        buf.save_failed = False
        self.last_error = None
        return True

    def save(self) -> bool:
        """Explicit save command: always attempts a fresh write."""
        try:
            self.store.save(self.buffer_id, self.buffer.text)
        except StoreError as exc:
            self.buffer.saved = False
            self._report("Save failed", exc)
            return False
        self.buffer.saved = True
        self.buffer.load_failed = False
        self.buffer.save_failed = False
        self.last_error = None
        return True

    def tick(self, now: Optional[float] = None) -> bool:
        """Autosave once the buffer has been idle long enough. True if written."""
        buf = self.buffer
        if buf.saved or buf.last_changed is None:
            return False
        now = self.clock() if now is None else now
        if now - buf.last_changed <= AUTOSAVE_DELAY:
            return False
        # Flagged saved before writing: a failed write is not retried per tick,
        # only on close or switch.
        buf.saved = True
        try:
            self.store.save(self.buffer_id, buf.text)
        except StoreError as exc:
            buf.save_failed = True
            self._report("Autosave failed", exc)
            return False
        buf.save_failed = False
        self.last_error = None
        return True

    # ── Switching ────────────────────────────────────────────────────

    def switch_to(self, buffer_id: BufferId) -> None:
        self._save_current("switch")
        if buffer_id == self.today() and not self.store.has(buffer_id):
            self._resolve_today()
        else:
            try:
                self._activate(buffer_id, self.store.load(buffer_id), saved=True)
            except StoreError as exc:
                if exc.kind is ErrorKind.NOT_FOUND:
                    self._activate(buffer_id, "", saved=False)
                else:
                    self._activate(buffer_id, "", saved=True, load_failed=True)
                    self._report(f"Could not open {buffer_id}", exc)
        self.refresh_index()

    def go_today(self) -> None:
        self.switch_to(self.today())

    # ── Input ────────────────────────────────────────────────────────

    def content_changed(self, text: str, now: Optional[float] = None) -> None:
        self.buffer.text = text
        self.buffer.saved = False
        self.buffer.load_failed = False
        self.buffer.last_changed = self.clock() if now is None else now
        self.highlighter.clear()

    def key_pressed(self) -> None:
        self.highlighter.clear()

    def handle_event(self, event: InputEvent, text: Optional[str] = None,
                     offset: Optional[int] = None) -> None:
        if event is InputEvent.CONTENT_CHANGED:
            self.content_changed(self.buffer.text if text is None else text)
        elif event is InputEvent.KEY_PRESSED:
            self.key_pressed()
        elif event is InputEvent.DOUBLE_CLICK and offset is not None:
            self.open_link_at(offset)

    def toggle_task(self, cursor: int) -> int:
        """Cycle the task on the cursor's line. Returns the adjusted cursor."""
        text, cursor = cycle_task(self.buffer.text, cursor)
        self.content_changed(text)
        return cursor

    def open_link_at(self, offset: int) -> Optional[str]:
        url = link_at(self.highlighter.highlight(self.buffer.text), offset)
        if url is None:
            return None
        logger.info("Opening %s", url)
        try:
            self.opener(url)
        except webbrowser.Error as exc:
            logger.warning("Could not open %s: %s", url, exc)
            self.notify(f"Could not open link: {exc}")
        return url

    def apply_update(self) -> bool:
        return self.update_service.apply()

    # ── Display helpers ──────────────────────────────────────────────

    def path_label(self) -> str:
        return str(self.buffer_id.filepath())

    def task_counts(self) -> dict[TaskMarker, int]:
        counts = {marker: 0 for marker in TaskMarker if marker is not TaskMarker.NONE}
        for line in self.buffer.text.split("\n"):
            marker = task_marker(line)
            if marker is not TaskMarker.NONE:
                counts[marker] += 1
        return counts


# ════════════════════════════════════════════════════════════════════════
#  Terminal Front End
# ════════════════════════════════════════════════════════════════════════


def _spans_to_lines(spans: list[Span]) -> list[list[tuple[str, str]]]:
    lines: list[list[tuple[str, str]]] = [[]]
    for span in spans:
        style = span.style.to_pt_style()
        for i, part in enumerate(span.text.split("\n")):
            if i:
                lines.append([])
            if part:
                lines[-1].append((style, part))
    return lines


class SpanLexer(PtLexer):
    """Hands the session's cached spans to prompt_toolkit line by line."""

    def __init__(self, session: Session):
        self.session = session

    def lex_document(self, document):
        lines = _spans_to_lines(self.session.highlighter.highlight(document.text))

        def get_line(lineno):
            try:
                return lines[lineno]
            except IndexError:
                return []

        return get_line


class BufferTree:
    """Side panel listing stored days; enter opens the selected one."""

    def __init__(self, on_select: Optional[Callable[[BufferId], None]] = None):
        self.items: list[tuple[BufferId, str]] = []
        self.selected_index = 0
        self.on_select = on_select
        self._kb = KeyBindings()
        tree = self

        @self._kb.add("up")
        def _up(event):
            tree.selected_index = max(0, tree.selected_index - 1)

        @self._kb.add("down")
        def _down(event):
            tree.selected_index = min(len(tree.items) - 1, tree.selected_index + 1)

        @self._kb.add("enter")
        def _enter(event):
            if tree.items and tree.on_select:
                tree.on_select(tree.items[tree.selected_index][0])

        self.control = FormattedTextControl(
            self._get_text, focusable=True, key_bindings=self._kb)
        self.window = Window(
            content=self.control, width=14, style="class:tree", wrap_lines=False)

    def _get_text(self):
        if not self.items:
            return [("class:tree.empty", " (no days)\n")]
        result = []
        for i, (_, label) in enumerate(self.items):
            if i == self.selected_index:
                result.append(("[SetCursorPosition]", ""))
                result.append(("class:tree.selected", f" {label}\n"))
            else:
                result.append(("", f" {label}\n"))
        return result

    def set_items(self, items: list[tuple[BufferId, str]],
                  current: Optional[BufferId] = None) -> None:
        self.items = items
        for i, (buffer_id, _) in enumerate(items):
            if buffer_id == current:
                self.selected_index = i
                break
        else:
            self.selected_index = min(self.selected_index, max(0, len(items) - 1))

    def __pt_container__(self):
        return self.window


class UiState:
    """Front-end-only state: notifications and sync guards."""

    def __init__(self):
        self.notification = ""
        self.notification_task = None
        self.quit_pending = 0.0
        self.syncing = False


def saved_fragments(session: Session):
    buf = session.buffer
    if buf.save_failed:
        return [("class:unsaved", " Save Failed")]
    if buf.saved:
        return [("class:saved", " Saved")]
    return [("class:unsaved", " Not Saved")]


def status_fragments(session: Session, ui: UiState):
    """Bottom bar: a live notification, else the last unresolved error, else task counts."""
    message = ui.notification or session.last_error
    if message:
        return [("class:status", f" {message}")]
    counts = session.task_counts()
    return [
        ("class:status",
         f" {counts[TaskMarker.OPEN]} open  {counts[TaskMarker.COMPLETED]} done"
         f"  {counts[TaskMarker.CANCELLED]} cancelled"),
        ("class:hint",
         "   ^d task  ^t today  ^s save  ^o link  ^b days  ^q quit"),
    ]


def show_notification(ui: UiState, message: str, duration: float = 3.0) -> None:
    """Show a message in the status bar, clearing it after ``duration``."""
    ui.notification = message
    get_app().invalidate()
    if ui.notification_task:
        ui.notification_task.cancel()

    async def _clear():
        await asyncio.sleep(duration)
        if ui.notification == message:
            ui.notification = ""
            get_app().invalidate()

    ui.notification_task = asyncio.ensure_future(_clear())


def create_app(session: Session) -> Application:
    """Build the prompt_toolkit Application around a started session."""
    ui = UiState()
    session.notify = lambda message: show_notification(ui, message, duration=6.0)

    editor_area = TextArea(
        text=session.buffer.text,
        multiline=True,
        wrap_lines=True,
        scrollbar=False,
        style="class:editor",
        focus_on_click=True,
        lexer=SpanLexer(session),
    )

    def _on_text_changed(buf):
        if not ui.syncing:
            session.handle_event(InputEvent.CONTENT_CHANGED, text=buf.text)

    editor_area.buffer.on_text_changed += _on_text_changed

    def load_editor(cursor: int = 0) -> None:
        text = session.buffer.text
        ui.syncing = True
        try:
            editor_area.buffer.set_document(
                Document(text, min(cursor, len(text))), bypass_readonly=True)
        finally:
            ui.syncing = False

    tree = BufferTree()

    def refresh_tree() -> None:
        tree.set_items(tree_items(session.available), current=session.buffer_id)

    def open_buffer(buffer_id: BufferId) -> None:
        session.switch_to(buffer_id)
        load_editor()
        refresh_tree()
        get_app().layout.focus(editor_area)
        get_app().invalidate()

    tree.on_select = open_buffer
    refresh_tree()

    # ── Bars ─────────────────────────────────────────────────────────

    def get_version_text():
        fragments = []
        if session.update_service.state() is UpdateStatus.DOWNLOADED:
            fragments.append(("class:accent bold", " Update (^u) "))
        fragments.append(("class:hint", f" v{current_version()} "))
        return fragments

    top_bar = VSplit([
        Window(FormattedTextControl(lambda: saved_fragments(session)), width=13, height=1),
        Window(FormattedTextControl(lambda: [("class:title", session.path_label())]),
               height=1, align=WindowAlign.CENTER),
        Window(FormattedTextControl(get_version_text), height=1,
               align=WindowAlign.RIGHT),
    ], style="class:status")

    status_bar = Window(
        FormattedTextControl(lambda: status_fragments(session, ui)),
        height=1, style="class:status")

    root = HSplit([
        top_bar,
        VSplit([tree, Window(width=1, char="│", style="class:hint"), editor_area]),
        status_bar,
    ])

    # ── Key bindings ─────────────────────────────────────────────────

    kb = KeyBindings()
    in_editor = Condition(lambda: get_app().layout.has_focus(editor_area))

    @kb.add("c-d", filter=in_editor)
    def _(event):
        cursor = session.toggle_task(editor_area.buffer.cursor_position)
        load_editor(cursor)

    @kb.add("c-t")
    def _(event):
        open_buffer(session.today())

    @kb.add("c-s")
    def _(event):
        if session.save():
            show_notification(ui, "Saved.")

    @kb.add("c-o", filter=in_editor)
    def _(event):
        url = session.open_link_at(editor_area.buffer.cursor_position)
        if url:
            show_notification(ui, f"Opened {url}")

    @kb.add("c-u")
    def _(event):
        if not session.apply_update():
            show_notification(ui, f"No update ready ({session.update_service.state().value}).")

    @kb.add("c-b")
    def _(event):
        if get_app().layout.has_focus(tree):
            event.app.layout.focus(editor_area)
        else:
            refresh_tree()
            event.app.layout.focus(tree)

    @kb.add("c-q")
    def _(event):
        now = time.monotonic()
        if now - ui.quit_pending < 2.0:
            event.app.exit()
        else:
            ui.quit_pending = now
            show_notification(ui, "Press Ctrl+Q again to quit.", duration=2.0)

    # ── Style ────────────────────────────────────────────────────────

    style = PtStyle.from_dict({
        "": f"{TEXT_COLOR} bg:#2a2a2a",
        "title": "#e0e0e0",
        "status": "#8a8a8a bg:#333333",
        "hint": "#777777",
        "accent": HEADER_COLOR,
        "saved": "#8a8a8a",
        "unsaved": "#e0af68",
        "editor": "",
        "tree": "",
        "tree.selected": "bg:#444444",
        "tree.empty": "#777777",
    })

    app = Application(
        layout=Layout(root, focused_element=editor_area),
        key_bindings=kb,
        style=style,
        full_screen=True,
        mouse_support=False,
    )
    app.ttimeoutlen = 0.05
    app.key_processor.before_key_press += lambda _: session.handle_event(
        InputEvent.KEY_PRESSED)

    # ── Autosave / repaint tick ──────────────────────────────────────

    async def tick_loop():
        while True:
            await asyncio.sleep(TICK_INTERVAL)
            if session.tick():
                logger.debug("Autosaved %s", session.buffer_id)
            app.invalidate()

    app.pre_run_callables.append(lambda: app.create_background_task(tick_loop()))
    return app


# ════════════════════════════════════════════════════════════════════════
#  Entry point
# ════════════════════════════════════════════════════════════════════════


def resolve_data_dir(explicit: Optional[Path] = None, demo: bool = False) -> Path:
    """Store root: flag, then ``SUNRISE_DATA_DIR``, then a scratch dir for demos,
    then the platform per-user data directory."""
    if explicit:
        return Path(explicit).expanduser()
    if os.environ.get("SUNRISE_DATA_DIR"):
        return Path(os.environ["SUNRISE_DATA_DIR"]).expanduser()
    if demo:
        return Path(tempfile.mkdtemp(prefix=f"{APP_NAME}_demo_"))
    return Path(platformdirs.user_data_dir(APP_NAME, APP_AUTHOR))


def configure_logging(debug: bool = False) -> Path:
    """Send logs to a file; the terminal belongs to the editor."""
    log_dir = Path(platformdirs.user_log_dir(APP_NAME, APP_AUTHOR))
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{APP_NAME}.log"
    if debug:
        level = logging.DEBUG
    else:
        name = os.environ.get("SUNRISE_LOG_LEVEL", "WARNING").upper()
        level = getattr(logging, name, logging.WARNING)
    logging.basicConfig(
        filename=str(log_file),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=level,
    )
    return log_file


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog=APP_NAME, description=__doc__)
    parser.add_argument("--demo", action="store_true",
                        help="open a sample buffer showing every markup construct")
    parser.add_argument("--data-dir", type=Path,
                        help="journal directory (default: per-user data dir)")
    parser.add_argument("--debug", action="store_true", help="log at DEBUG level")
    args = parser.parse_args(argv)

    configure_logging(debug=args.debug)
    root = resolve_data_dir(args.data_dir, demo=args.demo)
    logger.info("Journal root: %s", root)

    session = Session(JournalStore(root), update_service=UpdateService().start())
    session.start(demo=args.demo)
    create_app(session).run()
    session.close()


if __name__ == "__main__":
    main()
