"""Durable conversation history backed by a single JSON file.

The file holds a JSON array of entries. Every mutation reads the whole
array, changes it in memory and rewrites the file atomically (temp file in
the same directory + ``os.replace``). There is no cross-process locking:
two CLI invocations racing on the same file resolve as last-writer-wins.
"""

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from rich.console import Console
from rich.text import Text

from . import fmt
from .errors import ConfigError, InvalidHistoryIndex
from .migrate import upgrade_entry

VALID_LEVELS = ("low", "medium", "high")

UNTITLED = "(untitled)"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def _check_str(raw: dict, key: str, where: str) -> str | None:
    value = raw.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{where}.{key} must be a string")
    return value


@dataclass
class HistoryTurn:
    role: str
    text: str | None = None
    at: str | None = None
    response_id: str | None = None
    kind: str | None = None

    def to_dict(self) -> dict:
        out: dict = {"role": self.role}
        for key in ("text", "at", "response_id", "kind"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out

    @classmethod
    def from_dict(cls, raw) -> "HistoryTurn":
        if not isinstance(raw, dict):
            raise ValueError("turn must be an object")
        role = raw.get("role")
        if not isinstance(role, str):
            raise ValueError("turn.role must be a string")
        return cls(
            role=role,
            text=_check_str(raw, "text", "turn"),
            at=_check_str(raw, "at", "turn"),
            response_id=_check_str(raw, "response_id", "turn"),
            kind=_check_str(raw, "kind", "turn"),
        )


@dataclass
class HistorySummary:
    text: str | None = None
    created_at: str | None = None


@dataclass
class HistoryResume:
    mode: str | None = None
    previous_response_id: str | None = None
    summary: HistorySummary | None = None

    def to_dict(self) -> dict:
        out: dict = {}
        if self.mode is not None:
            out["mode"] = self.mode
        if self.previous_response_id is not None:
            out["previous_response_id"] = self.previous_response_id
        if self.summary is not None:
            summary: dict = {}
            if self.summary.text is not None:
                summary["text"] = self.summary.text
            if self.summary.created_at is not None:
                summary["created_at"] = self.summary.created_at
            out["summary"] = summary
        return out

    @classmethod
    def from_dict(cls, raw) -> "HistoryResume":
        if not isinstance(raw, dict):
            raise ValueError("resume must be an object")
        summary = None
        raw_summary = raw.get("summary")
        if raw_summary is not None:
            if not isinstance(raw_summary, dict):
                raise ValueError("resume.summary must be an object")
            summary = HistorySummary(
                text=_check_str(raw_summary, "text", "resume.summary"),
                created_at=_check_str(raw_summary, "created_at", "resume.summary"),
            )
        return cls(
            mode=_check_str(raw, "mode", "resume"),
            previous_response_id=_check_str(raw, "previous_response_id", "resume"),
            summary=summary,
        )


# --- Per-mode context payloads ---

_FILE_CONTEXT_FIELDS: dict[str, type] = {
    "absolute_path": str,
    "relative_path": str,
    "copy": bool,
}

_CONTEXT_FIELDS: dict[str, dict[str, type]] = {
    "ask": _FILE_CONTEXT_FIELDS,
    "d2": _FILE_CONTEXT_FIELDS,
    "mermaid": _FILE_CONTEXT_FIELDS,
    "sql": {
        **_FILE_CONTEXT_FIELDS,
        "engine": str,
        "dsn_hash": str,
        "dsn": str,
        "connection": dict,
    },
}


def validate_context(context) -> None:
    """Check a context payload against the schema of its ``cli`` variant.

    Untagged payloads, unknown ``cli`` tags and extra keys pass through
    untouched; only the documented fields of a known variant are
    type-checked.
    """
    if context is None:
        return
    if not isinstance(context, dict):
        raise ValueError("context must be an object")
    cli = context.get("cli")
    if not isinstance(cli, str) or cli not in _CONTEXT_FIELDS:
        return
    fields = _CONTEXT_FIELDS[cli]
    for key, expected in fields.items():
        if key in context and not isinstance(context[key], expected):
            raise ValueError(f"context.{key} must be {expected.__name__}")
    if cli == "sql":
        if context.get("engine") not in ("postgresql", "mysql"):
            raise ValueError("context.engine must be 'postgresql' or 'mysql'")
        if not context.get("dsn_hash"):
            raise ValueError("context.dsn_hash must be a non-empty string")


_ENTRY_STR_FIELDS = (
    "title",
    "model",
    "effort",
    "verbosity",
    "created_at",
    "updated_at",
    "first_response_id",
    "last_response_id",
)

_ENTRY_KNOWN_KEYS = set(_ENTRY_STR_FIELDS) | {
    "request_count",
    "resume",
    "turns",
    "context",
}


@dataclass
class HistoryEntry:
    title: str | None = None
    model: str | None = None
    effort: str | None = None
    verbosity: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    first_response_id: str | None = None
    last_response_id: str | None = None
    request_count: int | None = None
    resume: HistoryResume | None = None
    turns: list[HistoryTurn] = field(default_factory=list)
    context: dict | None = None
    # Top-level keys this version doesn't know about, written back verbatim.
    extra: dict = field(default_factory=dict)

    @property
    def cli(self) -> str | None:
        if isinstance(self.context, dict):
            cli = self.context.get("cli")
            if isinstance(cli, str):
                return cli
        return None

    def to_dict(self) -> dict:
        out: dict = {}
        for key in _ENTRY_STR_FIELDS:
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        if self.request_count is not None:
            out["request_count"] = self.request_count
        if self.resume is not None:
            out["resume"] = self.resume.to_dict()
        out["turns"] = [t.to_dict() for t in self.turns]
        if self.context is not None:
            out["context"] = self.context
        for key, value in self.extra.items():
            out.setdefault(key, value)
        return out

    @classmethod
    def from_dict(cls, raw) -> "HistoryEntry":
        if not isinstance(raw, dict):
            raise ValueError("entry must be an object")
        values: dict[str, Any] = {
            key: _check_str(raw, key, "entry") for key in _ENTRY_STR_FIELDS
        }
        request_count = raw.get("request_count")
        if request_count is not None and (
            not isinstance(request_count, int) or isinstance(request_count, bool)
        ):
            raise ValueError("entry.request_count must be an integer")
        raw_turns = raw.get("turns")
        if raw_turns is None:
            raw_turns = []
        if not isinstance(raw_turns, list):
            raise ValueError("entry.turns must be an array")
        resume = raw.get("resume")
        context = raw.get("context")
        validate_context(context)
        return cls(
            **values,
            request_count=request_count,
            resume=HistoryResume.from_dict(resume) if resume is not None else None,
            turns=[HistoryTurn.from_dict(t) for t in raw_turns],
            context=context,
            extra={k: v for k, v in raw.items() if k not in _ENTRY_KNOWN_KEYS},
        )


def _sort_key(entry: HistoryEntry) -> str:
    return entry.updated_at or ""


def write_json_atomic(path: Path, data) -> None:
    """Serialize ``data`` to ``path`` via a temp file + rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, ensure_ascii=False, indent=2) + "\n"
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class HistoryStore:
    """Owns the on-disk history collection and is its only writer.

    Ordinal lookups (``select_by_number`` and friends) always work on the
    entries visible through ``entry_filter``, sorted by ``updated_at``
    descending, 1-based. Nothing is cached: every call reloads the file.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        log: fmt.Logger | None = None,
        entry_filter: Callable[[HistoryEntry], bool] | None = None,
    ):
        self.path = Path(path)
        self.log = log if log is not None else fmt.get_logger()
        self.entry_filter = entry_filter

    def load_entries(self) -> list[HistoryEntry]:
        """Read every entry. Corrupt content reads as an empty history."""
        return self._read()[0]

    def _read(self) -> tuple[list[HistoryEntry], list]:
        """Return (parsed entries, raw items that failed to parse).

        Unparseable items are kept so writers can put them back unchanged.
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return [], []
        except UnicodeDecodeError:
            self.log.warning(
                f"history file {self.path} is not valid UTF-8; treating it as empty"
            )
            return [], []
        if not text.strip():
            return [], []
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            self.log.warning(
                f"history file {self.path} is not valid JSON; treating it as empty"
            )
            return [], []
        if not isinstance(data, list):
            self.log.warning(
                f"history file {self.path} does not hold a JSON array; treating it as empty"
            )
            return [], []

        entries = []
        unparsed = []
        for index, raw in enumerate(data):
            try:
                entries.append(HistoryEntry.from_dict(upgrade_entry(raw)))
            except ValueError as e:
                self.log.warning(f"skipping history entry {index}: {e}")
                unparsed.append(raw)
        return entries, unparsed

    def save_entries(self, entries: list[HistoryEntry], unparsed: list = ()) -> None:
        """Write ``entries`` followed by ``unparsed`` raw items, verbatim."""
        write_json_atomic(self.path, [e.to_dict() for e in entries] + list(unparsed))

    def filtered_entries(self) -> list[HistoryEntry]:
        return self._sorted_view(self.load_entries())

    def _sorted_view(self, entries: list[HistoryEntry]) -> list[HistoryEntry]:
        if self.entry_filter is not None:
            entries = [e for e in entries if self.entry_filter(e)]
        return sorted(entries, key=_sort_key, reverse=True)

    def _pick(self, view: list[HistoryEntry], index: int) -> HistoryEntry:
        if not isinstance(index, int) or index < 1 or index > len(view):
            raise InvalidHistoryIndex(index, len(view))
        return view[index - 1]

    def select_by_number(self, index: int) -> HistoryEntry:
        return self._pick(self.filtered_entries(), index)

    def delete_by_number(self, index: int) -> tuple[str | None, str]:
        """Delete the entry at ``index``. Returns (removed_id, removed_title)."""
        entries, unparsed = self._read()
        target = self._pick(self._sorted_view(entries), index)
        remaining = [e for e in entries if e is not target]
        self.save_entries(remaining, unparsed)
        return target.last_response_id, target.title or UNTITLED

    def show_by_number(
        self, index: int, no_color: bool = False, console: Console | None = None
    ) -> None:
        entry = self.select_by_number(index)
        if console is None:
            console = fmt.make_console(no_color=no_color, stderr=False)
        print_history_detail(entry, index, console)

    def find_latest(self) -> HistoryEntry | None:
        view = self.filtered_entries()
        return view[0] if view else None

    def upsert_entry(self, entry: HistoryEntry) -> None:
        """Replace the entry sharing ``entry.last_response_id``, or append it."""
        entries, unparsed = self._read()
        for i, existing in enumerate(entries):
            if (
                entry.last_response_id
                and existing.last_response_id == entry.last_response_id
            ):
                entries[i] = entry
                break
        else:
            entries.append(entry)
        self.save_entries(entries, unparsed)

    def upsert_conversation(
        self,
        *,
        response_id: str,
        user_text: str,
        assistant_text: str,
        metadata: dict,
        context,
        context_data: dict | None = None,
    ) -> HistoryEntry:
        """Record one completed request.

        ``context`` is the ConversationContext the request was built from.
        A new conversation appends a fresh entry; a continuing one updates
        the entry whose ``last_response_id`` matches the context's previous
        (or active) response id, falling back to a fresh entry when that id
        is no longer in the file.
        """
        entries, unparsed = self._read()
        now = now_iso()
        target_id = context.previous_response_id or context.active_last_response_id

        turns = [
            HistoryTurn(role="user", text=user_text, at=now),
            HistoryTurn(
                role="assistant", text=assistant_text, at=now, response_id=response_id
            ),
        ]
        resume = HistoryResume(mode="response_id", previous_response_id=response_id)
        if context.resume_summary_text:
            resume.summary = HistorySummary(
                text=context.resume_summary_text,
                created_at=context.resume_summary_created_at,
            )

        def _fresh_entry() -> HistoryEntry:
            return HistoryEntry(
                title=context.title_to_use or None,
                model=metadata.get("model"),
                effort=metadata.get("effort"),
                verbosity=metadata.get("verbosity"),
                created_at=now,
                updated_at=now,
                first_response_id=response_id,
                last_response_id=response_id,
                request_count=1,
                resume=resume,
                turns=turns,
                context=context_data,
            )

        if context.is_new_conversation and not target_id:
            entry = _fresh_entry()
            entries.append(entry)
            self.save_entries(entries, unparsed)
            return entry

        entry = next(
            (e for e in entries if target_id and e.last_response_id == target_id),
            None,
        )
        if entry is None:
            self.log.warning(
                f"no history entry matches response id {target_id}; recording a new conversation"
            )
            entry = _fresh_entry()
            entries.append(entry)
            self.save_entries(entries, unparsed)
            return entry

        entry.title = entry.title or context.title_to_use or None
        entry.model = metadata.get("model", entry.model)
        entry.effort = metadata.get("effort", entry.effort)
        entry.verbosity = metadata.get("verbosity", entry.verbosity)
        entry.updated_at = now
        entry.last_response_id = response_id
        if entry.first_response_id is None:
            entry.first_response_id = response_id
        entry.request_count = (entry.request_count or 0) + 1
        if resume.summary is None and entry.resume is not None:
            resume.summary = entry.resume.summary
        entry.resume = resume
        entry.turns.extend(turns)
        if context_data is not None:
            entry.context = context_data
        elif getattr(context, "previous_context", None) is not None:
            entry.context = context.previous_context
        self.save_entries(entries, unparsed)
        return entry


def cli_entry_filter(mode: str) -> Callable[[HistoryEntry], bool]:
    """Show only entries recorded by ``mode``; untagged entries are visible everywhere."""

    def _filter(entry: HistoryEntry) -> bool:
        cli = entry.cli
        return cli is None or cli == mode

    return _filter


def resolve_history_path(default_path: str | Path | None = None) -> Path:
    """Return the history file path: GPT_5_CLI_HISTORY_INDEX_FILE wins over the default."""
    configured = os.environ.get("GPT_5_CLI_HISTORY_INDEX_FILE")
    if configured is not None:
        configured = configured.strip()
        if not configured:
            raise ConfigError("GPT_5_CLI_HISTORY_INDEX_FILE is set but empty.")
        return Path(configured).expanduser().resolve()
    if default_path is None or not str(default_path).strip():
        raise ConfigError(
            "no history file configured (set GPT_5_CLI_HISTORY_INDEX_FILE)"
        )
    return Path(default_path).expanduser().resolve()


# --- Display ---


def _output_info(context) -> list[str]:
    if not isinstance(context, dict):
        return []
    parts = []
    if isinstance(context.get("relative_path"), str):
        parts.append(f"relative={context['relative_path']}")
    if isinstance(context.get("absolute_path"), str):
        parts.append(f"absolute={context['absolute_path']}")
    if context.get("copy") is True:
        parts.append("copy")
    return parts


def format_history_line(index: int, entry: HistoryEntry) -> str:
    line = (
        f"{index:>2}) {entry.title or UNTITLED} "
        f"[{entry.model or '(no model)'}/{entry.effort or '(no effort)'}/"
        f"{entry.verbosity or '(no verbosity)'} {entry.request_count or 0}req] "
        f"{entry.updated_at or '(never updated)'}"
    )
    parts = _output_info(entry.context)
    if parts:
        line += f" paths[{', '.join(parts)}]"
    return line


def print_history_list(entries: list[HistoryEntry], console: Console) -> None:
    if not entries:
        console.print("(no history)", soft_wrap=True)
        return
    console.print(Text("=== History (newest first) ===", style="bold"), soft_wrap=True)
    for index, entry in enumerate(entries, start=1):
        console.print(format_history_line(index, entry), soft_wrap=True, markup=False)


_TURN_STYLES = {
    "user": ("user", "cyan"),
    "assistant": ("assistant", "blue"),
    "summary": ("summary", "yellow"),
}


def print_history_detail(entry: HistoryEntry, index: int, console: Console) -> None:
    console.print(
        Text(
            f"=== History #{index}: {entry.title or UNTITLED} "
            f"(updated: {entry.updated_at or '(never updated)'}, "
            f"requests: {entry.request_count or 0}) ===",
            style="bold",
        ),
        soft_wrap=True,
    )
    parts = _output_info(entry.context)
    if parts:
        console.print(f"output: {', '.join(parts)}", soft_wrap=True, markup=False)
        console.print()

    printable = [
        t
        for t in entry.turns
        if t.role in ("user", "assistant")
        or (t.role == "system" and t.kind == "summary")
    ]
    if not printable:
        console.print("(this entry has no saved messages)", soft_wrap=True)
        return
    for turn in printable:
        key = "summary" if turn.role == "system" else turn.role
        label, style = _TURN_STYLES[key]
        console.print(Text(f"[{label}]", style=f"bold {style}"), soft_wrap=True)
        console.print(Text(turn.text or ""), soft_wrap=True)
        console.print()
