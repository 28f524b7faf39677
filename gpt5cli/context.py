"""Conversation context resolution: new conversation or continuation, and what it inherits."""

import dataclasses
import re
from dataclasses import dataclass, field

from . import fmt
from .history import VALID_LEVELS, HistoryEntry, HistoryStore

TITLE_MAX_CHARS = 50


@dataclass
class RequestOptions:
    """Per-request model settings plus the flags that decide continuation.

    The ``*_explicit`` bits record which settings came from the command
    line; only settings left implicit are inherited from a resumed entry.
    """

    model: str
    effort: str = "low"
    verbosity: str = "low"
    model_explicit: bool = False
    effort_explicit: bool = False
    verbosity_explicit: bool = False
    continue_conversation: bool = False
    has_explicit_history: bool = False
    mode: str = "ask"


@dataclass(frozen=True)
class ConversationContext:
    is_new_conversation: bool
    title_to_use: str
    previous_response_id: str | None = None
    previous_title: str | None = None
    resume_base_messages: tuple = ()
    resume_summary_text: str | None = None
    resume_summary_created_at: str | None = None
    # Identifies the entry this request will update; never mutated through here.
    active_entry: HistoryEntry | None = field(
        default=None, compare=False, repr=False
    )
    active_last_response_id: str | None = None
    previous_context: dict | None = field(default=None, compare=False)


def derive_title(text: str) -> str:
    return re.sub(r"\s+", " ", text)[:TITLE_MAX_CHARS]


def _level(value) -> str | None:
    if isinstance(value, str) and value.lower() in VALID_LEVELS:
        return value.lower()
    return None


def summary_message(text: str) -> dict:
    return {"role": "system", "content": [{"type": "input_text", "text": text}]}


def compute_context(
    options: RequestOptions,
    store: HistoryStore,
    input_text: str,
    initial_active_entry: HistoryEntry | None = None,
    explicit_prev_id: str | None = None,
    explicit_prev_title: str | None = None,
    *,
    log: fmt.Logger | None = None,
) -> tuple[ConversationContext, RequestOptions]:
    """Work out how this request relates to stored history.

    Returns the context and a copy of ``options`` with inherited settings
    applied; the inputs are not modified.
    """
    log = log if log is not None else fmt.get_logger()
    active_entry = initial_active_entry
    previous_response_id = explicit_prev_id or None
    previous_title = explicit_prev_title or None

    if options.continue_conversation and not options.has_explicit_history:
        latest = store.find_latest()
        if latest is None:
            log.warning("no history to continue from; starting a new conversation")
        else:
            active_entry = latest
            previous_response_id = latest.last_response_id or None
            previous_title = latest.title or None

    resume_mode = None
    summary_text = None
    summary_created_at = None
    base_messages: list[dict] = []
    continuing = options.continue_conversation and active_entry is not None

    if continuing:
        inherited = {}
        if not options.model_explicit and active_entry.model:
            inherited["model"] = active_entry.model
        effort = _level(active_entry.effort)
        if not options.effort_explicit and effort:
            inherited["effort"] = effort
        verbosity = _level(active_entry.verbosity)
        if not options.verbosity_explicit and verbosity:
            inherited["verbosity"] = verbosity
        if inherited:
            options = dataclasses.replace(options, **inherited)

        resume = active_entry.resume
        if resume is not None:
            resume_mode = resume.mode
            if resume.previous_response_id:
                previous_response_id = resume.previous_response_id
            if resume.summary is not None and resume.summary.text:
                summary_text = resume.summary.text
                summary_created_at = resume.summary.created_at
                base_messages.append(summary_message(summary_text))

    if resume_mode == "new_request":
        previous_response_id = None

    is_new = not options.continue_conversation or (
        previous_response_id is None and resume_mode != "new_request"
    )

    if is_new:
        if options.continue_conversation and previous_title:
            title = previous_title
        else:
            title = derive_title(input_text)
    else:
        title = previous_title or ""

    return (
        ConversationContext(
            is_new_conversation=is_new,
            title_to_use=title,
            previous_response_id=previous_response_id,
            previous_title=previous_title,
            resume_base_messages=tuple(base_messages),
            resume_summary_text=summary_text,
            resume_summary_created_at=summary_created_at,
            active_entry=active_entry if continuing else None,
            active_last_response_id=(
                active_entry.last_response_id if continuing else None
            ),
            previous_context=active_entry.context if continuing else None,
        ),
        options,
    )
