"""CLI entry points and the tool-calling loop for gpt5cli."""

import argparse
import base64
import json
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

import tiktoken
from PIL import Image, UnidentifiedImageError

from . import fmt
from .config import Defaults, load_defaults, load_prompt
from .context import ConversationContext, RequestOptions, compute_context
from .errors import AgentError, ProtocolError
from .finalize import (
    ClipboardAction,
    CopySource,
    D2HtmlAction,
    FinalizeHistory,
    build_file_history_context,
    ensure_workspace_path,
    finalize_result,
    generate_default_output_path,
    resolve_result_output,
)
from .history import (
    VALID_LEVELS,
    HistoryEntry,
    HistoryResume,
    HistoryStore,
    HistorySummary,
    HistoryTurn,
    cli_entry_filter,
    now_iso,
    print_history_list,
    resolve_history_path,
)
from .sqltools import SqlConnection, build_sql_tools, resolve_dsn, sql_history_context
from .tools import (
    D2_TOOLS,
    FILE_TOOLS,
    MERMAID_TOOLS,
    ToolCall,
    ToolContext,
    ToolRegistration,
    ToolRuntime,
    relative_display,
)

_encoder = tiktoken.get_encoding("cl100k_base")

MODE_PROGS = {
    "ask": "gpt5cli",
    "d2": "gpt5cli-d2",
    "mermaid": "gpt5cli-mermaid",
    "sql": "gpt5cli-sql",
}

ARTIFACT_EXTENSIONS = {"d2": "d2", "mermaid": "mmd", "sql": "sql"}

SUMMARY_SYSTEM_PROMPT = (
    "You summarize conversation logs. Keep every point that matters and be concise."
)


# ---------------------------------------------------------------------------
# Model calls
# ---------------------------------------------------------------------------


def _field(obj, name: str):
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _item_text(item) -> str:
    if not isinstance(item, dict):
        return str(item)
    parts = []
    content = item.get("content")
    if isinstance(content, str):
        parts.append(content)
    elif isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
    if isinstance(item.get("output"), str):
        parts.append(item["output"])
    return "".join(parts)


def estimate_tokens(input_items: list, tools: list | None = None) -> int:
    """Rough token count of a Responses API input list, using tiktoken."""
    total = sum(len(_encoder.encode(_item_text(item))) for item in input_items)
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-item overhead (role, separators), ~4 tokens each
    total += 4 * len(input_items)
    return total


def call_llm(request: dict):
    """Send one Responses API request through LiteLLM and return the response."""
    import litellm

    litellm.suppress_debug_info = True

    try:
        return litellm.responses(**request)
    except Exception as e:
        raise AgentError(f"LLM call failed: {e}") from e


def extract_function_calls(response) -> list[ToolCall]:
    """Return the executable function calls of a response, in order.

    Raises ProtocolError when the response carries function-call items but
    none of them has both a name and a call id.
    """
    calls = []
    saw_call_items = False
    for item in _field(response, "output") or []:
        if _field(item, "type") != "function_call":
            continue
        saw_call_items = True
        name = _field(item, "name")
        call_id = _field(item, "call_id")
        if not name or not call_id:
            continue
        arguments = _field(item, "arguments")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments) if arguments is not None else ""
        calls.append(ToolCall(name=name, arguments=arguments, call_id=call_id))
    if saw_call_items and not calls:
        raise ProtocolError(
            "model requested tool calls but none carried a name and call id"
        )
    return calls


def extract_output_text(response) -> str:
    chunks = []
    for item in _field(response, "output") or []:
        if _field(item, "type") != "message":
            continue
        for part in _field(item, "content") or []:
            if _field(part, "type") == "output_text":
                text = _field(part, "text")
                if isinstance(text, str):
                    chunks.append(text)
    text = "".join(chunks)
    if not text:
        fallback = _field(response, "output_text")
        if isinstance(fallback, str):
            text = fallback
    return text.strip()


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


@dataclass
class LoopOutcome:
    content: str
    response_id: str | None
    reached_max_iterations: bool
    iterations: int


def run_agent_loop(
    request: dict,
    runtime: ToolRuntime,
    ctx: ToolContext,
    max_iterations: int,
    log: fmt.Logger | None = None,
) -> LoopOutcome:
    """Call the model until it answers without tool calls or the budget runs out.

    Tool outputs go back as ``function_call_output`` items chained to the
    previous response via ``previous_response_id``. When the budget runs
    out the last non-empty assistant text is returned with
    ``reached_max_iterations=True``.
    """
    log = log if log is not None else fmt.get_logger()
    tools = runtime.definitions()
    current = dict(request)
    if tools:
        current["tools"] = tools

    turns = 0
    last_text = ""
    response_id = None

    while turns < max_iterations:
        turns += 1
        log.turn_header(turns, max_iterations, estimate_tokens(current["input"], tools))

        t0 = time.monotonic()
        with log.llm_spinner():
            response = call_llm(current)
        log.llm_timing(time.monotonic() - t0, _field(response, "status") or "completed")

        response_id = _field(response, "id") or response_id
        calls = extract_function_calls(response)
        text = extract_output_text(response)
        if text:
            last_text = text

        if not calls:
            if not text:
                raise ProtocolError("model returned neither tool calls nor text")
            log.completion(turns, "ok")
            return LoopOutcome(
                content=text,
                response_id=response_id,
                reached_max_iterations=False,
                iterations=turns,
            )

        if text:
            log.assistant_text(text)
        outputs = [
            {
                "type": "function_call_output",
                "call_id": call.call_id,
                "output": runtime.execute(call, ctx),
            }
            for call in calls
        ]
        current = {
            k: v for k, v in current.items() if k not in ("input", "previous_response_id")
        }
        current["input"] = outputs
        if response_id:
            current["previous_response_id"] = response_id

    log.completion(turns, "max_iterations")
    return LoopOutcome(
        content=last_text,
        response_id=response_id,
        reached_max_iterations=True,
        iterations=turns,
    )


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


def system_message(text: str) -> dict:
    return {"role": "system", "content": [{"type": "input_text", "text": text}]}


def build_request(
    options: RequestOptions,
    context: ConversationContext,
    input_text: str,
    system_prompt: str | None = None,
    additional_system_messages=(),
    image_data_url: str | None = None,
    log: fmt.Logger | None = None,
) -> dict:
    log = log if log is not None else fmt.get_logger()
    messages = []
    if context.is_new_conversation and system_prompt:
        messages.append(system_message(system_prompt))
    messages.extend(additional_system_messages)
    messages.extend(context.resume_base_messages)

    content: list[dict] = [{"type": "input_text", "text": input_text}]
    if image_data_url:
        content.append(
            {"type": "input_image", "image_url": image_data_url, "detail": "auto"}
        )
    messages.append({"role": "user", "content": content})

    request = {
        "model": options.model,
        "input": messages,
        "reasoning": {"effort": options.effort},
        "text": {"verbosity": options.verbosity},
    }
    if options.continue_conversation and context.previous_response_id:
        request["previous_response_id"] = context.previous_response_id
    elif options.continue_conversation and not context.resume_summary_text:
        log.warning(
            "no previous response id is available; the model will not see earlier turns"
        )
    return request


def prepare_image_data(
    image_path: str | None, cwd: Path, log: fmt.Logger | None = None
) -> str | None:
    """Validate an image with Pillow and return it as a ``data:`` URL."""
    if not image_path:
        return None
    log = log if log is not None else fmt.get_logger()
    path = Path(image_path).expanduser()
    if not path.is_absolute():
        path = cwd / path
    if not path.is_file():
        raise AgentError(f"image file not found: {image_path}")
    try:
        with Image.open(path) as img:
            image_format = img.format
            img.verify()
    except (UnidentifiedImageError, OSError) as e:
        raise AgentError(f"not a readable image: {image_path} ({e})") from e
    mime = Image.MIME.get(image_format or "")
    if not mime:
        raise AgentError(f"unsupported image format {image_format}: {image_path}")
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    log.info(f"image attached: {path} ({mime})")
    return f"data:{mime};base64,{encoded}"


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------


def format_turns_for_summary(turns: list[HistoryTurn]) -> str:
    blocks = []
    for turn in turns:
        text = (turn.text or "").strip()
        if not text:
            continue
        speaker = "summary" if turn.kind == "summary" else turn.role
        blocks.append(f"{speaker}:\n{text}")
    return "\n\n---\n\n".join(blocks)


def perform_compact(
    store: HistoryStore,
    index: int,
    *,
    model: str | None = None,
    log: fmt.Logger | None = None,
    out=None,
) -> HistoryEntry:
    """Replace an entry's turns with a model-written summary.

    The next continuation of the entry starts a fresh response chain seeded
    with the summary.
    """
    log = log if log is not None else fmt.get_logger()
    entry = store.select_by_number(index)
    if not entry.turns:
        raise AgentError("this history entry has no messages to summarize")
    conversation = format_turns_for_summary(entry.turns)
    if not conversation:
        raise AgentError("this history entry has no messages to summarize")

    prompt = (
        "Below is the conversation so far. Read every message and reflect it in the summary.\n"
        f"---\n{conversation}\n---\n\n"
        "Keep the summary simple; bullet points or short paragraphs are fine."
    )
    request = {
        "model": model or entry.model or Defaults().model_nano,
        "input": [
            system_message(SUMMARY_SYSTEM_PROMPT),
            {"role": "user", "content": [{"type": "input_text", "text": prompt}]},
        ],
        "reasoning": {"effort": "low"},
        "text": {"verbosity": "low"},
    }
    log.info(f"Compacting history #{index} ({len(entry.turns)} turns)")
    with log.llm_spinner("Summarizing"):
        response = call_llm(request)
    summary = extract_output_text(response)
    if not summary:
        raise AgentError("the model returned an empty summary")

    now = now_iso()
    entry.turns = [HistoryTurn(role="system", kind="summary", text=summary, at=now)]
    entry.resume = HistoryResume(
        mode="new_request",
        previous_response_id="",
        summary=HistorySummary(text=summary, created_at=now),
    )
    entry.updated_at = now
    store.upsert_entry(entry)

    print(summary, file=out or sys.stdout)
    return entry


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------


@dataclass
class ModePlan:
    """Everything mode-specific that a run needs besides the shared request."""

    tools: list[ToolRegistration]
    instructions: list[dict] = field(default_factory=list)
    text_output_path: str | None = None
    copy_content: bool = False
    actions: list = field(default_factory=list)
    context_data: dict | None = None


def _artifact_path(
    mode: str, args, previous: dict | None, cwd: Path, defaults: Defaults
) -> tuple[str, Path]:
    """Pick the file a diagram/SQL run works on: -o, then history, then a fresh default."""
    raw = args.output
    if not raw and isinstance(previous, dict):
        raw = previous.get("relative_path")
    if not raw:
        return generate_default_output_path(
            mode, ARTIFACT_EXTENSIONS[mode], cwd, defaults.output_dir
        )
    absolute = ensure_workspace_path(raw, cwd)
    if absolute.is_dir():
        raise AgentError(f"{mode} target path is a directory: {raw}")
    return relative_display(absolute, cwd), absolute


def d2_instructions(relative_path: str, exists: bool) -> list[dict]:
    first_step = (
        "Use read_file to inspect the current content before deciding what to change."
        if exists
        else "The file does not exist yet; create it with write_file."
    )
    text = "\n\n".join(
        [
            "You create and update D2 diagrams.",
            "Only touch files inside the local workspace and only use the tools provided.",
            f"Target file: {relative_path}",
            "\n".join(
                [
                    "- read_file: read a file to see its current content",
                    "- write_file: overwrite a file with UTF-8 text",
                    "- d2_check: validate the D2 syntax",
                    "- d2_fmt: format the D2 file in place",
                ]
            ),
            "\n".join(
                [
                    "Workflow:",
                    f"1. {first_step}",
                    "2. After every change, run d2_check and fix any syntax error.",
                    "3. Once d2_check passes, run d2_fmt.",
                    "4. Repeat 2-3 until both succeed.",
                    "5. In the final answer, summarize the change, the file path and the "
                    "d2_check/d2_fmt results. Do not paste the full D2 source.",
                ]
            ),
        ]
    )
    return [system_message(text)]


def mermaid_instructions(relative_path: str, exists: bool) -> list[dict]:
    first_step = (
        "Use read_file to inspect the current content before deciding what to change."
        if exists
        else "The file does not exist yet; create it with write_file."
    )
    text = "\n\n".join(
        [
            "You create and update Mermaid diagrams.",
            "Only touch files inside the local workspace and only use the tools provided.",
            f"Target file: {relative_path}",
            "\n".join(
                [
                    "- read_file: read a file to see its current content",
                    "- write_file: overwrite a file with UTF-8 text",
                    "- mermaid_check: validate the Mermaid syntax",
                ]
            ),
            "\n".join(
                [
                    "Workflow:",
                    f"1. {first_step} In Markdown files, keep the code inside a "
                    "```mermaid block.",
                    "2. After every change, run mermaid_check and fix any syntax error.",
                    "3. In the final answer, summarize the change, the file path and the "
                    "mermaid_check result. Do not paste the full Mermaid source.",
                ]
            ),
        ]
    )
    return [system_message(text)]


def sql_instructions(
    conn: SqlConnection, relative_path: str, max_iterations: int
) -> list[dict]:
    label = "PostgreSQL" if conn.engine == "postgresql" else "MySQL"
    text = "\n\n".join(
        [
            f"You are an expert in {label} SELECT queries.",
            "Only use the tools provided and never access anything outside the local workspace.",
            f"Artifact file: {relative_path} (relative to the workspace)",
            f"Connection: {conn.describe()} (dsn hash={conn.dsn_hash})",
            f"Iteration budget: about {max_iterations} rounds",
            "\n".join(
                [
                    "- sql_fetch_table_schema: list tables from information_schema.tables",
                    "- sql_fetch_column_schema: list columns from information_schema.columns",
                    "- sql_fetch_enum_schema: list enum types and their values",
                    "- sql_fetch_index_schema: list index definitions",
                    "- sql_dry_run: validate a SELECT with EXPLAIN (FORMAT JSON)",
                    "- sql_format: format SQL with sqruff",
                    "- write_file: save the final SQL to the artifact file",
                    "- read_file: read an existing SQL file",
                ]
            ),
            "\n".join(
                [
                    "Workflow:",
                    "1. Use the schema tools to learn the tables, columns, enums and indexes you need.",
                    "2. Only write SELECT or WITH ... SELECT statements.",
                    "3. Format the query with sql_format, then run sql_dry_run; repeat until it succeeds "
                    "before answering.",
                    "4. Save the validated query with write_file.",
                    "5. If sql_dry_run fails, explain why and go back to step 1.",
                    "6. In the final answer, show the formatted SQL in a ```sql block and "
                    "summarize the dry-run result.",
                ]
            ),
        ]
    )
    return [system_message(text)]


def _html_output_path(args, artifact_relative: str) -> str:
    if args.html_output:
        return args.html_output
    return str(Path(artifact_relative).with_suffix(".html").as_posix())


def plan_mode(
    mode: str,
    args,
    context: ConversationContext,
    cwd: Path,
    defaults: Defaults,
    max_iterations: int,
) -> ModePlan:
    previous = context.previous_context
    if mode == "ask":
        absolute = str(ensure_workspace_path(args.output, cwd)) if args.output else None
        return ModePlan(
            tools=list(FILE_TOOLS),
            text_output_path=args.output,
            copy_content=args.copy,
            context_data=build_file_history_context(
                {"cli": "ask"},
                context_path=absolute,
                history_artifact_path=args.output,
                previous=previous,
                copy_output=args.copy,
            ),
        )

    conn = resolve_dsn(args.dsn, previous) if mode == "sql" else None
    relative, absolute = _artifact_path(mode, args, previous, cwd, defaults)
    text_output_path, _ = resolve_result_output(
        args.output is not None, args.output, relative
    )
    file_context = build_file_history_context(
        {"cli": mode},
        context_path=str(absolute),
        history_artifact_path=relative,
        previous=previous,
        copy_output=args.copy,
    )

    actions: list = []
    if args.copy:
        actions.append(
            ClipboardAction(
                source=CopySource(type="file", file_path=relative), cwd=cwd
            )
        )

    if mode == "d2":
        if args.open_html or args.html_output:
            actions.append(
                D2HtmlAction(
                    source_path=relative,
                    html_output_path=_html_output_path(args, relative),
                    cwd=cwd,
                    open_html=args.open_html,
                )
            )
        return ModePlan(
            tools=list(D2_TOOLS),
            instructions=d2_instructions(relative, absolute.exists()),
            text_output_path=text_output_path,
            actions=actions,
            context_data=file_context,
        )

    if mode == "mermaid":
        return ModePlan(
            tools=list(MERMAID_TOOLS),
            instructions=mermaid_instructions(relative, absolute.exists()),
            text_output_path=text_output_path,
            actions=actions,
            context_data=file_context,
        )

    return ModePlan(
        tools=build_sql_tools(conn),
        instructions=sql_instructions(conn, relative, max_iterations),
        text_output_path=text_output_path,
        actions=actions,
        context_data=sql_history_context(conn, base=file_context),
    )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}")
    if n < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {n}")
    return n


def build_parser(mode: str = "ask") -> argparse.ArgumentParser:
    descriptions = {
        "ask": "Ask a GPT-5 model a question, with conversation history.",
        "d2": "Create or update a D2 diagram with a GPT-5 model.",
        "mermaid": "Create or update a Mermaid diagram with a GPT-5 model.",
        "sql": "Write and validate a SELECT query against a live database.",
    }
    parser = argparse.ArgumentParser(
        prog=MODE_PROGS[mode],
        description=descriptions[mode],
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "prompt", nargs="*", help="Input text. Read from stdin when omitted."
    )

    model = parser.add_argument_group("model")
    model.add_argument(
        "-m",
        "--model",
        type=int,
        choices=(0, 1, 2),
        default=None,
        help="Model: 0=nano (default), 1=mini, 2=main.",
    )
    model.add_argument(
        "-e",
        "--effort",
        type=int,
        choices=(0, 1, 2),
        default=None,
        help="Reasoning effort: 0=low, 1=medium, 2=high.",
    )
    model.add_argument(
        "-v",
        "--verbosity",
        type=int,
        choices=(0, 1, 2),
        default=None,
        help="Answer verbosity: 0=low, 1=medium, 2=high.",
    )
    model.add_argument(
        "--max-iterations",
        type=_positive_int,
        default=None,
        help="Maximum model round-trips (default: 10).",
    )

    history = parser.add_argument_group("history")
    history.add_argument(
        "-c",
        "--continue-conversation",
        action="store_true",
        help="Continue the most recent conversation.",
    )
    for short, long, what in (
        ("-r", "--resume", "Continue conversation N"),
        ("-d", "--delete", "Delete history entry N"),
        ("-s", "--show", "Show history entry N"),
    ):
        history.add_argument(
            short,
            long,
            nargs="?",
            const=0,
            type=_positive_int,
            default=None,
            metavar="N",
            help=f"{what}. Without N, list the history.",
        )
    history.add_argument(
        "--compact",
        type=_positive_int,
        default=None,
        metavar="N",
        help="Summarize history entry N and replace its turns with the summary.",
    )

    io = parser.add_argument_group("input/output")
    io.add_argument("-i", "--image", default=None, help="Attach an image file.")
    io.add_argument(
        "-o",
        "--output",
        default=None,
        help=(
            "Save the answer to this file."
            if mode == "ask"
            else "Target file (inside the workspace)."
        ),
    )
    io.add_argument(
        "--copy",
        action="store_true",
        help="Copy the answer (or the target file) to the clipboard.",
    )
    if mode == "d2":
        io.add_argument(
            "--open-html",
            action="store_true",
            help="Render the diagram to HTML and open it.",
        )
        io.add_argument(
            "--html-output",
            default=None,
            help="Where to write the rendered HTML (default: next to the .d2 file).",
        )
    if mode == "sql":
        io.add_argument(
            "-P",
            "--dsn",
            default=None,
            help="Database DSN (postgresql://... or mysql://...).",
        )

    display = parser.add_argument_group("display")
    display.add_argument("--debug", action="store_true", help="Show debug output.")
    display.add_argument(
        "--quiet", action="store_true", help="Only print the answer and errors."
    )
    color = display.add_mutually_exclusive_group()
    color.add_argument(
        "--color", action="store_true", default=None, help="Force colored output."
    )
    color.add_argument(
        "--no-color",
        action="store_true",
        default=None,
        help="Disable colored output.",
    )
    return parser


def _validate_args(args, parser: argparse.ArgumentParser) -> None:
    history_ops = [
        flag
        for flag, value in (
            ("--resume", args.resume),
            ("--delete", args.delete),
            ("--show", args.show),
            ("--compact", args.compact),
        )
        if value is not None
    ]
    if len(history_ops) > 1:
        parser.error(f"{' and '.join(history_ops)} cannot be combined")
    if args.compact is not None and (args.prompt or args.continue_conversation):
        parser.error("--compact cannot be combined with input or --continue-conversation")


def read_input(args, parser: argparse.ArgumentParser) -> str:
    if args.prompt:
        text = " ".join(args.prompt)
    elif not sys.stdin.isatty():
        text = sys.stdin.read()
    else:
        text = ""
    if not text.strip():
        parser.print_help(sys.stderr)
        sys.exit(2)
    return text.strip()


def _level_arg(value: int | None, fallback: str) -> str:
    return VALID_LEVELS[value] if value is not None else fallback


def _run_main(args, mode: str, parser: argparse.ArgumentParser, log: fmt.Logger):
    cwd = Path.cwd()
    defaults = load_defaults(cwd, log)
    if defaults.quiet and not args.quiet:
        log.quiet = True
    color, no_color = bool(args.color), bool(args.no_color)
    if args.color is None and args.no_color is None and defaults.color is not None:
        color, no_color = defaults.color, not defaults.color
        log.console = fmt.make_console(color=color, no_color=no_color)

    store = HistoryStore(
        resolve_history_path(defaults.history_file),
        log=log,
        entry_filter=cli_entry_filter(mode),
    )
    stdout_console = fmt.make_console(color=color, no_color=no_color, stderr=False)

    if args.compact is not None:
        perform_compact(
            store,
            args.compact,
            model=defaults.model_for(args.model) if args.model is not None else None,
            log=log,
        )
        return
    if args.delete is not None:
        if args.delete == 0:
            print_history_list(store.filtered_entries(), stdout_console)
            return
        removed_id, title = store.delete_by_number(args.delete)
        print(f"deleted history #{args.delete}: {title} ({removed_id or 'no id'})")
        return
    if args.show is not None:
        if args.show == 0:
            print_history_list(store.filtered_entries(), stdout_console)
            return
        store.show_by_number(args.show, console=stdout_console)
        return

    active_entry = None
    if args.resume is not None:
        if args.resume == 0:
            print_history_list(store.filtered_entries(), stdout_console)
            return
        active_entry = store.select_by_number(args.resume)

    input_text = read_input(args, parser)

    options = RequestOptions(
        model=defaults.model_for(args.model if args.model is not None else 0),
        effort=_level_arg(args.effort, defaults.effort),
        verbosity=_level_arg(args.verbosity, defaults.verbosity),
        model_explicit=args.model is not None,
        effort_explicit=args.effort is not None,
        verbosity_explicit=args.verbosity is not None,
        continue_conversation=args.continue_conversation or active_entry is not None,
        has_explicit_history=active_entry is not None,
        mode=mode,
    )
    context, options = compute_context(
        options,
        store,
        input_text,
        initial_active_entry=active_entry,
        explicit_prev_id=active_entry.last_response_id if active_entry else None,
        explicit_prev_title=active_entry.title if active_entry else None,
        log=log,
    )
    log.debug(
        f"model={options.model} effort={options.effort} verbosity={options.verbosity} "
        f"continue={options.continue_conversation} new={context.is_new_conversation}"
    )

    max_iterations = args.max_iterations or defaults.max_iterations
    plan = plan_mode(mode, args, context, cwd, defaults, max_iterations)
    request = build_request(
        options,
        context,
        input_text,
        system_prompt=load_prompt(defaults.prompts_dir, mode),
        additional_system_messages=plan.instructions,
        image_data_url=prepare_image_data(args.image, cwd, log),
        log=log,
    )

    outcome = run_agent_loop(
        request,
        ToolRuntime(plan.tools),
        ToolContext(cwd=cwd, log=log),
        max_iterations,
        log,
    )
    if outcome.reached_max_iterations:
        log.warning(
            f"reached the iteration limit ({max_iterations}) before a final answer"
        )
        if not outcome.content:
            raise AgentError(
                "no answer was produced before reaching the iteration limit"
            )

    result = finalize_result(
        outcome.content,
        cwd=cwd,
        user_text=input_text,
        log=log,
        actions=plan.actions,
        text_output_path=plan.text_output_path,
        copy_output=plan.copy_content,
        history=FinalizeHistory(
            response_id=outcome.response_id,
            store=store,
            conversation=context,
            metadata={
                "model": options.model,
                "effort": options.effort,
                "verbosity": options.verbosity,
            },
            context_data=plan.context_data,
        ),
    )
    if result.output is not None and result.output.file_path is not None:
        log.info(
            f"saved answer to {relative_display(result.output.file_path, cwd)} "
            f"({result.output.bytes_written} bytes)"
        )
    print(result.stdout)


def _main(mode: str):
    parser = build_parser(mode)
    args = parser.parse_args()
    _validate_args(args, parser)

    log = fmt.init(
        color=bool(args.color),
        no_color=bool(args.no_color),
        debug=args.debug,
        quiet=args.quiet,
    )
    try:
        _run_main(args, mode, parser, log)
    except AgentError as e:
        log.error(str(e))
        sys.exit(1)


def main():
    _main("ask")


def main_d2():
    _main("d2")


def main_mermaid():
    _main("mermaid")


def main_sql():
    _main("sql")
