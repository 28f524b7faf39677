"""Schema upgrades for history entries, plus the standalone migration command.

History files written before per-mode ``context`` payloads existed carry a
``task`` object instead. Each upgrade step takes an entry dict at version N
and returns it at version N+1; ``upgrade_entry`` chains them. The store runs
the chain on every load so old files stay readable, and
``gpt5cli-migrate-history`` rewrites a file once and for all.
"""

import argparse
import copy
import json
import sys
from pathlib import Path

from . import fmt
from .errors import AgentError

CURRENT_ENTRY_VERSION = 2

CLI_MODES = ("ask", "d2", "mermaid", "sql")


def _normalize_string(value) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _output_fields(legacy_output) -> tuple[str | None, bool | None]:
    if not isinstance(legacy_output, dict):
        return None, None
    relative = _normalize_string(legacy_output.get("file"))
    copy_flag = True if legacy_output.get("copy") is True else None
    return relative, copy_flag


def _guess_mode(task: dict) -> str | None:
    for mode in ("d2", "mermaid", "sql"):
        if task.get(mode):
            return mode
    return None


def _context_from_task(task: dict) -> dict:
    mode = task.get("mode") or _guess_mode(task)
    if not mode:
        raise ValueError("legacy entry has a task but no mode is specified")
    if mode == "default":
        mode = "ask"
    if mode not in CLI_MODES:
        raise ValueError(f"unsupported legacy mode: {mode}")

    relative, copy_flag = _output_fields(task.get("output"))
    context: dict = {"cli": mode}

    if mode in ("d2", "mermaid"):
        meta = task.get(mode) if isinstance(task.get(mode), dict) else {}
        absolute = _normalize_string(meta.get("file_path"))
        if absolute:
            context["absolute_path"] = absolute
    elif mode == "sql":
        sql = task.get("sql") if isinstance(task.get("sql"), dict) else {}
        engine = sql.get("type")
        dsn_hash = sql.get("dsn_hash")
        if not engine or not dsn_hash:
            raise ValueError("legacy SQL task is missing engine or dsn_hash")
        context["engine"] = engine
        context["dsn_hash"] = dsn_hash
        if sql.get("dsn"):
            context["dsn"] = sql["dsn"]
        connection = sql.get("connection")
        if isinstance(connection, dict):
            connection = {
                k: v for k, v in connection.items() if v is not None and v != ""
            }
            if connection:
                context["connection"] = connection

    if relative:
        context["relative_path"] = relative
    if copy_flag:
        context["copy"] = True
    return context


def _normalize_context(context: dict) -> dict:
    """Fold legacy ``output``/``file_path`` keys of a tagged context into the flat layout."""
    relative_legacy, copy_legacy = _output_fields(context.get("output"))
    relative = _normalize_string(context.get("relative_path")) or relative_legacy
    absolute = _normalize_string(
        context.get("absolute_path") or context.get("file_path")
    )
    copy_flag = True if context.get("copy") is True else copy_legacy

    result = {k: v for k, v in context.items() if k not in ("output", "file_path")}
    for key, value in (
        ("relative_path", relative),
        ("absolute_path", absolute),
        ("copy", copy_flag),
    ):
        if value is None:
            result.pop(key, None)
        else:
            result[key] = value
    return result


def entry_version(raw: dict) -> int:
    if "task" in raw:
        return 1
    context = raw.get("context")
    if isinstance(context, dict) and ("output" in context or "file_path" in context):
        return 1
    return CURRENT_ENTRY_VERSION


def _upgrade_v1_to_v2(raw: dict) -> dict:
    entry = {k: v for k, v in raw.items() if k != "task"}
    context = raw.get("context")
    if isinstance(context, dict) and context.get("cli") in CLI_MODES:
        entry["context"] = _normalize_context(context)
        return entry
    task = raw.get("task")
    if isinstance(task, dict):
        entry["context"] = _context_from_task(task)
    return entry


_UPGRADES = {
    1: _upgrade_v1_to_v2,
}


def upgrade_entry(raw: dict) -> dict:
    """Run an entry through every pending upgrade step.

    Returns a new dict; the input is left untouched. Raises ValueError when a
    legacy entry can't be mapped onto the current layout.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"history entry must be an object, got {type(raw).__name__}")
    entry = copy.deepcopy(raw)
    version = entry_version(entry)
    while version < CURRENT_ENTRY_VERSION:
        entry = _UPGRADES[version](entry)
        version += 1
    return entry


def migrate_entries(entries: list) -> tuple[list[dict], int]:
    """Upgrade a whole history array. Returns (entries, changed_count)."""
    migrated = []
    changed = 0
    for index, raw in enumerate(entries):
        try:
            upgraded = upgrade_entry(raw)
        except ValueError as e:
            raise AgentError(f"entry {index}: {e}") from e
        if upgraded != raw:
            changed += 1
        migrated.append(upgraded)
    return migrated, changed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gpt5cli-migrate-history",
        description="Convert a legacy history file to the context-based layout.",
    )
    parser.add_argument("--input", required=True, help="History file to convert.")
    parser.add_argument(
        "--output",
        default=None,
        help="Where to write the result (default: overwrite the input file).",
    )
    return parser


def main():
    from .history import write_json_atomic

    args = build_parser().parse_args()
    log = fmt.init()

    input_path = Path(args.input).expanduser().resolve()
    output_path = (
        Path(args.output).expanduser().resolve() if args.output else input_path
    )

    try:
        try:
            data = json.loads(input_path.read_text(encoding="utf-8"))
        except OSError as e:
            raise AgentError(f"cannot read {input_path}: {e}") from e
        except json.JSONDecodeError as e:
            raise AgentError(f"{input_path} is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise AgentError(f"{input_path} must contain a JSON array")
        migrated, changed = migrate_entries(data)
        write_json_atomic(output_path, migrated)
    except AgentError as e:
        log.error(str(e))
        sys.exit(1)

    log.info(f"Migrated {changed} of {len(migrated)} entries -> {output_path}")
