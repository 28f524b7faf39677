"""Post-run effects: write the answer to a file, copy it, render, and record history.

Every step runs in a fixed order (delivery, actions by priority, history)
and the first failure aborts the rest.
"""

import os
import secrets
import shutil
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from . import fmt
from .errors import ConfigError, DeliveryError, PathOutsideWorkspace
from .tools import relative_display, resolve_workspace_path, run_command

DEFAULT_EXIT_CODE = 0


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def ensure_workspace_path(raw_path: str, cwd: str | Path) -> Path:
    """Resolve an output path (``~`` expanded) through the workspace sandbox.

    Raises:
        DeliveryError: If raw_path is empty.
        PathOutsideWorkspace: If the path, or a symlink along it, escapes cwd.
    """
    if not isinstance(raw_path, str) or not raw_path.strip():
        raise DeliveryError("--output requires a non-empty path")
    return resolve_workspace_path(os.path.expanduser(raw_path.strip()), cwd)


def generate_default_output_path(
    mode: str,
    extension: str,
    cwd: str | Path,
    output_dir: str | None = None,
    now: datetime | None = None,
) -> tuple[str, Path]:
    """Return (relative, absolute) for ``<base>/<mode>-YYYYMMDD-HHMMSS-<hex4>.<ext>``.

    ``<base>`` is ``output_dir`` when given (it must stay inside the
    workspace), else ``output/<mode>``.
    """
    root = os.path.abspath(os.fspath(cwd))
    if output_dir and output_dir.strip():
        try:
            base = os.fspath(
                resolve_workspace_path(os.path.expanduser(output_dir.strip()), root)
            )
        except PathOutsideWorkspace:
            raise ConfigError(
                f"GPT_5_CLI_OUTPUT_DIR must point inside the workspace: {output_dir}"
            ) from None
    else:
        base = os.path.join(root, "output", mode)

    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    name = f"{mode}-{stamp}-{secrets.token_hex(2)}.{extension}"
    absolute = Path(base) / name
    return relative_display(absolute, root), absolute


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


@dataclass
class CopySource:
    """What ``--copy`` puts on the clipboard: literal content or a workspace file."""

    type: str  # "content" | "file"
    value: str | None = None
    file_path: str | None = None


@dataclass
class DeliveryResult:
    file_path: Path | None = None
    bytes_written: int | None = None
    copied: bool = False


def _clipboard_command() -> tuple[str, list[str]]:
    if sys.platform == "darwin":
        return "pbcopy", []
    if sys.platform == "win32":
        return "clip", []
    if os.environ.get("WAYLAND_DISPLAY") and shutil.which("wl-copy"):
        return "wl-copy", []
    if shutil.which("xclip"):
        return "xclip", ["-selection", "clipboard"]
    return "wl-copy", []


def copy_to_clipboard(text: str, cwd: str | Path) -> None:
    command, args = _clipboard_command()
    result = run_command(command, args, cwd, input_text=text)
    if not result["success"]:
        detail = result.get("message") or result["stderr"].strip() or (
            f"exit code {result['exit_code']}"
        )
        raise DeliveryError(f"{command} failed: {detail}")


def _write_output(path: Path, content: str) -> int:
    if path.is_dir():
        raise DeliveryError(f"output path is a directory: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    path.write_bytes(data)
    return len(data)


def deliver_output(
    content: str,
    *,
    cwd: str | Path,
    file_path: str | None = None,
    copy: bool = False,
    copy_source: CopySource | None = None,
    clipboard: Callable[[str, str | Path], None] | None = None,
) -> DeliveryResult:
    """Save ``content`` to ``file_path`` and/or copy it (or ``copy_source``)."""
    result = DeliveryResult()

    if file_path:
        resolved = ensure_workspace_path(file_path, cwd)
        result.file_path = resolved
        result.bytes_written = _write_output(resolved, content)

    if copy:
        source = copy_source or CopySource(type="content", value=content)
        if source.type == "file":
            resolved = ensure_workspace_path(source.file_path or "", cwd)
            try:
                text = resolved.read_text(encoding="utf-8")
            except FileNotFoundError:
                raise DeliveryError(
                    f"--copy target file does not exist: {source.file_path}"
                ) from None
        else:
            text = source.value if source.value is not None else content
        (clipboard or copy_to_clipboard)(text, cwd)
        result.copied = True

    return result


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def html_opener(html_path: str) -> tuple[str, list[str]]:
    if sys.platform == "darwin":
        return "open", [html_path]
    if sys.platform == "win32":
        return "cmd", ["/c", "start", "", html_path]
    return "xdg-open", [html_path]


def _check_process(result: dict) -> None:
    if not result["success"]:
        detail = result.get("message") or result["stderr"].strip() or (
            f"{result['command']} exited with non-zero code ({result['exit_code']})"
        )
        raise DeliveryError(detail)


@dataclass
class ClipboardAction:
    source: CopySource
    cwd: Path
    priority: int = 100
    flag: str = "--copy"
    clipboard: Callable[[str, str | Path], None] | None = field(
        default=None, repr=False
    )

    @property
    def label(self) -> str:
        return self.flag

    def run(self, default_content: str) -> bool:
        deliver_output(
            default_content,
            cwd=self.cwd,
            copy=True,
            copy_source=self.source,
            clipboard=self.clipboard,
        )
        return True


@dataclass
class D2HtmlAction:
    """Render a D2 file to HTML with the ELK layout, optionally opening it."""

    source_path: str
    html_output_path: str
    cwd: Path
    open_html: bool = False
    priority: int = 200

    @property
    def label(self) -> str:
        return "--open-html"

    def run(self, default_content: str) -> bool:
        Path(self.cwd, self.html_output_path).parent.mkdir(parents=True, exist_ok=True)
        _check_process(
            run_command(
                "d2",
                ["--layout=elk", self.source_path, self.html_output_path],
                self.cwd,
            )
        )
        if self.open_html:
            command, args = html_opener(self.html_output_path)
            _check_process(run_command(command, args, self.cwd))
        return False


def run_action(action, default_content: str, log: fmt.Logger) -> bool:
    """Run one action; returns True when it copied something."""
    log.debug(f"finalize action start: {action.label} (priority={action.priority})")
    try:
        copied = action.run(default_content)
    except Exception as e:
        log.error(f"finalize action failed: {action.label} - {e}")
        raise
    log.debug(f"finalize action done: {action.label}")
    return copied


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@dataclass
class FinalizeOutcome:
    exit_code: int
    stdout: str
    output: DeliveryResult | None = None


def handle_result(
    content: str,
    *,
    cwd: str | Path,
    log: fmt.Logger | None = None,
    stdout: str | None = None,
    output: str | None = None,
    copy_output: bool = False,
    copy_source: CopySource | None = None,
    actions=(),
    history: Callable[[], object] | None = None,
    exit_code: int = DEFAULT_EXIT_CODE,
) -> FinalizeOutcome:
    """Deliver, run actions by (priority, position), then record history."""
    log = log if log is not None else fmt.get_logger()
    delivered = DeliveryResult()

    if output or copy_output:
        delivered = deliver_output(
            content,
            cwd=cwd,
            file_path=output,
            copy=copy_output,
            copy_source=copy_source,
        )

    ordered = sorted(enumerate(actions), key=lambda pair: (pair[1].priority, pair[0]))
    for _, action in ordered:
        if run_action(action, content, log):
            delivered.copied = True

    if history is not None:
        history()

    has_output = (
        delivered.file_path is not None
        or delivered.bytes_written is not None
        or delivered.copied
    )
    return FinalizeOutcome(
        exit_code=exit_code,
        stdout=stdout if stdout is not None else content,
        output=delivered if has_output else None,
    )


@dataclass
class FinalizeHistory:
    """Inputs for the history write performed after a successful run."""

    response_id: str | None
    store: object
    conversation: object
    metadata: dict
    context_data: dict | None = None


def finalize_result(
    content: str,
    *,
    cwd: str | Path,
    user_text: str,
    log: fmt.Logger | None = None,
    actions=(),
    stdout: str | None = None,
    text_output_path: str | None = None,
    copy_output: bool = False,
    copy_source: CopySource | None = None,
    history: FinalizeHistory | None = None,
) -> FinalizeOutcome:
    def _record_history():
        history.store.upsert_conversation(
            response_id=history.response_id,
            user_text=user_text,
            assistant_text=content,
            metadata=history.metadata,
            context=history.conversation,
            context_data=history.context_data,
        )

    history_effect = None
    if history is not None and history.response_id:
        history_effect = _record_history

    return handle_result(
        content,
        cwd=cwd,
        log=log,
        stdout=stdout,
        output=text_output_path,
        copy_output=copy_output,
        copy_source=copy_source,
        actions=actions,
        history=history_effect,
    )


def resolve_result_output(
    response_output_explicit: bool,
    response_output_path: str | None,
    artifact_path: str,
) -> tuple[str | None, str]:
    """Decide where the answer text goes when a mode also produces an artifact.

    Returns (text_output_path, artifact_reference_path). The answer is only
    written separately when ``-o`` explicitly names a file other than the
    artifact itself.
    """
    if (
        response_output_explicit
        and response_output_path
        and response_output_path != artifact_path
    ):
        return response_output_path, response_output_path
    return None, artifact_path


def build_file_history_context(
    base: dict,
    *,
    context_path: str | None = None,
    default_file_path: str | None = None,
    previous: dict | None = None,
    history_artifact_path: str | None = None,
    copy_output: bool = False,
) -> dict:
    """Merge the artifact paths and copy flag into ``base``, falling back to ``previous``."""
    previous = previous if isinstance(previous, dict) else {}
    result = dict(base)

    absolute = context_path if context_path is not None else previous.get("absolute_path")
    if absolute is not None:
        result["absolute_path"] = absolute
    else:
        result.pop("absolute_path", None)

    relative = history_artifact_path or default_file_path or previous.get(
        "relative_path"
    )
    if relative is not None:
        result["relative_path"] = relative
    else:
        result.pop("relative_path", None)

    if copy_output or previous.get("copy") is True:
        result["copy"] = True
    else:
        result.pop("copy", None)

    return result
