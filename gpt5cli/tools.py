"""Tool definitions, the workspace sandbox, and the dispatch runtime."""

import json
import os
import shutil
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from . import fmt
from .errors import PathOutsideWorkspace

MAX_ARG_LOG = 1000
COMMAND_TIMEOUT = 300  # seconds
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def resolve_workspace_path(raw_path: str, cwd: str | Path) -> Path:
    """Resolve ``raw_path`` against ``cwd`` and make sure it stays inside.

    The check is lexical first (``..`` segments and absolute escapes), then
    repeated on the symlink-resolved path so a link inside the workspace
    can't point somewhere else. Returns the lexical absolute path.

    Raises:
        ValueError: If raw_path is empty or not a string.
        PathOutsideWorkspace: If the path escapes cwd.
    """
    if not isinstance(raw_path, str) or not raw_path.strip():
        raise ValueError("path must be a non-empty string")

    base = os.path.abspath(os.fspath(cwd))
    candidate = os.path.normpath(os.path.join(base, raw_path))
    if not _is_inside(candidate, base):
        raise PathOutsideWorkspace(raw_path)

    real_base = os.path.realpath(base)
    if not _is_inside(os.path.realpath(candidate), real_base):
        raise PathOutsideWorkspace(raw_path)

    return Path(candidate)


def _is_inside(path: str, base: str) -> bool:
    try:
        rel = os.path.relpath(path, base)
    except ValueError:
        # Different drives on Windows.
        return False
    if os.path.isabs(rel):
        return False
    first = rel.split(os.sep, 1)[0]
    return first != ".."


def relative_display(path: Path, cwd: str | Path) -> str:
    rel = os.path.relpath(path, os.path.abspath(os.fspath(cwd)))
    return Path(rel).as_posix()


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


@dataclass
class ToolContext:
    """What a handler may touch: the workspace root and a log sink."""

    cwd: Path
    log: fmt.Logger


@dataclass
class ToolRegistration:
    name: str
    description: str
    parameters: dict
    handler: Callable[[dict, ToolContext], dict]

    def definition(self) -> dict:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "strict": False,
        }


@dataclass
class ToolCall:
    name: str
    arguments: str
    call_id: str


class ToolRuntime:
    """Maps tool-call names to handlers.

    ``execute`` never raises: every failure comes back as a JSON string
    ``{"success": false, "message": ...}`` so the model can react to it.
    """

    def __init__(self, registrations: list[ToolRegistration]):
        self._handlers: dict[str, ToolRegistration] = {}
        for reg in registrations:
            if reg.name in self._handlers:
                raise ValueError(f"duplicate tool registration: {reg.name}")
            self._handlers[reg.name] = reg

    def definitions(self) -> list[dict]:
        return [reg.definition() for reg in self._handlers.values()]

    def execute(self, call: ToolCall, ctx: ToolContext) -> str:
        result = self._run(call, ctx)
        return json.dumps(result, ensure_ascii=False, default=str)

    def _run(self, call: ToolCall, ctx: ToolContext) -> dict:
        try:
            args = json.loads(call.arguments) if call.arguments else {}
            if not isinstance(args, dict):
                raise ValueError(
                    f"expected a JSON object, got {type(args).__name__}"
                )
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            message = f"Failed to parse arguments for {call.name}: {e}"
            ctx.log.tool_error(call.name, message)
            return {"success": False, "message": message}

        reg = self._handlers.get(call.name)
        if reg is None:
            message = f"Unknown tool: {call.name}"
            ctx.log.tool_error(call.name, message)
            return {"success": False, "message": message}

        pretty = json.dumps(args, indent=2, ensure_ascii=False)
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        ctx.log.tool_call(call.name, pretty)

        t0 = time.monotonic()
        try:
            result = reg.handler(args, ctx)
        except Exception as e:
            ctx.log.tool_error(call.name, str(e))
            return {"success": False, "message": str(e)}
        elapsed = time.monotonic() - t0

        if not isinstance(result, dict):
            result = {"success": True, "result": result}
        if result.get("success", True):
            ctx.log.tool_result(call.name, elapsed, _preview(result))
        else:
            ctx.log.tool_error(call.name, result.get("message") or _preview(result))
        return result


def _preview(result: dict) -> str:
    text = json.dumps(result, ensure_ascii=False, default=str)
    return text[:500]


# ---------------------------------------------------------------------------
# External commands
# ---------------------------------------------------------------------------


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


def run_command(
    command: str,
    args: list[str],
    cwd: str | Path,
    *,
    input_text: str | None = None,
    timeout: int = COMMAND_TIMEOUT,
    env: dict[str, str] | None = None,
) -> dict:
    """Run an external program and report its outcome as a tool result.

    A program that can't be started reports exit_code -1 instead of
    raising, so callers can hand the dict straight back to the model.
    """
    result: dict[str, Any] = {
        "success": False,
        "command": command,
        "args": list(args),
        "exit_code": -1,
        "stdout": "",
        "stderr": "",
    }
    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        cwd=os.fspath(cwd),
    )
    if env is not None:
        popen_kwargs["env"] = {**os.environ, **env}
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen([command, *args], **popen_kwargs)
    except FileNotFoundError:
        result["message"] = f"command not found: {command}"
        return result
    except PermissionError:
        result["message"] = f"permission denied executing: {command}"
        return result
    except OSError as e:
        result["message"] = f"failed to start {command}: {e}"
        return result

    try:
        stdout, stderr = proc.communicate(
            input=input_text.encode("utf-8") if input_text is not None else None,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        _kill_process_tree(proc)
        stdout, stderr = proc.communicate()
        result["stdout"] = stdout.decode("utf-8", errors="replace")
        result["stderr"] = stderr.decode("utf-8", errors="replace")
        result["message"] = f"{command} timed out after {timeout}s"
        return result

    result["exit_code"] = proc.returncode
    result["success"] = proc.returncode == 0
    result["stdout"] = stdout.decode("utf-8", errors="replace")
    result["stderr"] = stderr.decode("utf-8", errors="replace")
    return result


def _require_str(args: dict, key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} must be a non-empty string")
    return value


# ---------------------------------------------------------------------------
# Filesystem tools
# ---------------------------------------------------------------------------


def read_file(args: dict, ctx: ToolContext) -> dict:
    raw = _require_str(args, "path")
    resolved = resolve_workspace_path(raw, ctx.cwd)
    if resolved.is_dir():
        return {"success": False, "message": f"path is a directory: {raw}"}
    if not resolved.exists():
        return {"success": False, "message": f"path does not exist: {raw}"}
    content = resolved.read_text(encoding="utf-8")
    return {
        "success": True,
        "path": relative_display(resolved, ctx.cwd),
        "content": content,
        "encoding": "utf8",
    }


def write_file(args: dict, ctx: ToolContext) -> dict:
    raw = _require_str(args, "path")
    content = args.get("content")
    if not isinstance(content, str):
        raise ValueError("content must be a string")
    resolved = resolve_workspace_path(raw, ctx.cwd)
    if resolved.is_dir():
        return {"success": False, "message": f"path is a directory: {raw}"}
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    return {
        "success": True,
        "path": relative_display(resolved, ctx.cwd),
        "bytes_written": len(data),
    }


_PATH_PARAMETERS = {
    "type": "object",
    "properties": {
        "path": {
            "type": "string",
            "description": "Path relative to the workspace root.",
        },
    },
    "required": ["path"],
    "additionalProperties": False,
}

READ_FILE_TOOL = ToolRegistration(
    name="read_file",
    description="Read a UTF-8 text file inside the workspace and return its content.",
    parameters=_PATH_PARAMETERS,
    handler=read_file,
)

WRITE_FILE_TOOL = ToolRegistration(
    name="write_file",
    description=(
        "Create or overwrite a UTF-8 text file inside the workspace, "
        "creating parent directories as needed."
    ),
    parameters={
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path relative to the workspace root.",
            },
            "content": {
                "type": "string",
                "description": "The full content to write.",
            },
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    },
    handler=write_file,
)


# ---------------------------------------------------------------------------
# Diagram tools
# ---------------------------------------------------------------------------


def d2_check(args: dict, ctx: ToolContext) -> dict:
    raw = _require_str(args, "path")
    resolved = resolve_workspace_path(raw, ctx.cwd)
    return run_command("d2", [relative_display(resolved, ctx.cwd)], ctx.cwd)


def d2_fmt(args: dict, ctx: ToolContext) -> dict:
    raw = _require_str(args, "path")
    resolved = resolve_workspace_path(raw, ctx.cwd)
    return run_command("d2", ["fmt", relative_display(resolved, ctx.cwd)], ctx.cwd)


def mermaid_check(args: dict, ctx: ToolContext) -> dict:
    raw = _require_str(args, "path")
    resolved = resolve_workspace_path(raw, ctx.cwd)
    if not resolved.is_file():
        return {"success": False, "message": f"path does not exist: {raw}"}
    command = shutil.which("mmdc") or "mmdc"
    with tempfile.TemporaryDirectory(prefix="gpt5cli-mermaid-") as tmp:
        output = os.path.join(tmp, "out.svg")
        return run_command(
            command,
            ["-i", str(resolved), "-o", output, "--quiet"],
            ctx.cwd,
        )


D2_CHECK_TOOL = ToolRegistration(
    name="d2_check",
    description="Validate a D2 diagram file by compiling it with the d2 CLI.",
    parameters=_PATH_PARAMETERS,
    handler=d2_check,
)

D2_FMT_TOOL = ToolRegistration(
    name="d2_fmt",
    description="Format a D2 diagram file in place with `d2 fmt`.",
    parameters=_PATH_PARAMETERS,
    handler=d2_fmt,
)

MERMAID_CHECK_TOOL = ToolRegistration(
    name="mermaid_check",
    description="Validate a Mermaid diagram file by rendering it with mermaid-cli (mmdc).",
    parameters=_PATH_PARAMETERS,
    handler=mermaid_check,
)

FILE_TOOLS = [READ_FILE_TOOL, WRITE_FILE_TOOL]
D2_TOOLS = [*FILE_TOOLS, D2_CHECK_TOOL, D2_FMT_TOOL]
MERMAID_TOOLS = [*FILE_TOOLS, MERMAID_CHECK_TOOL]
