"""Tests for external command tools (run_command, d2, mermaid)."""

import io
import json
import shutil
from pathlib import Path

import pytest
from rich.console import Console

from gpt5cli import fmt, tools
from gpt5cli.tools import (
    D2_TOOLS,
    MERMAID_TOOLS,
    ToolCall,
    ToolContext,
    ToolRuntime,
    run_command,
)


@pytest.fixture(autouse=True)
def _init_fmt():
    fmt.init(color=False, no_color=False)


def _which(name: str) -> str:
    """Resolve a command name to its absolute path, skip test if not found."""
    path = shutil.which(name)
    if path is None:
        pytest.skip(f"{name!r} not found on PATH")
    return str(Path(path).resolve())


def _ctx(tmp_path):
    log = fmt.Logger(Console(file=io.StringIO(), no_color=True, width=200))
    return ToolContext(cwd=tmp_path, log=log)


def _execute(registrations, ctx, name, args):
    runtime = ToolRuntime(registrations)
    raw = runtime.execute(ToolCall(name=name, arguments=json.dumps(args), call_id="c"), ctx)
    return json.loads(raw)


# ---------- run_command ----------


def test_success_captures_stdout(tmp_path):
    sh = _which("sh")
    result = run_command(sh, ["-c", "printf hello; printf oops >&2"], tmp_path)
    assert result["success"] is True
    assert result["exit_code"] == 0
    assert result["stdout"] == "hello"
    assert result["stderr"] == "oops"
    assert result["command"] == sh
    assert result["args"] == ["-c", "printf hello; printf oops >&2"]


def test_nonzero_exit_is_failure(tmp_path):
    sh = _which("sh")
    result = run_command(sh, ["-c", "exit 3"], tmp_path)
    assert result["success"] is False
    assert result["exit_code"] == 3


def test_runs_in_cwd(tmp_path):
    sh = _which("sh")
    (tmp_path / "marker.txt").write_text("x")
    result = run_command(sh, ["-c", "ls"], tmp_path)
    assert "marker.txt" in result["stdout"]


def test_stdin_is_forwarded(tmp_path):
    cat = _which("cat")
    result = run_command(cat, [], tmp_path, input_text="piped")
    assert result["stdout"] == "piped"


def test_env_is_merged(tmp_path):
    sh = _which("sh")
    result = run_command(sh, ["-c", "printf %s \"$GPT5CLI_TEST\""], tmp_path, env={"GPT5CLI_TEST": "yes"})
    assert result["stdout"] == "yes"


def test_missing_binary_reports_minus_one(tmp_path):
    result = run_command("definitely-not-a-real-binary-xyz", ["a"], tmp_path)
    assert result["success"] is False
    assert result["exit_code"] == -1
    assert "command not found" in result["message"]


def test_timeout_kills_process(tmp_path):
    sh = _which("sh")
    result = run_command(sh, ["-c", "sleep 5"], tmp_path, timeout=1)
    assert result["success"] is False
    assert "timed out" in result["message"]


# ---------- diagram tools ----------


def test_d2_check_passes_relative_path(tmp_path, monkeypatch):
    seen = {}

    def fake_run(command, args, cwd, **kwargs):
        seen.update(command=command, args=args, cwd=cwd)
        return {"success": True, "command": command, "args": args, "exit_code": 0, "stdout": "", "stderr": ""}

    monkeypatch.setattr(tools, "run_command", fake_run)
    result = _execute(D2_TOOLS, _ctx(tmp_path), "d2_check", {"path": "diagrams/a.d2"})
    assert result["success"] is True
    assert seen == {"command": "d2", "args": ["diagrams/a.d2"], "cwd": tmp_path}


def test_d2_fmt_uses_fmt_subcommand(tmp_path, monkeypatch):
    seen = {}

    def fake_run(command, args, cwd, **kwargs):
        seen["args"] = args
        return {"success": True, "command": command, "args": args, "exit_code": 0, "stdout": "", "stderr": ""}

    monkeypatch.setattr(tools, "run_command", fake_run)
    _execute(D2_TOOLS, _ctx(tmp_path), "d2_fmt", {"path": "a.d2"})
    assert seen["args"] == ["fmt", "a.d2"]


def test_d2_check_rejects_escape(tmp_path):
    result = _execute(D2_TOOLS, _ctx(tmp_path), "d2_check", {"path": "../a.d2"})
    assert result == {
        "success": False,
        "message": "Access to path outside workspace is not allowed: ../a.d2",
    }


def test_d2_check_missing_binary(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", str(tmp_path / "empty-bin"))
    (tmp_path / "a.d2").write_text("a -> b\n")
    result = _execute(D2_TOOLS, _ctx(tmp_path), "d2_check", {"path": "a.d2"})
    assert result["success"] is False
    assert result["exit_code"] == -1


def test_d2_check_real_binary(tmp_path):
    _which("d2")
    (tmp_path / "ok.d2").write_text("a -> b\n")
    result = _execute(D2_TOOLS, _ctx(tmp_path), "d2_check", {"path": "ok.d2"})
    assert result["success"] is True


def test_mermaid_check_missing_file(tmp_path):
    result = _execute(MERMAID_TOOLS, _ctx(tmp_path), "mermaid_check", {"path": "nope.mmd"})
    assert result["success"] is False
    assert "does not exist" in result["message"]


def test_mermaid_check_missing_binary(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", str(tmp_path / "empty-bin"))
    (tmp_path / "a.mmd").write_text("graph TD; A-->B\n")
    result = _execute(MERMAID_TOOLS, _ctx(tmp_path), "mermaid_check", {"path": "a.mmd"})
    assert result["success"] is False
    assert result["exit_code"] == -1
