"""ANSI-formatted stderr output using Rich.

Components never print on their own: they receive a ``Logger`` and write
through it, so tests can capture output per instance and two runs in one
process don't share a console.
"""

import contextlib

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text


def make_console(
    *, color: bool = False, no_color: bool = False, stderr: bool = True
) -> Console:
    kwargs: dict = {"stderr": stderr, "highlight": False}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    return Console(**kwargs)


class Logger:
    """Diagnostic sink passed explicitly to each component."""

    def __init__(
        self,
        console: Console | None = None,
        *,
        debug: bool = False,
        quiet: bool = False,
    ):
        self.console = console if console is not None else make_console()
        self.debug_enabled = debug
        self.quiet = quiet

    def _print(self, renderable) -> None:
        self.console.print(renderable, soft_wrap=True)

    # -- Turn structure ------------------------------------------------------

    def turn_header(self, n: int, max_n: int, token_est: int) -> None:
        if self.quiet:
            return
        title = f"Iteration {n}/{max_n} (~{token_est} tokens)"
        self._print(Rule(title, style="cyan"))

    def llm_timing(self, elapsed: float, status: str) -> None:
        if self.quiet:
            return
        style = "green" if status == "completed" else "yellow"
        text = Text()
        text.append(f"  Model responded in {elapsed:.1f}s", style=style)
        text.append(f"  status={escape(str(status))}", style=style)
        self._print(text)

    def llm_spinner(self, label: str = "Waiting for model"):
        """Return a Rich Status context manager that spins on stderr."""
        if self.quiet or not self.console.is_terminal:
            return contextlib.nullcontext()
        return self.console.status(f"  {label}", spinner="dots")

    def completion(self, iterations: int, exit_code: str) -> None:
        if self.quiet:
            return
        if exit_code == "ok":
            self._print(
                Text(
                    f"  \u2713 Agent finished: {iterations} iterations",
                    style="bold green",
                )
            )
        else:
            self._print(
                Text(
                    f"  Agent finished: {iterations} iterations, exit={exit_code}",
                    style="bold red",
                )
            )

    # -- Tool calls ----------------------------------------------------------

    def tool_call(self, name: str, args_json: str) -> None:
        if self.quiet:
            return
        header = Text()
        header.append("  \u25b6 ", style="bold magenta")
        header.append(name, style="bold magenta")
        self._print(header)
        if args_json:
            for line in args_json.splitlines():
                self._print(Text(f"    {line}", style="dim"))

    def tool_result(self, name: str, elapsed: float, preview: str) -> None:
        if self.quiet:
            return
        header = Text()
        header.append(f"  \u2713 {name}", style="green")
        header.append(f"  {elapsed:.1f}s", style="green")
        self._print(header)
        if preview:
            self._print(Text(f"    {preview}", style="dim"))

    def tool_error(self, name: str, msg: str) -> None:
        if self.quiet:
            return
        header = Text()
        header.append(f"  \u2717 {name}", style="bold red")
        header.append(f"  {msg}", style="red")
        self._print(header)

    # -- Assistant text ------------------------------------------------------

    def assistant_text(self, text: str) -> None:
        if self.quiet:
            return
        line = Text()
        line.append("  [assistant] ", style="blue")
        line.append(text)
        self._print(line)

    # -- Diagnostics ---------------------------------------------------------

    def info(self, msg: str) -> None:
        if self.quiet:
            return
        self._print(Text(f"  {msg}", style="dim"))

    def debug(self, msg: str) -> None:
        if self.quiet or not self.debug_enabled:
            return
        self._print(Text(f"  [debug] {msg}", style="dim italic"))

    def warning(self, msg: str) -> None:
        if self.quiet:
            return
        line = Text()
        line.append("  \u26a0 Warning: ", style="yellow")
        line.append(msg, style="yellow")
        self._print(line)

    def error(self, msg: str) -> None:
        line = Text()
        line.append("Error: ", style="bold red")
        line.append(msg, style="red")
        self._print(line)


_logger = Logger()


def init(
    *,
    color: bool = False,
    no_color: bool = False,
    debug: bool = False,
    quiet: bool = False,
) -> Logger:
    """Rebuild the default logger from CLI flags.

    Call once at startup, before any output. Returns the new logger so the
    caller can hand it to components.
    """
    global _logger
    _logger = Logger(
        make_console(color=color, no_color=no_color), debug=debug, quiet=quiet
    )
    return _logger


def get_logger() -> Logger:
    return _logger
