"""Configuration file loading and merging for gpt5cli.

Reads TOML config from ~/.config/gpt5cli/config.toml (global) and
<cwd>/gpt5cli.toml (project). Precedence: CLI > environment > project >
global > defaults.
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path

from . import fmt
from .errors import ConfigError
from .history import VALID_LEVELS

DEFAULT_MODEL_MAIN = "gpt-5"
DEFAULT_MODEL_MINI = "gpt-5-mini"
DEFAULT_MODEL_NANO = "gpt-5-nano"
DEFAULT_MAX_ITERATIONS = 10

PROMPT_FILES = {
    "ask": "default.txt",
    "d2": "d2.txt",
    "mermaid": "mermaid.txt",
    "sql": "sql.txt",
}


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model_main": str,
    "model_mini": str,
    "model_nano": str,
    "effort": str,
    "verbosity": str,
    "max_iterations": int,
    "history_file": str,
    "prompts_dir": str,
    "output_dir": str,
    "color": bool,
    "quiet": bool,
}

# Config key -> environment variable that overrides it
_ENV_OVERRIDES: dict[str, str] = {
    "model_main": "OPENAI_MODEL_MAIN",
    "model_mini": "OPENAI_MODEL_MINI",
    "model_nano": "OPENAI_MODEL_NANO",
    "effort": "OPENAI_DEFAULT_EFFORT",
    "verbosity": "OPENAI_DEFAULT_VERBOSITY",
    "max_iterations": "GPT_5_CLI_MAX_ITERATIONS",
    "history_file": "GPT_5_CLI_HISTORY_INDEX_FILE",
    "prompts_dir": "GPT_5_CLI_PROMPTS_DIR",
    "output_dir": "GPT_5_CLI_OUTPUT_DIR",
}

# Environment variables that must not be set to an empty string
_NON_EMPTY_ENV = {"GPT_5_CLI_HISTORY_INDEX_FILE", "GPT_5_CLI_PROMPTS_DIR"}


@dataclass
class Defaults:
    model_main: str = DEFAULT_MODEL_MAIN
    model_mini: str = DEFAULT_MODEL_MINI
    model_nano: str = DEFAULT_MODEL_NANO
    effort: str = "low"
    verbosity: str = "low"
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    history_file: Path = Path("~/.local/share/gpt5cli/history_index.json")
    prompts_dir: Path = Path("~/.config/gpt5cli/prompts")
    output_dir: str | None = None
    color: bool | None = None
    quiet: bool = False

    def model_for(self, index: int) -> str:
        """Map the -m index (0/1/2) onto nano/mini/main."""
        return (self.model_nano, self.model_mini, self.model_main)[index]


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "gpt5cli"
    return Path.home() / ".config" / "gpt5cli"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str, log: fmt.Logger) -> None:
    """Validate value types and levels in a parsed config dict.

    Raises ConfigError for type mismatches. Unknown keys only warn.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            log.warning(f"{source}: unknown config key {key!r}")
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for int fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    for key in ("effort", "verbosity"):
        if key in config and config[key].lower() not in VALID_LEVELS:
            raise ConfigError(
                f"{source}: {key!r} must be one of {', '.join(VALID_LEVELS)}"
            )
    if "max_iterations" in config and config["max_iterations"] < 1:
        raise ConfigError(f"{source}: 'max_iterations' must be at least 1")


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative history/prompt paths against the config file's directory.

    ``output_dir`` is left alone: it is always relative to the workspace.
    """
    for key in ("history_file", "prompts_dir"):
        if key in config:
            expanded = Path(config[key]).expanduser()
            config[key] = str(
                expanded if expanded.is_absolute() else config_dir / expanded
            )


def _load_single(path: Path, label: str, log: fmt.Logger) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label, log)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}
    _resolve_paths(known, path.parent)
    return known


def _env_overrides() -> dict:
    overrides: dict = {}
    for key, var in _ENV_OVERRIDES.items():
        raw = os.environ.get(var)
        if raw is None:
            continue
        value = raw.strip()
        if not value:
            if var in _NON_EMPTY_ENV:
                raise ConfigError(f"{var} is set but empty.")
            continue
        if key == "max_iterations":
            try:
                overrides[key] = int(value)
            except ValueError:
                raise ConfigError(f"{var} must be an integer, got {raw!r}") from None
            if overrides[key] < 1:
                raise ConfigError(f"{var} must be at least 1")
        elif key in ("effort", "verbosity"):
            if value.lower() not in VALID_LEVELS:
                raise ConfigError(f"{var} must be one of {', '.join(VALID_LEVELS)}")
            overrides[key] = value.lower()
        else:
            overrides[key] = value
    return overrides


# --- Public API ---


def load_config(base_dir: Path, log: fmt.Logger | None = None) -> dict:
    """Load and merge global + project config.

    Returns a flat dict holding only the keys actually set in config files
    (no defaults injected).
    """
    log = log if log is not None else fmt.get_logger()

    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path), log)

    project_path = Path(base_dir).resolve() / "gpt5cli.toml"
    project_config = _load_single(project_path, str(project_path), log)

    return {**global_config, **project_config}


def load_defaults(base_dir: Path, log: fmt.Logger | None = None) -> Defaults:
    """Config files, then environment variables, on top of the built-in defaults."""
    merged = {**load_config(base_dir, log), **_env_overrides()}
    for key in ("effort", "verbosity"):
        if key in merged:
            merged[key] = merged[key].lower()
    for key in ("history_file", "prompts_dir"):
        if key in merged:
            merged[key] = Path(merged[key])

    defaults = Defaults(**merged)
    defaults.history_file = defaults.history_file.expanduser()
    defaults.prompts_dir = defaults.prompts_dir.expanduser()
    return defaults


def load_prompt(prompts_dir: Path, mode: str) -> str | None:
    """Return the system prompt for ``mode``, or None when missing or blank."""
    path = Path(prompts_dir) / PROMPT_FILES.get(mode, f"{mode}.txt")
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise ConfigError(f"cannot read system prompt {path}: {e}") from e
    return text if text.strip() else None
