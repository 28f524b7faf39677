"""Exception types shared by the history store, tool runtime, agent loop and finalize."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML value, empty env var, etc.)."""


class InvalidHistoryIndex(AgentError):
    """Raised when a history ordinal falls outside the current listing."""

    def __init__(self, index: int, count: int):
        self.index = index
        self.count = count
        if count == 0:
            msg = f"invalid history number {index}: there are no history entries"
        else:
            msg = f"invalid history number {index} (valid range: 1-{count})"
        super().__init__(msg)


class PathOutsideWorkspace(AgentError):
    """Raised when a path resolves outside the workspace root."""

    def __init__(self, raw_path: str):
        self.raw_path = raw_path
        super().__init__(
            f"Access to path outside workspace is not allowed: {raw_path}"
        )


class ProtocolError(AgentError):
    """Raised when the model response breaks the tool-calling protocol."""


class DeliveryError(AgentError):
    """Raised when output delivery (file, clipboard, HTML) fails."""
