"""Error taxonomy for the tsserver bridge."""

from __future__ import annotations


class BridgeError(RuntimeError):
    """Base class for every error raised by tsbridge."""


class NeverThrown(BridgeError):
    """Raised by `never()` when a path believed unreachable is reached."""

    def __init__(self, message: str, *, env: dict[str, object] | None = None):
        super().__init__(message)
        self.env = dict(env or {})


class FramingError(BridgeError):
    """A header block could not be framed (missing or bad Content-Length)."""


class DecodeError(BridgeError):
    """A framed payload was not a JSON object."""


class EnvelopeError(BridgeError):
    """A JSON object is not a valid JSON-RPC request, notification or response."""


class ConfigError(BridgeError):
    pass


class BackendError(BridgeError):
    """Base class for failures talking to the tsserver process."""


class BackendUnavailable(BackendError):
    """The backend is not running (crashed, restarting or stopped)."""


class BackendRequestTimeout(BackendError):
    def __init__(self, command: str, seq: int, timeout: float) -> None:
        super().__init__(f"tsserver request {seq} ({command}) timed out after {timeout:g}s")
        self.command = command
        self.seq = seq
        self.timeout = timeout


class BackendCommandError(BackendError):
    """tsserver answered with `success: false`."""

    def __init__(self, command: str, message: str) -> None:
        super().__init__(f"tsserver {command} failed: {message}")
        self.command = command
        self.backend_message = message


class BackendSpawnFailure(BackendError):
    """The backend executable could not be located or spawned."""


class BackendStartupError(BackendError):
    """The backend process started but rejected the configuration handshake."""
