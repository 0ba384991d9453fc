"""Exception hierarchy for the Lora bridge.

Readiness timeouts are deliberately absent here: a wait that runs out of
budget returns a ``ReadinessResult`` with ``timed_out`` set and the caller
narrates it.
"""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigurationError(BridgeError):
    """A required external credential is missing."""


class TranscriptionUnavailable(ConfigurationError):
    """No speech-to-text provider is configured."""


class SpeechUnavailable(ConfigurationError):
    """No text-to-speech provider is configured."""


class DecisionModelUnavailable(ConfigurationError):
    """No decision model is configured."""


class TransientIOError(BridgeError):
    """Recoverable I/O hiccup. Retried or ignored locally, never shown to the user."""


class MultiplexerError(TransientIOError):
    """A multiplexer command failed."""

    def __init__(self, command: list[str], returncode: int | None, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(
            f"{' '.join(command[:3])} failed ({returncode}): {self.stderr or 'no output'}"
        )


class UserFacingFailure(BridgeError):
    """A failure whose message is surfaced verbatim to the client."""


class TerminalNotFound(UserFacingFailure):
    """The client referenced a terminal id that does not exist."""

    def __init__(self, terminal_id: str):
        self.terminal_id = terminal_id
        super().__init__(f"Terminal not found: {terminal_id}")


class CreationFailed(UserFacingFailure):
    """An agent session could not be created."""


class PromptSubmissionFailed(UserFacingFailure):
    """Typed text never left the agent's input prompt."""


class FatalStartupError(BridgeError):
    """A required external facility is entirely unavailable."""


class AgentUnavailable(FatalStartupError):
    """The terminal multiplexer is not installed."""
