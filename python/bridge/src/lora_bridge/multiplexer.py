"""Capability contracts for the external terminal multiplexer."""

from typing import Literal, Protocol

ControlKey = Literal["c", "d", "z", "l"]
SpecialKey = Literal["Up", "Down", "Left", "Right", "Escape", "Tab", "BSpace", "Enter"]


class TerminalStream(Protocol):
    """Interactive byte stream attached to a multiplexer session."""

    async def read(self) -> str | None:
        """Next chunk of output, or None once the stream has ended."""
        ...

    async def write(self, data: str) -> None:
        """Write raw input to the attached client."""
        ...

    def resize(self, cols: int, rows: int) -> None:
        """Change the attached client's window size."""
        ...

    async def close(self) -> None:
        """Detach. The multiplexer session itself keeps running."""
        ...


class Multiplexer(Protocol):
    """Named-session operations the bridge needs from a multiplexer."""

    async def is_available(self) -> bool:
        ...

    async def session_exists(self, name: str) -> bool:
        ...

    async def create_session(self, name: str, cwd: str, env: dict[str, str] | None = None) -> None:
        ...

    async def destroy_session(self, name: str) -> None:
        ...

    async def send_text(self, name: str, text: str) -> None:
        ...

    async def send_enter(self, name: str) -> None:
        ...

    async def send_control_key(self, name: str, key: ControlKey) -> None:
        ...

    async def send_special_key(self, name: str, key: SpecialKey) -> None:
        ...

    async def capture_output(self, name: str, lines: int | None = None) -> str:
        ...

    async def list_sessions(self, prefix: str = "") -> list[str]:
        ...

    async def session_directory(self, name: str) -> str:
        ...

    async def attach(self, name: str, cols: int, rows: int) -> TerminalStream:
        ...
