"""tmux-backed multiplexer adapter.

Every operation is a short-lived ``tmux`` subprocess. Live output comes from
a ``tmux attach`` client running on a pseudo-terminal, so the bytes the user
sees are exactly what tmux renders, escape sequences included.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import shutil
import struct
import termios

from .errors import MultiplexerError
from .multiplexer import ControlKey, SpecialKey

logger = logging.getLogger(__name__)

_CONTROL_KEYS = {"c": "C-c", "d": "C-d", "z": "C-z", "l": "C-l"}
_SPECIAL_KEYS = {"Up", "Down", "Left", "Right", "Escape", "Tab", "BSpace", "Enter"}


class AttachedStream:
    """A ``tmux attach`` client on a pty, read through the event loop."""

    def __init__(self, session_name: str, process: asyncio.subprocess.Process, master_fd: int):
        self.session_name = session_name
        self.process = process
        self.master_fd = master_fd
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._closed = False
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(master_fd, self._on_readable)

    def _on_readable(self) -> None:
        try:
            data = os.read(self.master_fd, 65536)
        except OSError:
            data = b""
        if not data:
            self._finish()
            return
        text = self._decoder.decode(data)
        if text:
            self._queue.put_nowait(text)

    def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._loop.remove_reader(self.master_fd)
        self._queue.put_nowait(None)

    async def read(self) -> str | None:
        """Next chunk of output, or None once the attach client has exited."""
        return await self._queue.get()

    async def write(self, data: str) -> None:
        """Write raw input to the attach client."""
        if not self._closed:
            os.write(self.master_fd, data.encode())

    def resize(self, cols: int, rows: int) -> None:
        """Resize the pty; tmux picks up the new client size."""
        if self._closed:
            return
        fcntl.ioctl(self.master_fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))

    async def close(self) -> None:
        """Kill the attach client. The tmux session keeps running."""
        self._finish()
        if self.process.returncode is None:
            self.process.terminate()
            try:
                await asyncio.wait_for(self.process.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                self.process.kill()
        try:
            os.close(self.master_fd)
        except OSError:
            pass


class TmuxAdapter:
    """Runs tmux commands against named sessions."""

    def __init__(self, binary: str = "tmux", retries: int = 1):
        """Initialize the adapter.

        Args:
            binary: tmux executable name or path
            retries: Extra attempts for input commands before giving up
        """
        self.binary = binary
        self.retries = retries

    async def _run(self, *args: str, check: bool = True) -> str:
        cmd = [self.binary, *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if check and process.returncode != 0:
            raise MultiplexerError(cmd, process.returncode, stderr.decode(errors="replace"))
        return stdout.decode(errors="replace")

    async def _send(self, *args: str) -> None:
        """Run an input command, retrying once on a hiccup."""
        for attempt in range(self.retries + 1):
            try:
                await self._run(*args)
                return
            except MultiplexerError as e:
                if attempt >= self.retries:
                    raise
                logger.debug(f"Retrying tmux command after error: {e}")
                await asyncio.sleep(0.05)

    async def is_available(self) -> bool:
        """Check tmux is installed."""
        return shutil.which(self.binary) is not None

    async def session_exists(self, name: str) -> bool:
        try:
            await self._run("has-session", "-t", name)
            return True
        except (MultiplexerError, FileNotFoundError):
            return False

    async def create_session(self, name: str, cwd: str, env: dict[str, str] | None = None) -> None:
        """Start a detached session in ``cwd`` with the given environment."""
        args = ["new-session", "-d", "-s", name, "-c", cwd]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        logger.info(f"Creating tmux session {name} in {cwd}")
        await self._run(*args)

    async def destroy_session(self, name: str) -> None:
        logger.info(f"Killing tmux session {name}")
        try:
            await self._run("kill-session", "-t", name)
        except MultiplexerError as e:
            logger.debug(f"kill-session {name}: {e}")

    async def send_text(self, name: str, text: str) -> None:
        """Type literal text without pressing Enter."""
        logger.debug(f"Sending text to {name}: {text[:50]!r}")
        await self._send("send-keys", "-t", f"{name}:0", "-l", text)

    async def send_enter(self, name: str) -> None:
        await self._send("send-keys", "-t", f"{name}:0", "Enter")

    async def send_control_key(self, name: str, key: ControlKey) -> None:
        tmux_key = _CONTROL_KEYS.get(key)
        if tmux_key is None:
            raise ValueError(f"Unknown control key: {key}")
        await self._send("send-keys", "-t", f"{name}:0", tmux_key)

    async def send_special_key(self, name: str, key: SpecialKey) -> None:
        if key not in _SPECIAL_KEYS:
            raise ValueError(f"Unknown special key: {key}")
        await self._send("send-keys", "-t", f"{name}:0", key)

    async def capture_output(self, name: str, lines: int | None = None) -> str:
        """Snapshot the visible pane plus ``lines`` of scrollback.

        Returns an empty string when the capture fails.
        """
        args = ["capture-pane", "-t", f"{name}:0", "-p"]
        if lines:
            args += ["-S", f"-{lines}"]
        try:
            return await self._run(*args)
        except MultiplexerError as e:
            logger.debug(f"capture-pane {name}: {e}")
            return ""

    async def list_sessions(self, prefix: str = "") -> list[str]:
        try:
            output = await self._run("list-sessions", "-F", "#{session_name}")
        except MultiplexerError:
            return []
        return [n for n in output.split("\n") if n and n.startswith(prefix)]

    async def session_directory(self, name: str) -> str:
        try:
            output = await self._run("display-message", "-t", f"{name}:0", "-p", "#{pane_current_path}")
        except MultiplexerError:
            return ""
        return output.strip()

    async def attach(self, name: str, cols: int, rows: int) -> AttachedStream:
        """Attach an interactive client on a fresh pty."""
        master_fd, slave_fd = pty.openpty()
        fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
        env = {**os.environ, "TERM": "xterm-256color", "COLORTERM": "truecolor"}
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary, "attach", "-t", name,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=env,
                start_new_session=True,
            )
        finally:
            os.close(slave_fd)
        os.set_blocking(master_fd, False)
        return AttachedStream(name, process, master_fd)
