"""Readiness watcher: is the agent in a session idle, busy, asking, or gone?

Agent lifecycle hooks write a state token to a per-session file (see
``hooks``). The watcher polls that file at a fixed interval; polling is the
source of truth. When ``reactive`` is enabled a watchdog observer also wakes
waiters as soon as the file changes, which only shortens latency.

If hooks never report (older agents, hooks not installed), the watcher can
fall back to reading the screen.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

import aiofiles
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .hooks import STATE_FILE_PREFIX, ready_marker_path, state_file_path
from .models import SETTLED_STATES, ReadinessState
from .multiplexer import Multiplexer
from .terminal_text import extract_new_output, infer_state_from_output

logger = logging.getLogger(__name__)

# Hook vocabulary -> readiness state
TOKEN_STATES: dict[str, ReadinessState] = {
    "idle": "idle",
    "permission": "awaiting_confirmation",
    "processing": "processing",
    "stopped": "terminated",
}

# Consecutive screen reads that must agree before the fallback reports ready
FALLBACK_CONFIRMATIONS = 3
LIVENESS_CHECK_INTERVAL = 5.0


@dataclass
class StateToken:
    """One token read from the side channel."""

    state: ReadinessState
    raw: str
    timestamp: int
    source: str = "hook"


@dataclass
class ReadinessResult:
    """Outcome of ``await_ready``.

    A timeout is a normal result: ``timed_out`` is set and ``state`` holds the
    last thing observed.
    """

    state: ReadinessState
    timed_out: bool = False
    elapsed: float = 0.0
    output: str = ""
    used_hooks: bool = True

    @property
    def settled(self) -> bool:
        return self.state in SETTLED_STATES and not self.timed_out


class StateFileSource:
    """Poll source reading hook tokens from ``state_dir``."""

    def __init__(self, state_dir: str | Path = "/tmp"):
        self.state_dir = Path(state_dir)

    def path(self, session_name: str) -> Path:
        return state_file_path(self.state_dir, session_name)

    def marker_path(self, session_name: str) -> Path:
        return ready_marker_path(self.state_dir, session_name)

    def session_for_path(self, path: str) -> str | None:
        """Map a changed file back to its session name."""
        name = os.path.basename(path)
        if name.startswith(STATE_FILE_PREFIX) and name.endswith(".json"):
            return name[len(STATE_FILE_PREFIX):-len(".json")]
        return None

    async def read(self, session_name: str) -> StateToken | None:
        """Read the latest token.

        Missing or half-written files return None; hooks race with us and
        that is expected.
        """
        try:
            async with aiofiles.open(self.path(session_name)) as f:
                content = await f.read()
            data = json.loads(content)
        except (FileNotFoundError, json.JSONDecodeError, UnicodeDecodeError):
            return None
        except OSError as e:
            logger.debug(f"State file read failed for {session_name}: {e}")
            return None
        if not isinstance(data, dict):
            return None

        raw = str(data.get("state", ""))
        return StateToken(
            state=TOKEN_STATES.get(raw, "unknown"),
            raw=raw,
            timestamp=int(data.get("timestamp") or 0),
            source=str(data.get("source", "hook")),
        )

    async def write(self, session_name: str, raw_state: str, source: str = "bridge") -> None:
        """Write a token ourselves, replacing the file atomically."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.path(session_name)
        tmp = path.with_suffix(f".{os.getpid()}.tmp")
        token = {"state": raw_state, "timestamp": int(time.time() * 1000), "source": source}
        async with aiofiles.open(tmp, "w") as f:
            await f.write(json.dumps(token))
        os.replace(tmp, path)

    def has_marker(self, session_name: str) -> bool:
        return self.marker_path(session_name).exists()

    def remove(self, session_name: str) -> None:
        for path in (self.path(session_name), self.marker_path(session_name)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass


class _StateFileHandler(FileSystemEventHandler):
    """Forwards watchdog events into the watcher's event loop."""

    def __init__(self, watcher: "ReadinessWatcher", loop: asyncio.AbstractEventLoop):
        self.watcher = watcher
        self.loop = loop

    def on_any_event(self, event) -> None:
        if event.is_directory:
            return
        for path in (event.src_path, getattr(event, "dest_path", "")):
            session = self.watcher.source.session_for_path(path) if path else None
            if session:
                self.loop.call_soon_threadsafe(self.watcher.wake, session)


class ReadinessWatcher:
    """Tracks agent readiness per multiplexer session."""

    def __init__(
        self,
        source: StateFileSource,
        multiplexer: Multiplexer | None = None,
        poll_interval: float = 0.3,
        default_timeout: float = 180.0,
        reactive: bool = True,
        output_fallback: bool = True,
        hooks_check_after: float = 10.0,
        capture_lines: int = 100,
    ):
        """Initialize the watcher.

        Args:
            source: Side-channel poll source
            multiplexer: Used for screen capture and liveness checks
            poll_interval: Seconds between side-channel reads
            default_timeout: Budget for ``await_ready`` when none is given
            reactive: Wake waiters on file-change notifications
            output_fallback: Infer state from the screen when hooks are silent
            hooks_check_after: Seconds of hook silence before the fallback kicks in
            capture_lines: Scrollback lines to capture with the result
        """
        self.source = source
        self.multiplexer = multiplexer
        self.poll_interval = poll_interval
        self.default_timeout = default_timeout
        self.reactive = reactive
        self.output_fallback = output_fallback
        self.hooks_check_after = hooks_check_after
        self.capture_lines = capture_lines

        self._events: dict[str, asyncio.Event] = {}
        self._observer: Observer | None = None

    def start(self) -> None:
        """Start the reactive path, if enabled."""
        if not self.reactive or self._observer is not None:
            return
        self.source.state_dir.mkdir(parents=True, exist_ok=True)
        handler = _StateFileHandler(self, asyncio.get_running_loop())
        self._observer = Observer()
        self._observer.schedule(handler, str(self.source.state_dir), recursive=False)
        self._observer.daemon = True
        self._observer.start()
        logger.info(f"Watching {self.source.state_dir} for agent state changes")

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def wake(self, session_name: str) -> None:
        """Wake any waiter on this session."""
        event = self._events.get(session_name)
        if event is not None:
            event.set()

    def _event(self, session_name: str) -> asyncio.Event:
        if session_name not in self._events:
            self._events[session_name] = asyncio.Event()
        return self._events[session_name]

    async def get_state(self, session_name: str) -> ReadinessState:
        """Best-effort current state; ``unknown`` if nothing has been reported."""
        token = await self.source.read(session_name)
        return token.state if token else "unknown"

    async def read_token(self, session_name: str) -> StateToken | None:
        return await self.source.read(session_name)

    async def mark_processing(self, session_name: str) -> None:
        """Optimistically flag a session busy just before a prompt is sent."""
        await self.source.write(session_name, "processing", source="bridge")
        self.wake(session_name)

    def hooks_active(self, session_name: str) -> bool:
        """Whether the agent's hooks have fired at least once."""
        return self.source.has_marker(session_name)

    def forget(self, session_name: str) -> None:
        """Stop tracking a session and remove its side-channel files."""
        self._events.pop(session_name, None)
        self.source.remove(session_name)

    async def await_ready(
        self,
        session_name: str,
        timeout: float | None = None,
        poll_interval: float | None = None,
        previous_output: str | None = None,
    ) -> ReadinessResult:
        """Wait until the agent is idle, asking for confirmation, or gone.

        Args:
            session_name: Multiplexer session to watch
            timeout: Seconds to wait, defaults to the watcher's budget
            poll_interval: Seconds between reads, defaults to the watcher's
            previous_output: Screen snapshot taken before the prompt; when
                given, only output produced since then is returned

        Returns:
            The settled state, or the last observed state with ``timed_out``
        """
        timeout = self.default_timeout if timeout is None else timeout
        interval = self.poll_interval if poll_interval is None else poll_interval
        started = time.monotonic()
        deadline = started + timeout
        event = self._event(session_name)

        state: ReadinessState = "unknown"
        used_hooks = True
        timed_out = False
        screen_ready = 0
        next_liveness = started + LIVENESS_CHECK_INTERVAL

        while True:
            event.clear()
            token = await self.source.read(session_name)
            state = token.state if token else "unknown"
            used_hooks = token is not None

            if state in SETTLED_STATES:
                break

            now = time.monotonic()
            if self._fallback_due(session_name, now - started):
                inferred = await self._screen_state(session_name)
                if inferred is not None and inferred.is_ready:
                    screen_ready += 1
                    if screen_ready >= FALLBACK_CONFIRMATIONS:
                        state = inferred.readiness
                        used_hooks = False
                        break
                else:
                    screen_ready = 0

            if self.multiplexer is not None and now >= next_liveness:
                next_liveness = now + LIVENESS_CHECK_INTERVAL
                if not await self.multiplexer.session_exists(session_name):
                    state = "terminated"
                    break

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                break
            try:
                await asyncio.wait_for(event.wait(), timeout=min(interval, remaining))
            except asyncio.TimeoutError:
                pass

        elapsed = time.monotonic() - started
        if timed_out:
            logger.info(f"Readiness wait on {session_name} timed out after {elapsed:.1f}s ({state})")
        else:
            logger.debug(f"{session_name} settled as {state} after {elapsed:.2f}s")

        return ReadinessResult(
            state=state,
            timed_out=timed_out,
            elapsed=elapsed,
            output=await self._collect_output(session_name, previous_output),
            used_hooks=used_hooks,
        )

    def _fallback_due(self, session_name: str, waited: float) -> bool:
        return (
            self.output_fallback
            and self.multiplexer is not None
            and waited >= self.hooks_check_after
            and not self.hooks_active(session_name)
        )

    async def _screen_state(self, session_name: str):
        screen = await self.multiplexer.capture_output(session_name, self.capture_lines)
        if not screen:
            return None
        return infer_state_from_output(screen)

    async def _collect_output(self, session_name: str, previous_output: str | None) -> str:
        if self.multiplexer is None:
            return ""
        screen = await self.multiplexer.capture_output(session_name, self.capture_lines)
        if previous_output is None:
            return screen
        return extract_new_output(screen, previous_output)
