"""Shared fakes: an in-memory multiplexer, a recording event sink and a scripted decision model."""

import asyncio
from typing import Any

import pytest

from lora_bridge.config import BridgeConfig
from lora_bridge.memory import ConversationMemoryStore
from lora_bridge.readiness import ReadinessWatcher, StateFileSource
from lora_bridge.registry import SessionRegistry


class FakeStream:
    """Attached output stream fed by the test."""

    def __init__(self, name: str):
        self.name = name
        self.queue: asyncio.Queue = asyncio.Queue()
        self.written: list[str] = []
        self.size: tuple[int, int] | None = None
        self.closed = False

    def feed(self, data: str) -> None:
        self.queue.put_nowait(data)

    async def read(self) -> str | None:
        return await self.queue.get()

    async def write(self, data: str) -> None:
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.size = (cols, rows)

    async def close(self) -> None:
        self.closed = True
        self.queue.put_nowait(None)


class FakeMultiplexer:
    """Records every command; sessions live in a dict."""

    def __init__(self):
        self.available = True
        self.sessions: dict[str, str] = {}
        self.screens: dict[str, str] = {}
        self.streams: dict[str, list[FakeStream]] = {}
        self.calls: list[tuple] = []

    async def is_available(self) -> bool:
        return self.available

    async def session_exists(self, name: str) -> bool:
        return name in self.sessions

    async def create_session(self, name: str, cwd: str, env: dict[str, str] | None = None) -> None:
        self.calls.append(("create", name, env))
        self.sessions[name] = cwd

    async def destroy_session(self, name: str) -> None:
        self.calls.append(("destroy", name))
        self.sessions.pop(name, None)

    async def send_text(self, name: str, text: str) -> None:
        self.calls.append(("text", name, text))

    async def send_enter(self, name: str) -> None:
        self.calls.append(("enter", name))

    async def send_control_key(self, name: str, key: str) -> None:
        self.calls.append(("control", name, key))

    async def send_special_key(self, name: str, key: str) -> None:
        self.calls.append(("special", name, key))

    async def capture_output(self, name: str, lines: int | None = None) -> str:
        return self.screens.get(name, "")

    async def list_sessions(self, prefix: str = "") -> list[str]:
        return [name for name in self.sessions if name.startswith(prefix)]

    async def session_directory(self, name: str) -> str:
        return self.sessions.get(name, "")

    async def attach(self, name: str, cols: int, rows: int) -> FakeStream:
        stream = FakeStream(name)
        self.streams.setdefault(name, []).append(stream)
        return stream

    def texts(self, name: str | None = None) -> list[str]:
        """Literal text sent, optionally for one session."""
        return [c[2] for c in self.calls if c[0] == "text" and (name is None or c[1] == name)]

    def of_kind(self, kind: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == kind]


class FakeSink:
    """Collects outbound events."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.connected = True

    async def send(self, event_type: str, data: dict[str, Any]) -> bool:
        if not self.connected:
            return False
        self.events.append((event_type, data))
        return True

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [data for kind, data in self.events if kind == event_type]

    def types(self) -> list[str]:
        return [kind for kind, _ in self.events]


class FakeDecisionModel:
    """Returns scripted raw decision text and records each call."""

    def __init__(self, responses: list[str] | None = None):
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []
        self.available = True

    async def decide(self, system: str, context: str, utterance: str, image: bytes | None = None) -> str:
        self.calls.append({"context": context, "utterance": utterance, "image": image})
        if not self.responses:
            return '{"type": "ignore"}'
        return self.responses.pop(0)


@pytest.fixture
def fake_mux():
    return FakeMultiplexer()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def config(tmp_path):
    """Fast, isolated config rooted in tmp_path."""
    cfg = BridgeConfig(projects_dir=str(tmp_path / "projects"))
    cfg.multiplexer.agent_start_delay = 0
    cfg.readiness.state_dir = str(tmp_path / "state")
    cfg.readiness.poll_interval = 0.01
    cfg.readiness.response_timeout = 1.0
    cfg.readiness.reactive = False
    cfg.readiness.output_fallback = False
    return cfg


@pytest.fixture
def state_source(config):
    return StateFileSource(config.readiness.state_dir)


@pytest.fixture
def watcher(state_source, fake_mux):
    return ReadinessWatcher(
        state_source,
        multiplexer=fake_mux,
        poll_interval=0.01,
        default_timeout=1.0,
        reactive=False,
        output_fallback=False,
    )


@pytest.fixture
def registry(fake_mux):
    return SessionRegistry(fake_mux, "lora-")


@pytest.fixture
def memory():
    return ConversationMemoryStore()
