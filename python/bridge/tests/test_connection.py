"""Tests for per-client message handling and the HTTP/WebSocket surface."""

import asyncio
import base64
import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from conftest import FakeDecisionModel
from lora_bridge.api import create_app
from lora_bridge.connection import BridgeConnection, Services
from lora_bridge.models import AgentSession
from lora_bridge.orchestrator import ScreenshotResult


@pytest.fixture
def services(config, fake_mux, registry, watcher, memory):
    return Services(
        config=config,
        multiplexer=fake_mux,
        registry=registry,
        watcher=watcher,
        memory=memory,
        model=FakeDecisionModel(),
    )


@pytest_asyncio.fixture
async def connection(services, sink):
    connection = BridgeConnection(services, sink)
    yield connection
    await connection.close()


def _frame(message_type: str, **data) -> str:
    return json.dumps({"type": message_type, "data": data})


async def _create_terminal(connection, sink) -> str:
    await connection.handle(_frame("terminal_create", projectId="demo", autoStartAgent=False))
    return sink.of_type("terminal_created")[-1]["terminalId"]


class TestMessages:
    @pytest.mark.asyncio
    async def test_ping(self, connection, sink):
        await connection.handle(_frame("ping"))
        assert sink.types() == ["pong"]

    @pytest.mark.asyncio
    async def test_malformed_frames(self, connection, sink):
        await connection.handle("{not json")
        await connection.handle(json.dumps({"data": {}}))
        await connection.handle(_frame("terminal_resize", terminalId="term-x"))

        assert [e["message"] for e in sink.of_type("error")] == ["Invalid message format"] * 3

    @pytest.mark.asyncio
    async def test_unknown_type(self, connection, sink):
        await connection.handle(_frame("teleport"))
        assert sink.of_type("error") == [{"message": "Unknown message type: teleport"}]

    @pytest.mark.asyncio
    async def test_unknown_terminal(self, connection, sink):
        await connection.handle(_frame("terminal_input", terminalId="term-missing", data="ls"))
        assert sink.of_type("error") == [{"message": "Terminal not found: term-missing"}]

    @pytest.mark.asyncio
    async def test_create_reports_session(self, connection, sink, registry):
        await connection.handle(_frame("terminal_create", projectId="demo", autoStartAgent=False))

        created = sink.of_type("terminal_created")[0]
        assert created["projectId"] == "demo"
        assert created["agentSessionName"] == "lora-demo"
        assert created["reused"] is False
        assert registry.find("lora-demo") is not None

    @pytest.mark.asyncio
    async def test_create_rejects_unsafe_project_id(self, connection, sink, fake_mux):
        for project_id in ["../outside", "a.b", "demo--x"]:
            await connection.handle(_frame("terminal_create", projectId=project_id))

        assert [e["message"] for e in sink.of_type("error")] == ["Invalid message format"] * 3
        assert fake_mux.calls == []

    @pytest.mark.asyncio
    async def test_voice_toggle_and_status(self, connection, sink):
        terminal_id = await _create_terminal(connection, sink)

        await connection.handle(_frame("voice_terminal_enable", terminalId=terminal_id))
        await connection.handle(_frame("voice_status"))

        assert sink.of_type("voice_terminal_enabled") == [{"terminalId": terminal_id}]
        status = sink.of_type("voice_status")[0]
        assert status["terminals"][0]["voiceMode"] is True
        assert status["terminals"][0]["readiness"] == "unknown"
        assert status["terminals"][0]["consecutiveStalls"] == 0
        assert status["speechAvailable"] is False
        assert status["decisionModelAvailable"] is True

    @pytest.mark.asyncio
    async def test_memory_clear(self, connection, sink, memory):
        memory.get("demo").important_facts = ["atlas"]

        await connection.handle(_frame("memory_clear", projectId="demo"))

        assert memory.get("demo").important_facts == []
        assert sink.of_type("memory_cleared") == [{"projectId": "demo"}]


class TestVoiceTurns:
    @pytest.mark.asyncio
    async def test_yes_while_confirming_presses_enter(self, connection, sink, services, fake_mux, memory):
        terminal_id = await _create_terminal(connection, sink)
        services.watcher.get_state = AsyncMock(return_value="awaiting_confirmation")

        await connection.handle(_frame("voice_terminal_text", terminalId=terminal_id, text="Yes."))
        await connection._voice_turns[terminal_id]

        assert fake_mux.calls[-1] == ("enter", "lora-demo")
        assert fake_mux.texts() == []
        assert services.model.calls == []
        assert memory.get("demo").turns[-1].decision.content == "CONFIRM"
        assert sink.of_type("voice_transcription") == [{"terminalId": terminal_id, "text": "Yes."}]
        assert sink.of_type("voice_terminal_speaking")[-1]["responseText"] == "Okay, confirmed."

    @pytest.mark.asyncio
    async def test_interruption_cancels_running_turn(self, connection, sink, fake_mux):
        terminal_id = await _create_terminal(connection, sink)
        started = asyncio.Event()

        async def slow_turn(turn):
            started.set()
            await asyncio.sleep(10)

        connection.orchestrator.run_turn = slow_turn

        await connection.handle(_frame("voice_terminal_text", terminalId=terminal_id, text="refactor everything"))
        running = connection._voice_turns[terminal_id]
        await started.wait()

        await connection.handle(_frame("voice_terminal_text", terminalId=terminal_id, text="also add tests"))
        assert not running.done()

        await connection.handle(_frame("voice_terminal_text", terminalId=terminal_id, text="Stop!"))
        await asyncio.gather(running, return_exceptions=True)

        assert running.cancelled()
        assert ("control", "lora-demo", "c") in fake_mux.calls
        assert [e["text"] for e in sink.of_type("voice_transcription")] == ["refactor everything", "Stop!"]
        assert sink.of_type("voice_terminal_speaking")[-1]["responseText"].startswith("Interrupted.")

    @pytest.mark.asyncio
    async def test_interruption_reaches_every_prompted_terminal(self, connection, sink, fake_mux):
        terminal_id = await _create_terminal(connection, sink)
        other_id = await _create_terminal(connection, sink)
        other = connection.manager.get(other_id)
        started = asyncio.Event()

        async def fan_out_turn(turn):
            turn.dispatched.update(t.id for t in turn.terminals)
            started.set()
            await asyncio.sleep(10)

        connection.orchestrator.run_turn = fan_out_turn

        await connection.handle(_frame("voice_terminal_text", terminalId=terminal_id, text="run tests on both"))
        running = connection._voice_turns[terminal_id]
        await started.wait()
        other.awaiting_response = True

        await connection.handle(_frame("voice_terminal_text", terminalId=terminal_id, text="Stop!"))
        await asyncio.gather(running, return_exceptions=True)

        assert fake_mux.of_kind("control") == [
            ("control", "lora-demo", "c"),
            ("control", other.agent_session_name, "c"),
        ]
        assert other.awaiting_response is False
        assert connection._turn_state == {}
        assert len(sink.of_type("voice_terminal_speaking")) == 1

    @pytest.mark.asyncio
    async def test_missing_transcription_is_reported_once(self, connection, sink):
        terminal_id = await _create_terminal(connection, sink)
        audio = base64.b64encode(b"\x00" * 20000).decode()

        for _ in range(2):
            await connection.handle(_frame("voice_terminal_audio", terminalId=terminal_id, audioData=audio))

        assert len(sink.of_type("error")) == 1
        assert sink.of_type("voice_transcription") == []

    @pytest.mark.asyncio
    async def test_small_audio_is_dropped_silently(self, connection, sink):
        terminal_id = await _create_terminal(connection, sink)
        audio = base64.b64encode(b"\x00" * 100).decode()

        await connection.handle(_frame("voice_terminal_audio", terminalId=terminal_id, audioData=audio))

        assert sink.of_type("error") == []

    @pytest.mark.asyncio
    async def test_screenshot_round_trip(self, connection, sink):
        pending = asyncio.create_task(connection._request_screenshot())
        await asyncio.sleep(0)
        request_id = sink.of_type("screenshot_request")[0]["requestId"]

        await connection.handle(_frame(
            "screenshot_response",
            requestId=request_id,
            imageData=base64.b64encode(b"png").decode(),
            description="A settings page",
        ))

        assert await pending == ScreenshotResult(image=b"png", description="A settings page")
        assert connection._screenshots == {}

    @pytest.mark.asyncio
    async def test_close_destroys_sessions(self, connection, sink, fake_mux):
        await _create_terminal(connection, sink)

        await connection.close()

        assert fake_mux.sessions == {}


class TestServer:
    @pytest.fixture
    def client(self, services):
        return TestClient(create_app(services, manage_lifecycle=False))

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["service"] == "lora-bridge"
        assert body["connections"] == 0
        assert body["activeSessions"] == 0

    def test_cors_is_off_by_default(self, client):
        response = client.get("/health", headers={"Origin": "http://localhost:5173"})
        assert "access-control-allow-origin" not in response.headers

    def test_cors_origins_come_from_config(self, services):
        services.config.cors_origins = ["http://localhost:5173"]
        client = TestClient(create_app(services, manage_lifecycle=False))

        allowed = client.get("/health", headers={"Origin": "http://localhost:5173"})
        other = client.get("/health", headers={"Origin": "http://evil.test"})

        assert allowed.headers["access-control-allow-origin"] == "http://localhost:5173"
        assert "access-control-allow-origin" not in other.headers

    def test_sessions(self, client, registry):
        registry.register(AgentSession(name="lora-demo", project_id="demo", working_directory="/srv/demo"))

        body = client.get("/api/sessions").json()
        assert body["total"] == 1
        assert body["active"] == 1
        assert body["projects"]["demo"][0]["name"] == "lora-demo"

        history = client.get("/api/sessions/demo").json()
        assert history["projectId"] == "demo"
        assert len(history["sessions"]) == 1

    def test_memory(self, client, memory):
        memory.get("demo").important_facts = ["atlas"]

        body = client.get("/api/memory/demo").json()
        assert body["facts"] == ["atlas"]
        assert body["turns"] == 0

        assert client.delete("/api/memory/demo").json() == {"projectId": "demo", "cleared": True}
        assert memory.get("demo").important_facts == []

    def test_websocket_ping(self, client):
        with client.websocket_connect("/ws") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connected"
            assert hello["data"]["decisionModelAvailable"] is True

            ws.send_text(_frame("ping"))
            assert ws.receive_json()["type"] == "pong"
