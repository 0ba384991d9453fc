"""One client connection: inbound message handling and voice turns."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .config import PROJECT_ID_PATTERN, BridgeConfig
from .decision_model import GeminiDecisionModel, Narrator
from .errors import ConfigurationError, FatalStartupError, TransientIOError, UserFacingFailure
from .events import EventSink
from .memory import ConversationMemoryStore
from .models import TerminalSession
from .multiplexer import Multiplexer
from .orchestrator import ActionOrchestrator, ScreenshotResult, VoiceTurn
from .pipeline import VoicePipeline
from .readiness import ReadinessWatcher
from .registry import SessionRegistry
from .speech import OpenAISpeechClient
from .terminals import TerminalSessionManager

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong handling that request"
TURN_FAILED_REPLY = "Sorry, something went wrong with that."


@dataclass
class Services:
    """Process-wide collaborators shared by every connection."""

    config: BridgeConfig
    multiplexer: Multiplexer
    registry: SessionRegistry
    watcher: ReadinessWatcher
    memory: ConversationMemoryStore
    model: GeminiDecisionModel | None = None
    speech: OpenAISpeechClient | None = None

    @property
    def narrator(self) -> Narrator:
        return Narrator(self.model)

    async def startup(self) -> None:
        """Start watching side channels and recover sessions left from a previous run."""
        self.watcher.start()
        adopted = await self.registry.reconcile()
        if adopted:
            logger.info(f"Recovered {adopted} running session(s)")

    async def shutdown(self) -> None:
        self.watcher.stop()
        if self.speech is not None:
            await self.speech.close()


# -- inbound messages ----------------------------------------------------------


class ClientMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TerminalCreate(ClientMessage):
    project_id: str = Field(pattern=PROJECT_ID_PATTERN)
    cols: int = 60
    rows: int = 24
    sandbox: bool = True
    auto_start_agent: bool = True
    initial_prompt: str | None = None


class TerminalInput(ClientMessage):
    terminal_id: str
    data: str = ""


class TerminalResize(ClientMessage):
    terminal_id: str
    cols: int
    rows: int


class TerminalClose(ClientMessage):
    terminal_id: str
    kill_session: bool = False


class TerminalRef(ClientMessage):
    terminal_id: str


class VoiceAudio(ClientMessage):
    terminal_id: str
    audio_data: str
    audio_mime_type: str = "audio/wav"


class VoiceText(ClientMessage):
    terminal_id: str
    text: str


class ScreenshotResponse(ClientMessage):
    request_id: str
    image_data: str | None = None
    description: str | None = None


class ProjectRef(ClientMessage):
    project_id: str


class BridgeConnection:
    """Handles one client's messages in arrival order."""

    def __init__(self, services: Services, sink: EventSink):
        self.services = services
        self.sink = sink
        self.config = services.config
        self.manager = TerminalSessionManager(
            services.multiplexer,
            services.registry,
            services.watcher,
            sink,
            services.config,
        )
        self.pipeline = VoicePipeline(services.model, services.memory, services.config.voice)
        self.orchestrator = ActionOrchestrator(
            self.manager,
            services.watcher,
            self.pipeline,
            services.memory,
            services.narrator,
            services.speech,
            sink,
            services.config,
        )
        self.active_terminal: dict[str, int] = {}
        self._voice_turns: dict[str, asyncio.Task] = {}
        self._turn_state: dict[str, VoiceTurn] = {}
        self._screenshots: dict[str, asyncio.Future] = {}
        self._reported_unavailable: set[str] = set()

        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "ping": self._on_ping,
            "terminal_create": self._on_terminal_create,
            "terminal_input": self._on_terminal_input,
            "terminal_resize": self._on_terminal_resize,
            "terminal_close": self._on_terminal_close,
            "voice_terminal_enable": self._on_voice_enable,
            "voice_terminal_disable": self._on_voice_disable,
            "voice_terminal_audio": self._on_voice_audio,
            "voice_terminal_text": self._on_voice_text,
            "screenshot_response": self._on_screenshot_response,
            "voice_status": self._on_voice_status,
            "session_history": self._on_session_history,
            "memory_clear": self._on_memory_clear,
        }

    async def send_error(self, message: str) -> None:
        await self.sink.send("error", {"message": message})

    async def handle(self, raw: str) -> None:
        """Handle one inbound text frame.

        Args:
            raw: JSON ``{"type": ..., "data": {...}}``
        """
        try:
            message = json.loads(raw)
            message_type = message["type"]
            data = message.get("data") or {}
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError):
            await self.send_error("Invalid message format")
            return

        handler = self._handlers.get(message_type)
        if handler is None:
            logger.warning(f"Unknown message type: {message_type}")
            await self.send_error(f"Unknown message type: {message_type}")
            return

        try:
            await handler(data)
        except ValidationError as e:
            logger.warning(f"Invalid {message_type} message: {e.errors()}")
            await self.send_error("Invalid message format")
        except (UserFacingFailure, FatalStartupError) as e:
            logger.error(f"{message_type} failed: {e}")
            await self.send_error(str(e))
        except Exception:
            logger.exception(f"Unexpected error handling {message_type}")
            await self.send_error(GENERIC_ERROR)

    async def close(self) -> None:
        """Client went away: cancel pending work and tear down its sessions."""
        for task in self._voice_turns.values():
            task.cancel()
        self._voice_turns.clear()
        self._turn_state.clear()
        for future in self._screenshots.values():
            future.cancel()
        self._screenshots.clear()
        await self.manager.close_all()

    # -- terminals ----------------------------------------------------------------

    async def _on_ping(self, data: dict) -> None:
        await self.sink.send("pong", {})

    async def _on_terminal_create(self, data: dict) -> None:
        msg = TerminalCreate.model_validate(data)
        terminal, reused = await self.manager.create(
            msg.project_id,
            cols=msg.cols,
            rows=msg.rows,
            sandboxed=msg.sandbox,
            auto_start_agent=msg.auto_start_agent,
            initial_prompt=msg.initial_prompt,
        )
        await self.sink.send("terminal_created", {
            "terminalId": terminal.id,
            "projectId": terminal.project_id,
            "agentSessionName": terminal.agent_session_name,
            "reused": reused,
        })

    async def _on_terminal_input(self, data: dict) -> None:
        msg = TerminalInput.model_validate(data)
        await self.manager.send_input(msg.terminal_id, msg.data)

    async def _on_terminal_resize(self, data: dict) -> None:
        msg = TerminalResize.model_validate(data)
        self.manager.resize(msg.terminal_id, msg.cols, msg.rows)

    async def _on_terminal_close(self, data: dict) -> None:
        msg = TerminalClose.model_validate(data)
        self._cancel_turn(msg.terminal_id)
        await self.manager.close(msg.terminal_id, kill_session=msg.kill_session)

    # -- voice --------------------------------------------------------------------

    async def _on_voice_enable(self, data: dict) -> None:
        terminal = self.manager.get(TerminalRef.model_validate(data).terminal_id)
        terminal.voice_mode = True
        terminal.reset_voice_turn()
        await self.sink.send("voice_terminal_enabled", {"terminalId": terminal.id})

    async def _on_voice_disable(self, data: dict) -> None:
        terminal = self.manager.get(TerminalRef.model_validate(data).terminal_id)
        self._cancel_turn(terminal.id)
        terminal.voice_mode = False
        terminal.reset_voice_turn()
        await self.sink.send("voice_terminal_disabled", {"terminalId": terminal.id})

    async def _on_voice_audio(self, data: dict) -> None:
        msg = VoiceAudio.model_validate(data)
        terminal = self.manager.get(msg.terminal_id)
        try:
            audio = base64.b64decode(msg.audio_data)
        except (binascii.Error, ValueError):
            await self.send_error("Invalid message format")
            return

        reason = self.pipeline.screen_audio(terminal, audio)
        if reason:
            logger.debug(f"Dropped audio for {terminal.id}: {reason}")
            return

        speech = self.services.speech
        try:
            if speech is None:
                raise ConfigurationError("Speech-to-text is not configured")
            text = (await speech.transcribe(audio, msg.audio_mime_type)).strip()
        except ConfigurationError as e:
            if "transcription" not in self._reported_unavailable:
                self._reported_unavailable.add("transcription")
                await self.send_error(str(e))
            return
        except Exception as e:
            logger.warning(f"Transcription failed for {terminal.id}: {e}")
            return

        await self._utterance(terminal, text, typed=False)

    async def _on_voice_text(self, data: dict) -> None:
        msg = VoiceText.model_validate(data)
        terminal = self.manager.get(msg.terminal_id)
        await self._utterance(terminal, msg.text.strip(), typed=True)

    def _turn_running(self, terminal_id: str) -> bool:
        task = self._voice_turns.get(terminal_id)
        return task is not None and not task.done()

    def _cancel_turn(self, terminal_id: str) -> VoiceTurn | None:
        """Cancel the running turn on a terminal and return its state, if any."""
        task = self._voice_turns.pop(terminal_id, None)
        turn = self._turn_state.pop(terminal_id, None)
        if task is not None and not task.done():
            task.cancel()
            return turn
        return None

    async def _utterance(self, terminal: TerminalSession, text: str, typed: bool) -> None:
        """Route one utterance: interrupt a running turn, or start a new one."""
        if not text:
            return

        if self._turn_running(terminal.id):
            if not self.pipeline.is_interruption(text):
                logger.info(f"Turn in progress on {terminal.id}, dropping {text!r}")
                return
            await self._interrupt(terminal, text)
            return

        readiness = await self.services.watcher.get_state(terminal.agent_session_name)
        if not typed:
            reason = self.pipeline.screen_transcript(terminal, text, readiness)
            if reason:
                logger.info(f"Dropped transcript for {terminal.id}: {reason}")
                return

        await self.sink.send("voice_transcription", {"terminalId": terminal.id, "text": text})

        terminals = self.manager.project_terminals(terminal.project_id)
        active = self.active_terminal.get(terminal.project_id)
        if active is None or active >= len(terminals):
            active = terminals.index(terminal) if terminal in terminals else 0
        turn = VoiceTurn(
            terminal=terminal,
            utterance=text,
            terminals=terminals,
            active_index=active,
            request_screenshot=self._request_screenshot,
        )
        task = asyncio.create_task(self._run_turn(turn))
        self._voice_turns[terminal.id] = task
        self._turn_state[terminal.id] = turn
        self.manager.track_task(task)

    async def _interrupt(self, terminal: TerminalSession, text: str) -> None:
        """Cancel the running turn and send Ctrl-C to every terminal it prompted."""
        turn = self._cancel_turn(terminal.id)
        targets = [terminal]
        if turn is not None:
            targets += [
                t for t in turn.terminals
                if t.id in turn.dispatched and t.id != terminal.id and self.manager.terminals.get(t.id) is t
            ]
        await self.sink.send("voice_transcription", {"terminalId": terminal.id, "text": text})

        reply = None
        for target in targets:
            target.reset_voice_turn()
            try:
                reply = await self.manager.run_control(target, "CTRL_C")
            except TransientIOError as e:
                logger.warning(f"Could not interrupt {target.id}: {e}")
        await self.orchestrator.speak(terminal, reply or TURN_FAILED_REPLY)

    async def _run_turn(self, turn: VoiceTurn) -> None:
        terminal = turn.terminal
        try:
            await self.orchestrator.run_turn(turn)
        except asyncio.CancelledError:
            logger.info(f"Voice turn on {terminal.id} cancelled")
            raise
        except UserFacingFailure as e:
            logger.error(f"Voice turn on {terminal.id} failed: {e}")
            await self.send_error(str(e))
            await self.orchestrator.speak(terminal, f"Sorry, {e}")
        except Exception:
            logger.exception(f"Voice turn on {terminal.id} failed")
            await self.orchestrator.speak(terminal, TURN_FAILED_REPLY)
        finally:
            self.active_terminal[turn.project_id] = turn.active_index
            if self._voice_turns.get(terminal.id) is asyncio.current_task():
                del self._voice_turns[terminal.id]
                self._turn_state.pop(terminal.id, None)

    # -- screenshots --------------------------------------------------------------

    async def _request_screenshot(self) -> ScreenshotResult | None:
        """Ask the client for a screenshot and wait for the matching response."""
        request_id = f"shot-{uuid4().hex[:8]}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._screenshots[request_id] = future
        try:
            await self.sink.send("screenshot_request", {"requestId": request_id})
            return await future
        finally:
            self._screenshots.pop(request_id, None)

    async def _on_screenshot_response(self, data: dict) -> None:
        msg = ScreenshotResponse.model_validate(data)
        future = self._screenshots.get(msg.request_id)
        if future is None or future.done():
            logger.debug(f"Late or unknown screenshot response {msg.request_id}")
            return
        image = None
        if msg.image_data:
            try:
                image = base64.b64decode(msg.image_data)
            except (binascii.Error, ValueError):
                logger.warning(f"Undecodable screenshot for {msg.request_id}")
        future.set_result(ScreenshotResult(image=image, description=msg.description))

    # -- status -------------------------------------------------------------------

    async def _on_voice_status(self, data: dict) -> None:
        watcher = self.services.watcher
        terminals = []
        for terminal in self.manager.terminals.values():
            terminals.append({
                "terminalId": terminal.id,
                "projectId": terminal.project_id,
                "agentSessionName": terminal.agent_session_name,
                "voiceMode": terminal.voice_mode,
                "readiness": await watcher.get_state(terminal.agent_session_name),
                "turnInProgress": self._turn_running(terminal.id),
                "consecutiveStalls": terminal.stall_count,
                "backgroundTasks": [t.to_dict() for t in terminal.background_tasks.values()],
            })
        speech = self.services.speech
        model = self.services.model
        await self.sink.send("voice_status", {
            "terminals": terminals,
            "speechAvailable": speech is not None and speech.available,
            "decisionModelAvailable": model is not None and model.available,
        })

    async def _on_session_history(self, data: dict) -> None:
        project_id = ProjectRef.model_validate(data).project_id
        await self.sink.send("session_history", {
            "projectId": project_id,
            "sessions": [s.to_dict() for s in self.services.registry.history(project_id)],
        })

    async def _on_memory_clear(self, data: dict) -> None:
        project_id = ProjectRef.model_validate(data).project_id
        self.services.memory.clear(project_id)
        await self.sink.send("memory_cleared", {"projectId": project_id})
