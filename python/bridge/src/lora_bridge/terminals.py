"""Terminal session manager: one per client connection.

Binds live output streams to agent sessions, forwards every byte to the
client as it arrives, and decides whether a new terminal reuses an
existing agent session or starts a fresh one.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from uuid import uuid4

from .config import BridgeConfig, valid_project_id
from .errors import (
    AgentUnavailable,
    CreationFailed,
    MultiplexerError,
    PromptSubmissionFailed,
    TerminalNotFound,
)
from .events import EventSink
from .hooks import install_agent_hooks
from .models import AgentSession, TerminalSession
from .multiplexer import Multiplexer
from .readiness import ReadinessWatcher
from .registry import EXTRA_SESSION_SEPARATOR, SessionRegistry
from .terminal_text import infer_state_from_output, is_text_at_prompt

logger = logging.getLogger(__name__)

# Spoken acknowledgement for each control action
CONTROL_REPLIES: dict[str, str] = {
    "CTRL_C": "Interrupted. The current operation has been cancelled.",
    "ESCAPE": "Cancelled.",
    "CONFIRM": "Okay, confirmed.",
    "DENY": "Okay, I said no.",
    "SLASH_CLEAR": "Conversation cleared. Starting fresh.",
    "SLASH_HELP": "Showing help.",
    "SLASH_COMPACT": "Compacting the agent's conversation.",
    "RESTART": "Restarting the agent.",
}


def _is_terminal_report(data: str) -> bool:
    """OSC colour-query replies generated by the client's terminal, not typed by the user."""
    if data.startswith("\x1b]"):
        return True
    return "]" in data and ("rgb:" in data or "10;" in data or "11;" in data)


class TerminalSessionManager:
    """Owns the current client's terminals."""

    def __init__(
        self,
        multiplexer: Multiplexer,
        registry: SessionRegistry,
        watcher: ReadinessWatcher,
        sink: EventSink,
        config: BridgeConfig,
        enter_delay: float = 0.15,
        verify_delay: float = 0.5,
        submit_retries: int = 2,
        initial_prompt_timeout: float = 30.0,
    ):
        """Initialize the manager.

        Args:
            multiplexer: Multiplexer adapter
            registry: Shared session registry
            watcher: Shared readiness watcher
            sink: This client's outbound event channel
            config: Bridge configuration
            enter_delay: Pause between typing a prompt and pressing Enter
            verify_delay: Pause before checking a prompt was submitted
            submit_retries: Extra Enter presses when a prompt did not submit
            initial_prompt_timeout: How long a new agent gets to come up
        """
        self.multiplexer = multiplexer
        self.registry = registry
        self.watcher = watcher
        self.sink = sink
        self.config = config
        self.enter_delay = enter_delay
        self.verify_delay = verify_delay
        self.submit_retries = submit_retries
        self.initial_prompt_timeout = initial_prompt_timeout
        self.terminals: dict[str, TerminalSession] = {}
        self._tasks: set[asyncio.Task] = set()

    def track_task(self, task: asyncio.Task) -> None:
        """Track a background task and remove it on completion."""
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -- lookup ---------------------------------------------------------------

    def get(self, terminal_id: str) -> TerminalSession:
        terminal = self.terminals.get(terminal_id)
        if terminal is None:
            raise TerminalNotFound(terminal_id)
        return terminal

    def project_terminals(self, project_id: str) -> list[TerminalSession]:
        """This client's terminals for a project, in creation order."""
        return [t for t in self.terminals.values() if t.project_id == project_id]

    # -- creation ---------------------------------------------------------------

    async def create(
        self,
        project_id: str,
        cols: int = 60,
        rows: int = 24,
        sandboxed: bool = True,
        auto_start_agent: bool = True,
        initial_prompt: str | None = None,
    ) -> tuple[TerminalSession, bool]:
        """Open a terminal for a project.

        Args:
            project_id: Project to open
            cols: Terminal width
            rows: Terminal height
            sandboxed: Restrict the agent to the project directory
            auto_start_agent: Start the agent in a newly created session
            initial_prompt: Prompt to submit once a new agent is ready

        Returns:
            The terminal and whether an existing agent session was reused
        """
        if not valid_project_id(project_id):
            raise CreationFailed(f"Invalid project id: {project_id!r}")
        if not await self.multiplexer.is_available():
            raise AgentUnavailable("tmux is not installed. Install tmux to use Lora terminals.")

        working_dir = self.config.project_path(project_id)
        working_dir.mkdir(parents=True, exist_ok=True)

        async with self.registry.lock(project_id):
            agent, reused = await self._resolve_agent_session(
                project_id, working_dir, sandboxed, auto_start_agent
            )

        terminal_id = f"term-{uuid4().hex[:8]}"
        try:
            stream = await self.multiplexer.attach(agent.name, cols, rows)
        except (MultiplexerError, OSError) as e:
            raise CreationFailed(f"Failed to attach to {agent.name}: {e}") from e

        terminal = TerminalSession(
            id=terminal_id,
            project_id=project_id,
            agent_session_name=agent.name,
            sandboxed=sandboxed,
            stream=stream,
        )
        self.terminals[terminal_id] = terminal
        terminal._pump_task = asyncio.create_task(self._pump(terminal))

        logger.info(
            f"Terminal {terminal_id} bound to {agent.name} "
            f"({'reused' if reused else 'new'}, project {project_id})"
        )

        if initial_prompt and not reused:
            self.track_task(asyncio.create_task(self._deliver_initial_prompt(terminal, initial_prompt)))

        return terminal, reused

    async def _resolve_agent_session(
        self,
        project_id: str,
        working_dir: Path,
        sandboxed: bool,
        auto_start_agent: bool,
    ) -> tuple[AgentSession, bool]:
        """Pick or create the agent session. Caller holds the project lock."""
        canonical = self.config.canonical_session_name(project_id)

        if self.project_terminals(project_id):
            name = f"{canonical}{EXTRA_SESSION_SEPARATOR}{uuid4().hex[:6]}"
            logger.info(f"Creating additional session {name} for project {project_id}")
            return await self._start_agent_session(
                project_id, name, working_dir, sandboxed, auto_start_agent
            ), False

        existing = await self.registry.get_active(project_id)
        if existing is not None:
            logger.info(f"Reconnecting to existing session {existing.name}")
            return existing, True

        if not self.registry.has_record(canonical) and await self.multiplexer.session_exists(canonical):
            cwd = await self.multiplexer.session_directory(canonical) or str(working_dir)
            return self.registry.adopt(project_id, canonical, cwd), True

        name = canonical
        if self.registry.find(canonical) or await self.multiplexer.session_exists(canonical):
            name = f"{canonical}{EXTRA_SESSION_SEPARATOR}{uuid4().hex[:6]}"
        return await self._start_agent_session(
            project_id, name, working_dir, sandboxed, auto_start_agent
        ), False

    async def _start_agent_session(
        self,
        project_id: str,
        name: str,
        working_dir: Path,
        sandboxed: bool,
        auto_start_agent: bool,
    ) -> AgentSession:
        try:
            await install_agent_hooks(working_dir, self.config.readiness.state_dir, sandboxed)
            self.watcher.forget(name)
            await self.multiplexer.create_session(name, str(working_dir), env={"LORA_SESSION": name})
        except (MultiplexerError, OSError) as e:
            raise CreationFailed(f"Failed to create terminal: {e}") from e

        agent = self.registry.register(AgentSession(
            name=name,
            project_id=project_id,
            working_directory=str(working_dir),
        ))

        if auto_start_agent:
            await asyncio.sleep(self.config.multiplexer.agent_start_delay)
            logger.info(f"Starting agent in {name}")
            await self.multiplexer.send_text(name, self.config.multiplexer.agent_command)
            await self.multiplexer.send_enter(name)
        return agent

    async def _deliver_initial_prompt(self, terminal: TerminalSession, prompt: str) -> None:
        """Submit a prompt once a freshly started agent is accepting input."""
        name = terminal.agent_session_name
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.initial_prompt_timeout
        while loop.time() < deadline:
            if self.watcher.hooks_active(name):
                break
            screen = await self.multiplexer.capture_output(name, 20)
            if screen and infer_state_from_output(screen).is_ready:
                break
            await asyncio.sleep(self.watcher.poll_interval)
        try:
            await self.submit_prompt(terminal, prompt)
        except Exception as e:
            logger.error(f"Initial prompt for {terminal.id} failed: {e}")
            await self.sink.send("error", {"message": f"Initial prompt failed: {e}"})

    # -- output -----------------------------------------------------------------

    async def _pump(self, terminal: TerminalSession) -> None:
        """Forward attached output to the client in emission order."""
        stream = terminal.stream
        while True:
            data = await stream.read()
            if data is None:
                break
            await self.sink.send("terminal_output", {"terminalId": terminal.id, "content": data})
            terminal.accumulate(data)

        if self.terminals.pop(terminal.id, None) is not None:
            logger.info(f"Terminal {terminal.id} stream ended")
            await self.sink.send("terminal_closed", {"terminalId": terminal.id})

    # -- input ------------------------------------------------------------------

    async def send_input(self, terminal_id: str, data: str) -> None:
        """Pass raw keyboard input through to the agent session."""
        terminal = self.get(terminal_id)
        if not data or _is_terminal_report(data):
            return
        name = terminal.agent_session_name
        if data == "\x03":
            await self.multiplexer.send_control_key(name, "c")
        elif data == "\x04":
            await self.multiplexer.send_control_key(name, "d")
        elif data in ("\r", "\n"):
            await self.multiplexer.send_enter(name)
        else:
            await self.multiplexer.send_text(name, data)

    def resize(self, terminal_id: str, cols: int, rows: int) -> None:
        terminal = self.get(terminal_id)
        if terminal.stream is not None:
            terminal.stream.resize(cols, rows)

    async def submit_prompt(self, terminal: TerminalSession, text: str) -> str:
        """Type a prompt, press Enter, and make sure it left the input line.

        Returns:
            Screen snapshot from before the prompt, for new-output extraction
        """
        name = terminal.agent_session_name
        snapshot = await self.multiplexer.capture_output(name, self.config.multiplexer.capture_lines)
        await self.watcher.mark_processing(name)
        await self.multiplexer.send_text(name, text)
        await asyncio.sleep(self.enter_delay)
        await self.multiplexer.send_enter(name)

        for attempt in range(self.submit_retries):
            await asyncio.sleep(self.verify_delay)
            screen = await self.multiplexer.capture_output(name, 10)
            token = await self.watcher.read_token(name)
            hook_reported = token is not None and token.source != "bridge"
            if hook_reported or not is_text_at_prompt(screen, text):
                return snapshot
            logger.warning(f"Prompt still at input line in {name}, retrying Enter ({attempt + 1})")
            await self.multiplexer.send_enter(name)

        await asyncio.sleep(self.verify_delay)
        if is_text_at_prompt(await self.multiplexer.capture_output(name, 5), text):
            raise PromptSubmissionFailed(
                f"Prompt was not submitted to {name} after {self.submit_retries} retries"
            )
        return snapshot

    async def run_control(self, terminal: TerminalSession, action: str) -> str:
        """Send a control action to the agent.

        Returns:
            Short spoken acknowledgement
        """
        name = terminal.agent_session_name
        mux = self.multiplexer
        if action == "CTRL_C":
            await mux.send_control_key(name, "c")
        elif action in ("ESCAPE", "DENY"):
            await mux.send_special_key(name, "Escape")
        elif action == "CONFIRM":
            await mux.send_enter(name)
        elif action in ("SLASH_CLEAR", "SLASH_HELP", "SLASH_COMPACT"):
            await mux.send_text(name, "/" + action.split("_", 1)[1].lower())
            await mux.send_enter(name)
        elif action == "RESTART":
            await mux.send_control_key(name, "c")
            await asyncio.sleep(0.1)
            await mux.send_text(name, "exit")
            await mux.send_enter(name)
            await asyncio.sleep(0.5)
            await mux.send_text(name, self.config.multiplexer.agent_command)
            await mux.send_enter(name)
        else:
            logger.warning(f"Unknown control action {action}")
            return f"I don't know how to do {action}."
        logger.info(f"Control {action} sent to {name}")
        return CONTROL_REPLIES[action]

    # -- teardown ---------------------------------------------------------------

    async def _detach(self, terminal: TerminalSession) -> None:
        if terminal._pump_task is not None:
            terminal._pump_task.cancel()
        if terminal.stream is not None:
            await terminal.stream.close()

    async def destroy_agent_session(self, name: str) -> None:
        """Kill a multiplexer session and retire its registry record."""
        await self.multiplexer.destroy_session(name)
        self.registry.mark_inactive(name)
        self.watcher.forget(name)

    async def close(self, terminal_id: str, kill_session: bool = False) -> None:
        """Close a terminal. The agent session survives unless ``kill_session``."""
        terminal = self.terminals.pop(terminal_id, None)
        if terminal is None:
            raise TerminalNotFound(terminal_id)
        await self._detach(terminal)
        if kill_session:
            await self.destroy_agent_session(terminal.agent_session_name)
            logger.info(f"Closed {terminal_id} and killed {terminal.agent_session_name}")
        else:
            logger.info(f"Closed {terminal_id} (session {terminal.agent_session_name} preserved)")
        await self.sink.send("terminal_closed", {"terminalId": terminal_id})

    async def close_all(self) -> None:
        """Connection is closing: tear down every agent session this client holds."""
        terminals = list(self.terminals.values())
        self.terminals.clear()
        for task in list(self._tasks):
            task.cancel()

        names: list[str] = []
        for terminal in terminals:
            await self._detach(terminal)
            if terminal.agent_session_name not in names:
                names.append(terminal.agent_session_name)
        for name in names:
            await self.destroy_agent_session(name)
        if names:
            logger.info(f"Client disconnected, destroyed {len(names)} session(s)")
