"""Data models for agent sessions, client terminals and voice memory."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import TYPE_CHECKING, Literal
from uuid import uuid4

from .decisions import Decision

if TYPE_CHECKING:
    from .tmux import AttachedStream


ReadinessState = Literal[
    "idle",
    "processing",
    "awaiting_confirmation",
    "terminated",
    "unknown",
]

# States after which a submitted prompt will get no further output
SETTLED_STATES: frozenset[str] = frozenset({"idle", "awaiting_confirmation", "terminated"})

READINESS_PHRASES: dict[str, str] = {
    "idle": "ready and waiting for a new instruction",
    "processing": "busy working on the last request",
    "awaiting_confirmation": "waiting for a yes or no answer",
    "terminated": "not running (the agent has exited)",
    "unknown": "in an unknown state",
}

BackgroundStatus = Literal["running", "completed", "failed"]


def describe_state(state: str) -> str:
    """Human-readable phrase for a readiness state."""
    return READINESS_PHRASES.get(state, READINESS_PHRASES["unknown"])


@dataclass
class AgentSession:
    """One multiplexer session dedicated to one agent process.

    Only ``is_active`` changes after creation.
    """

    name: str
    project_id: str
    working_directory: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    is_active: bool = True

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "projectId": self.project_id,
            "workingDirectory": self.working_directory,
            "createdAt": self.created_at.isoformat(),
            "isActive": self.is_active,
        }


@dataclass
class BackgroundTask:
    """A fire-and-forget prompt dispatched while the user keeps talking."""

    description: str
    prompt_text: str
    terminal_id: str
    id: str = field(default_factory=lambda: f"bg-{uuid4().hex[:8]}")
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: BackgroundStatus = "running"
    result: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "taskId": self.id,
            "terminalId": self.terminal_id,
            "description": self.description,
            "startedAt": self.started_at.isoformat(),
            "status": self.status,
            "result": self.result,
        }


@dataclass
class TerminalSession:
    """A live, per-client binding of an output stream to an AgentSession."""

    id: str
    project_id: str
    agent_session_name: str
    sandboxed: bool = True
    stream: AttachedStream | None = None

    # Voice-mode state
    voice_mode: bool = False
    awaiting_response: bool = False
    idle_waiting: bool = False
    output_buffer: str = ""
    last_tts_at: float = 0.0
    # Consecutive waits that timed out without the agent settling
    stall_count: int = 0

    background_tasks: dict[str, BackgroundTask] = field(default_factory=dict)

    # Held while a prompt on this terminal is awaiting its response
    response_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _pump_task: asyncio.Task | None = field(default=None, repr=False)

    def reset_voice_turn(self) -> None:
        """Drop any stale wait so the next utterance starts clean."""
        self.awaiting_response = False
        self.idle_waiting = False
        self.output_buffer = ""
        self.stall_count = 0

    def accumulate(self, data: str) -> None:
        """Buffer output while a voice response is being awaited."""
        if self.voice_mode and self.awaiting_response:
            self.output_buffer += data

    def mark_spoken(self) -> None:
        """Record that we just spoke, starting the self-capture cooldown."""
        self.last_tts_at = time.monotonic()
        self.idle_waiting = True

    def in_cooldown(self, cooldown: float) -> bool:
        """Check whether input now would likely be our own speech."""
        if not self.last_tts_at:
            return False
        return (time.monotonic() - self.last_tts_at) < cooldown


@dataclass
class ConversationTurn:
    """One voice exchange in the per-project memory."""

    user_said: str
    decision: Decision
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    agent_output: str | None = None
    spoken_summary: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "userSaid": self.user_said,
            "decision": self.decision.model_dump(),
            "agentOutput": self.agent_output,
            "spokenSummary": self.spoken_summary,
        }
