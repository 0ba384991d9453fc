"""Voice pipeline: filter an utterance, assemble context, and decide what to do.

Filtering and the confirm/deny/interrupt shortcuts are deterministic and
run before the decision model, so noise and our own speech never cost a
model round trip.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Protocol

from .config import VoiceConfig
from .decisions import (
    ControlDecision,
    Decision,
    IgnoreDecision,
    PromptDecision,
    WorkingDecision,
    parse_decision,
)
from .memory import ConversationMemoryStore
from .models import ConversationTurn, ReadinessState, TerminalSession, describe_state
from .prompts import DECISION_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

# Stock phrases speech-to-text emits on near-silence
TRANSCRIPTION_ARTIFACTS: frozenset[str] = frozenset({
    "you",
    "thank you",
    "thanks",
    "thank you very much",
    "thanks for watching",
    "thank you for watching",
    "thanks for watching and see you next time",
    "please subscribe",
    "like and subscribe",
    "subtitles by the amaraorg community",
    "transcribed by",
    "bye",
    "bye bye",
    "uh",
    "um",
    "hmm",
    "okay bye",
})

AFFIRMATIVE: frozenset[str] = frozenset({
    "yes", "yeah", "yep", "yup", "sure", "ok", "okay", "yes please", "go ahead",
    "do it", "confirm", "approve", "allow", "allow it", "sounds good", "go for it",
    "yes do it", "correct", "affirmative",
})

NEGATIVE: frozenset[str] = frozenset({
    "no", "nope", "nah", "no thanks", "deny", "dont", "do not", "reject",
    "decline", "dont do it", "no dont", "negative",
})

INTERRUPTION: frozenset[str] = frozenset({
    "stop", "stop it", "stop that", "wait", "hold on", "hang on", "cancel",
    "cancel that", "abort", "never mind", "nevermind", "interrupt", "halt",
    "stop stop", "please stop",
})


def normalize(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace."""
    text = re.sub(r"[^\w\s]", "", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def word_count(text: str) -> int:
    return len(text.split())


class DecisionModel(Protocol):
    """The model call the pipeline depends on."""

    @property
    def available(self) -> bool:
        ...

    def decide(
        self, system: str, context: str, utterance: str, image: bytes | None = None
    ) -> Awaitable[str]:
        ...


@dataclass
class VoiceContext:
    """Everything the decision model gets to see besides the utterance."""

    readiness: ReadinessState = "unknown"
    recent_output: str = ""
    project_name: str | None = None
    terminal_count: int = 1
    active_terminal: int = 0
    visual_description: str | None = None
    image: bytes | None = None


class VoicePipeline:
    """Turns utterances into decisions."""

    def __init__(
        self,
        model: DecisionModel | None,
        memory: ConversationMemoryStore,
        config: VoiceConfig | None = None,
        system_prompt: str = DECISION_SYSTEM_PROMPT,
    ):
        """Initialize the pipeline.

        Args:
            model: Decision model; None sends every utterance to the agent as-is
            memory: Conversation memory store
            config: Voice thresholds
            system_prompt: Decision model instructions
        """
        self.model = model
        self.memory = memory
        self.config = config or VoiceConfig()
        self.system_prompt = system_prompt

    # -- filtering ------------------------------------------------------------

    def screen_audio(self, terminal: TerminalSession, audio: bytes) -> str | None:
        """Reject audio before transcription.

        Returns:
            Rejection reason, or None if the audio should be transcribed
        """
        if terminal.in_cooldown(self.config.tts_cooldown):
            return "cooldown after our own speech"
        if len(audio) < self.config.min_audio_bytes:
            return f"audio too small ({len(audio)} bytes)"
        return None

    def screen_transcript(
        self, terminal: TerminalSession, text: str, readiness: ReadinessState
    ) -> str | None:
        """Reject transcripts that are noise or too short to act on."""
        normalized = normalize(text)
        if not normalized:
            return "empty transcript"
        if normalized in TRANSCRIPTION_ARTIFACTS:
            return f"transcription artifact {normalized!r}"
        if self.shortcut(text, readiness) is not None:
            return None
        floor = self.config.idle_min_words if terminal.idle_waiting else self.config.min_words
        if word_count(normalized) < floor:
            return f"too short ({word_count(normalized)} < {floor} words)"
        return None

    def is_interruption(self, text: str) -> bool:
        return normalize(text) in INTERRUPTION

    def shortcut(self, text: str, readiness: ReadinessState) -> ControlDecision | None:
        """Direct keystroke for confirm/deny/interrupt, skipping the model."""
        normalized = normalize(text)
        if readiness == "awaiting_confirmation":
            if normalized in AFFIRMATIVE:
                return ControlDecision(content="CONFIRM")
            if normalized in NEGATIVE:
                return ControlDecision(content="DENY")
        if readiness == "processing" and normalized in INTERRUPTION:
            return ControlDecision(content="CTRL_C")
        return None

    # -- context ----------------------------------------------------------------

    def build_context(self, project_id: str, context: VoiceContext) -> str:
        """Assemble the context block sent alongside the utterance."""
        sections = []
        if context.project_name:
            sections.append(f"## Current Project: {context.project_name}")
        sections.append(f"## Agent State: the agent is {describe_state(context.readiness)}")
        if context.terminal_count > 1:
            sections.append(
                f"## Terminals: {context.terminal_count} open, "
                f"terminal {context.active_terminal} is active (zero-based)"
            )
        if context.recent_output:
            tail = context.recent_output[-self.config.recent_output_chars:]
            sections.append(f"## Recent Terminal Output:\n{tail}")
        if context.visual_description:
            sections.append(f"## What the user's screen shows:\n{context.visual_description}")
        history = self.memory.formatted_history(project_id)
        if history:
            sections.append(history)
        return "\n\n".join(sections)

    # -- decision ---------------------------------------------------------------

    async def record(self, utterance: str, project_id: str, decision: Decision) -> ConversationTurn | None:
        """Store a decision in project memory unless it is ignored or provisional."""
        if isinstance(decision, (IgnoreDecision, WorkingDecision)):
            return None
        turn = ConversationTurn(user_said=utterance, decision=decision)
        await self.memory.append(project_id, turn)
        return turn

    async def decide(
        self, utterance: str, project_id: str, context: VoiceContext, remember: bool = True
    ) -> Decision:
        """Decide what to do with one utterance.

        Args:
            utterance: Transcribed or typed text
            project_id: Project whose memory to consult and update
            context: Current readiness, output and topology
            remember: Record the decision in memory; callers that need the
                stored turn pass False and call record() themselves

        Returns:
            The decision
        """
        decision: Decision | None = self.shortcut(utterance, context.readiness)
        if decision is not None:
            logger.info(f"Shortcut {decision.content} for {utterance!r} ({context.readiness})")
        elif self.model is None or not self.model.available:
            decision = PromptDecision(content=utterance)
        else:
            try:
                raw = await self.model.decide(
                    self.system_prompt,
                    self.build_context(project_id, context),
                    utterance,
                    context.image,
                )
                decision = parse_decision(raw, utterance)
            except Exception as e:
                logger.error(f"Decision model failed, sending utterance as prompt: {e}")
                decision = PromptDecision(content=utterance)
            logger.info(f"Decision for {utterance!r}: {decision.type}")

        if remember:
            await self.record(utterance, project_id, decision)
        return decision
