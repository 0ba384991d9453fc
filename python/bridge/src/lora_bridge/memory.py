"""Per-project conversation memory with token-budgeted compaction.

Token counts are a character-based estimate. When a project's memory grows
past the ceiling, everything but the most recent turns is folded into a
running summary, and short facts are pulled out of that summary.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Awaitable, Callable

from .decisions import (
    ActionSequenceDecision,
    BackgroundTaskDecision,
    ControlDecision,
    ConversationalDecision,
    PromptDecision,
)
from .models import ConversationTurn
from .prompts import SUMMARIZER_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

# (system_instruction, text) -> summary
Summarizer = Callable[[str, str], Awaitable[str]]

_FACT_PATTERNS = [
    re.compile(r"projects?\s*(?:called|named|about)?\s*[:\"']?([^\"'\n,]+)", re.I),
    re.compile(r"files?\s*(?:called|named)?\s*[:\"']?([^\"'\n,]+)", re.I),
    re.compile(r"features?\s*[:\"']?([^\"'\n,]+)", re.I),
    re.compile(r"(?:preference|prefers?)\s*[:\"']?([^\"'\n,.]+)", re.I),
]


@dataclass
class ConversationMemory:
    """Rolling log for one project."""

    project_id: str
    turns: list[ConversationTurn] = field(default_factory=list)
    compacted_summary: str | None = None
    important_facts: list[str] = field(default_factory=list)
    total_estimated_tokens: int = 0
    compaction_count: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def stats(self) -> dict:
        return {
            "projectId": self.project_id,
            "turns": len(self.turns),
            "estimatedTokens": self.total_estimated_tokens,
            "compactionCount": self.compaction_count,
            "facts": list(self.important_facts),
            "hasSummary": self.compacted_summary is not None,
        }


def extract_facts(summary: str) -> list[str]:
    """Pull short factual fragments out of a summary, in order of appearance."""
    found: list[tuple[int, str]] = []
    for pattern in _FACT_PATTERNS:
        for match in pattern.finditer(summary):
            fact = match.group(1).strip()
            if len(fact) > 3:
                found.append((match.start(), fact))
    found.sort(key=lambda item: item[0])
    return [fact for _, fact in found]


class ConversationMemoryStore:
    """Owns every project's conversation memory."""

    def __init__(
        self,
        summarizer: Summarizer | None = None,
        max_context_tokens: int = 200_000,
        min_retained_turns: int = 5,
        max_facts: int = 20,
        chars_per_token: int = 4,
    ):
        """Initialize the store.

        Args:
            summarizer: Model call used for compaction; None degrades to truncation
            max_context_tokens: Estimated-token ceiling that triggers compaction
            min_retained_turns: Most recent turns compaction never touches
            max_facts: Cap on extracted facts, oldest dropped first
            chars_per_token: Characters per estimated token
        """
        self.summarizer = summarizer
        self.max_context_tokens = max_context_tokens
        self.min_retained_turns = min_retained_turns
        self.max_facts = max_facts
        self.chars_per_token = chars_per_token
        self._memories: dict[str, ConversationMemory] = {}

    def get(self, project_id: str) -> ConversationMemory:
        if project_id not in self._memories:
            self._memories[project_id] = ConversationMemory(project_id=project_id)
        return self._memories[project_id]

    def estimate_tokens(self, text: str | None) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def estimate_turn_tokens(self, turn: ConversationTurn) -> int:
        return (
            self.estimate_tokens(turn.user_said)
            + self.estimate_tokens(turn.decision.model_dump_json())
            + self.estimate_tokens(turn.agent_output)
            + self.estimate_tokens(turn.spoken_summary)
        )

    def recompute(self, memory: ConversationMemory) -> int:
        """Recompute the token estimate across summary, facts and turns."""
        total = self.estimate_tokens(memory.compacted_summary)
        total += sum(self.estimate_tokens(f) for f in memory.important_facts)
        total += sum(self.estimate_turn_tokens(t) for t in memory.turns)
        memory.total_estimated_tokens = total
        return total

    async def append(self, project_id: str, turn: ConversationTurn) -> None:
        """Add a turn, compacting if the ceiling is exceeded."""
        memory = self.get(project_id)
        memory.turns.append(turn)
        self.recompute(memory)
        logger.debug(
            f"Memory {project_id}: turn #{len(memory.turns)} ({turn.decision.type}), "
            f"~{memory.total_estimated_tokens} tokens"
        )
        if memory.total_estimated_tokens > self.max_context_tokens:
            logger.info(
                f"Memory {project_id} over budget "
                f"({memory.total_estimated_tokens}/{self.max_context_tokens}), compacting"
            )
            await self.compact(project_id)

    def update_turn(
        self,
        project_id: str,
        turn: ConversationTurn | None,
        agent_output: str | None = None,
        spoken_summary: str | None = None,
    ) -> None:
        """Attach the agent's output and our spoken summary to a recorded turn.

        Other turns may have been appended since, so the turn is passed in
        rather than taken from the end of the list.
        """
        if turn is None:
            return
        memory = self.get(project_id)
        if agent_output is not None:
            turn.agent_output = agent_output
        if spoken_summary is not None:
            turn.spoken_summary = spoken_summary
        self.recompute(memory)

    def clear(self, project_id: str) -> None:
        self._memories.pop(project_id, None)
        logger.info(f"Cleared memory for project {project_id}")

    async def compact(self, project_id: str) -> bool:
        """Fold older turns into the running summary.

        Returns:
            True if a new summary was produced
        """
        memory = self.get(project_id)
        if len(memory.turns) <= self.min_retained_turns:
            return False

        older = memory.turns[:-self.min_retained_turns]
        retained = memory.turns[-self.min_retained_turns:]

        if self.summarizer is None:
            logger.warning(f"No summarizer available, truncating memory for {project_id}")
            memory.turns = retained
            self.recompute(memory)
            return False

        try:
            summary = await self.summarizer(
                SUMMARIZER_SYSTEM_PROMPT,
                self._summarization_input(memory.compacted_summary, older),
            )
        except Exception as e:
            logger.error(f"Memory compaction failed for {project_id}: {e}")
            memory.turns = retained
            self.recompute(memory)
            return False

        for fact in extract_facts(summary):
            if fact not in memory.important_facts:
                memory.important_facts.append(fact)
        if len(memory.important_facts) > self.max_facts:
            memory.important_facts = memory.important_facts[-self.max_facts:]

        memory.compacted_summary = summary
        memory.turns = retained
        memory.compaction_count += 1
        self.recompute(memory)
        logger.info(
            f"Compacted {len(older)} turns for {project_id}, kept {len(retained)}, "
            f"~{memory.total_estimated_tokens} tokens, {len(memory.important_facts)} facts"
        )
        return True

    def _summarization_input(self, previous: str | None, turns: list[ConversationTurn]) -> str:
        parts = []
        if previous:
            parts.append(f"Previous Summary:\n{previous}\n")
        parts.append("Recent Conversation to Summarize:")
        for turn in turns:
            parts.append(f'User: "{turn.user_said}"')
            decision = turn.decision
            if isinstance(decision, PromptDecision):
                parts.append(f'-> Sent to agent: "{decision.content}"')
            elif isinstance(decision, ConversationalDecision):
                parts.append(f'-> Response: "{decision.content}"')
            elif isinstance(decision, ControlDecision):
                parts.append(f"-> Control: {decision.content}")
            elif isinstance(decision, ActionSequenceDecision):
                parts.append(f"-> Ran {len(decision.steps)} actions")
            elif isinstance(decision, BackgroundTaskDecision):
                parts.append(f'-> Background task: "{decision.description}"')
            if turn.spoken_summary:
                parts.append(f'-> Voice summary: "{turn.spoken_summary[:200]}"')
            parts.append("")
        return "\n".join(parts)

    def formatted_history(self, project_id: str) -> str:
        """Summary, facts and recent turns, formatted for the decision model."""
        memory = self.get(project_id)
        lines: list[str] = []

        if memory.compacted_summary:
            lines += ["## Previous Conversation Summary:", memory.compacted_summary, ""]

        if memory.important_facts:
            lines.append("## Important Context (remember these facts):")
            lines += [f"- {fact}" for fact in memory.important_facts]
            lines.append("")

        if memory.turns:
            lines.append("## Recent Conversation:")
            for turn in memory.turns:
                lines.append(f'[{turn.timestamp.strftime("%H:%M:%S")}] User said: "{turn.user_said}"')
                decision = turn.decision
                if isinstance(decision, PromptDecision):
                    lines.append(f'  -> You sent to the agent: "{decision.content}"')
                elif isinstance(decision, ControlDecision):
                    lines.append(f"  -> You used control: {decision.content}")
                elif isinstance(decision, ConversationalDecision):
                    lines.append(f'  -> You replied directly: "{decision.content}"')
                elif isinstance(decision, ActionSequenceDecision):
                    steps = ", ".join(step.action for step in decision.steps)
                    lines.append(f"  -> You ran actions: {steps}")
                elif isinstance(decision, BackgroundTaskDecision):
                    lines.append(f'  -> You started a background task: "{decision.description}"')
                if turn.agent_output:
                    output = turn.agent_output
                    if len(output) > 500:
                        output = output[:500] + "..."
                    lines.append(f"  -> The agent did: {output}")
                if turn.spoken_summary:
                    lines.append(f'  -> Voice summary: "{turn.spoken_summary}"')

        if not lines:
            return ""

        footer = f"[Session: {len(memory.turns)} turns, ~{memory.total_estimated_tokens} tokens"
        if memory.compaction_count:
            footer += f", compacted {memory.compaction_count}x"
        lines += ["", footer + "]"]
        return "\n".join(lines)
