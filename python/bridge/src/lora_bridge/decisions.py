"""Structured decisions produced by the voice decision model.

The model answers with a JSON object tagged by ``type``. Anything that does
not parse into one of the known shapes is treated as a plain prompt for the
agent, so a malformed answer never fails the turn.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

ControlAction = Literal[
    "CTRL_C",
    "ESCAPE",
    "CONFIRM",
    "DENY",
    "SLASH_CLEAR",
    "SLASH_HELP",
    "SLASH_COMPACT",
    "RESTART",
]


# -- action steps ------------------------------------------------------------


class PromptStep(BaseModel):
    action: Literal["prompt"] = "prompt"
    text: str
    terminal: int | None = None


class ControlStep(BaseModel):
    action: Literal["control"] = "control"
    key: ControlAction
    terminal: int | None = None


class SpeakStep(BaseModel):
    action: Literal["speak"] = "speak"
    text: str


class ScreenshotStep(BaseModel):
    action: Literal["screenshot"] = "screenshot"
    reason: str = ""


class SwitchTerminalStep(BaseModel):
    action: Literal["switch_terminal"] = "switch_terminal"
    terminal: int


class AppControlStep(BaseModel):
    action: Literal["app_control"] = "app_control"
    command: str
    target: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)


ActionStep = Annotated[
    Union[PromptStep, ControlStep, SpeakStep, ScreenshotStep, SwitchTerminalStep, AppControlStep],
    Field(discriminator="action"),
]


# -- decisions ---------------------------------------------------------------


class PromptDecision(BaseModel):
    """Send text to the agent."""

    type: Literal["prompt"] = "prompt"
    content: str


class ControlDecision(BaseModel):
    """Send a control key sequence to the agent."""

    type: Literal["control"] = "control"
    content: ControlAction


class ConversationalDecision(BaseModel):
    """Answer the user directly without touching the agent."""

    type: Literal["conversational"] = "conversational"
    content: str


class IgnoreDecision(BaseModel):
    """Background noise or a stray fragment."""

    type: Literal["ignore"] = "ignore"
    content: str = ""


class ActionSequenceDecision(BaseModel):
    """Several steps, possibly across terminals."""

    type: Literal["actions"] = "actions"
    steps: list[ActionStep] = Field(default_factory=list)
    content: str = ""


class BackgroundTaskDecision(BaseModel):
    """Dispatch a prompt without holding the conversation."""

    type: Literal["background"] = "background"
    description: str
    content: str
    terminal: int | None = None


class WorkingDecision(BaseModel):
    """The model needs more context before it can decide."""

    type: Literal["working"] = "working"
    reason: str = ""
    gather: Literal["terminal_output", "screenshot"] = "terminal_output"


Decision = Annotated[
    Union[
        PromptDecision,
        ControlDecision,
        ConversationalDecision,
        IgnoreDecision,
        ActionSequenceDecision,
        BackgroundTaskDecision,
        WorkingDecision,
    ],
    Field(discriminator="type"),
]

_decision_adapter: TypeAdapter[Decision] = TypeAdapter(Decision)


def strip_fences(text: str) -> str:
    """Unwrap a ```json fenced block if the model added one."""
    text = text.strip()
    if "```" in text:
        match = _FENCE_RE.search(text)
        if match:
            return match.group(1).strip()
    return text


def parse_decision(text: str, utterance: str = "") -> Decision:
    """Parse decision-model output, falling back to a plain prompt.

    Args:
        text: Raw model output
        utterance: What the user said, used when the model returned nothing

    Returns:
        A decision. Never raises.
    """
    raw = strip_fences(text)
    try:
        data = json.loads(raw)
        return _decision_adapter.validate_python(data)
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        logger.info(f"Decision did not parse ({type(e).__name__}), sending as prompt")
        return PromptDecision(content=text.strip() or utterance)

