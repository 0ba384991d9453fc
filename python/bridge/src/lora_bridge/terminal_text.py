"""Helpers for turning captured agent screens into speakable text."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_SPINNER_CHARS = "·✻✽✿✸⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"

_PROCESSING_PATTERNS = [
    re.compile(f"[{_SPINNER_CHARS}]"),
    re.compile(r"\bThinking\b", re.I),
    re.compile(r"\bWorking\b", re.I),
    re.compile(r"\bProcessing\b", re.I),
    re.compile(r"\bAnalyzing\b", re.I),
    re.compile(r"\bReading\b", re.I),
    re.compile(r"\bWriting\b", re.I),
    re.compile(r"\bSearching\b", re.I),
    re.compile(r"\bRunning\b", re.I),
    re.compile(r"esc to interrupt", re.I),
    re.compile(r"\.\.\.\s*$"),
]

_CONFIRM_PATTERNS = [
    re.compile(r"\[y/n\]", re.I),
    re.compile(r"\[yes/no\]", re.I),
    re.compile(r"\(yes/no\)", re.I),
    re.compile(r"Do you want to proceed", re.I),
    re.compile(r"Would you like to", re.I),
    re.compile(r"Continue\?", re.I),
    re.compile(r"Proceed\?", re.I),
]

_PROMPT_PATTERNS = [
    re.compile(r"^\s*>\s*$"),
    re.compile(r"What would you like", re.I),
    re.compile(r"How can I help", re.I),
    re.compile(r"What can I help", re.I),
]

# Line filters for extract_agent_response
_SKIP_LINE_PATTERNS = [
    re.compile(r"^>\s*.+"),
    re.compile(r"^[$%#]\s*$"),
    re.compile(r"^\[sandbox\]"),
    re.compile(r"^[╭╮╰╯│─┌┐└┘├┤┬┴┼═╔╗╚╝╠╣╦╩╬]+$"),
    re.compile(r"^\w+@[\w-]+:"),
    re.compile(r"◯\s*IDE\s*(dis)?connected", re.I),
    re.compile(r"ctrl\+[a-z]", re.I),
    re.compile(r"to edit in vim", re.I),
    re.compile(r"^⎿?\s*Tip:", re.I),
    re.compile(r"install-slack-app", re.I),
    re.compile(r"Inferring|Combobulating|Thinking", re.I),
    re.compile(r"esc to interrupt", re.I),
    re.compile(r"^[·✻✽✿✸]\s"),
]

_ACRONYMS = [
    (r"\bAPI\b", "A P I"),
    (r"\bJSON\b", "jason"),
    (r"\bHTML\b", "H T M L"),
    (r"\bCSS\b", "C S S"),
    (r"\bURL\b", "U R L"),
    (r"\bSQL\b", "sequel"),
    (r"\bCLI\b", "command line"),
    (r"\bNPM\b", "N P M"),
    (r"\bSSH\b", "S S H"),
    (r"\bTUI\b", "terminal interface"),
]

ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]")
_OSC_RE = re.compile(r"\x1b\][^\x07]*(\x07|\x1b\\)")
_PATH_RE = re.compile(r"[\w.\-]*[/\\][\w\-./\\]+\.(?:ts|tsx|js|jsx|py|json|md)\b", re.I)


@dataclass
class ScreenState:
    """State inferred from the visible screen alone."""

    is_ready: bool
    is_processing: bool
    is_waiting_confirm: bool
    has_input_prompt: bool

    @property
    def readiness(self) -> str:
        """Map onto the readiness vocabulary."""
        if self.is_processing:
            return "processing"
        if self.is_waiting_confirm:
            return "awaiting_confirmation"
        if self.is_ready:
            return "idle"
        return "unknown"


def strip_ansi(text: str) -> str:
    """Remove colour and OSC escape sequences."""
    return ANSI_RE.sub("", _OSC_RE.sub("", text))


def infer_state_from_output(output: str) -> ScreenState:
    """Guess agent state from screen contents.

    Used only when lifecycle hooks have not reported anything.
    """
    lines = strip_ansi(output).rstrip("\n").split("\n")
    tail = "\n".join(lines[-15:])
    last_line = lines[-1] if lines else ""
    second_last = lines[-2] if len(lines) > 1 else ""

    is_processing = any(p.search(tail) for p in _PROCESSING_PATTERNS)
    is_waiting_confirm = any(p.search(tail) for p in _CONFIRM_PATTERNS)
    has_prompt = any(p.search(last_line) or p.search(second_last) for p in _PROMPT_PATTERNS)

    return ScreenState(
        is_ready=(has_prompt or is_waiting_confirm) and not is_processing,
        is_processing=is_processing,
        is_waiting_confirm=is_waiting_confirm,
        has_input_prompt=has_prompt,
    )


def extract_new_output(full_output: str, previous_output: str | None) -> str:
    """Return only what appeared on screen after ``previous_output``.

    Tries, in order: the last echoed command line, the last meaningful line
    of the previous snapshot, and a plain line-count difference. Falls back
    to the whole screen so there is always something to summarize.
    """
    if not previous_output or not previous_output.strip():
        return full_output
    if full_output.strip() == previous_output.strip():
        return ""

    full_lines = full_output.split("\n")
    prev_lines = previous_output.split("\n")

    # Last command echo
    echo_idx = -1
    for i, line in enumerate(full_lines):
        stripped = line.strip()
        if stripped.startswith(">") and len(stripped) > 3:
            echo_idx = i
    if 0 <= echo_idx < len(full_lines) - 1:
        content = "\n".join(full_lines[echo_idx + 1:]).strip()
        if len(content) > 10:
            return content

    # Last meaningful line of the previous snapshot
    markers = [l.strip() for l in prev_lines[-10:] if len(l.strip()) > 5]
    if markers:
        marker = markers[-1]
        marker_idx = -1
        for i, line in enumerate(full_lines):
            if line.strip() == marker:
                marker_idx = i
        if 0 <= marker_idx < len(full_lines) - 1:
            content = "\n".join(full_lines[marker_idx + 1:]).strip()
            if len(content) > 10:
                return content

    if len(full_lines) > len(prev_lines) + 2:
        content = "\n".join(full_lines[max(0, len(prev_lines) - 5):]).strip()
        if len(content) > 10:
            return content

    logger.debug("No extraction strategy matched, using full output")
    return full_output


def extract_agent_response(raw_output: str) -> str:
    """Drop prompts, box drawing, spinners, tips and status lines."""
    kept = []
    for line in strip_ansi(raw_output).split("\n"):
        stripped = line.strip()
        if len(stripped) < 3:
            continue
        if any(p.search(stripped) for p in _SKIP_LINE_PATTERNS):
            continue
        if re.fullmatch(r"[─═]+", stripped):
            continue
        if re.search(r"\[\s*\]", stripped) and len(stripped) < 20:
            continue
        if len(re.sub(r"\s", "", stripped)) < 5:
            continue
        kept.append(stripped)
    return "\n".join(kept).strip()


def format_for_speech(text: str) -> str:
    """Make agent text sound reasonable when read aloud."""
    text = re.sub(r"```[\s\S]*?```", " ", text)
    text = re.sub(r"`([^`]+)`", r"\1", text)
    text = _PATH_RE.sub(lambda m: re.split(r"[/\\]", m.group(0))[-1], text)
    for pattern, spoken in _ACRONYMS:
        text = re.sub(pattern, spoken, text, flags=re.I)
    text = strip_ansi(text)
    text = re.sub(r"[╭╮╰╯│─┌┐└┘├┤┬┴┼═╔╗╚╝╠╣╦╩╬]+", " ", text)
    text = re.sub(r"[·✻✽✿✸⎿⏳]", "", text)
    return re.sub(r"\s+", " ", text).strip()


def last_nonempty_line(output: str) -> str:
    """Last line with visible content."""
    lines = [l for l in strip_ansi(output).split("\n") if l.strip()]
    return lines[-1].strip() if lines else ""


def is_text_at_prompt(output: str, text: str = "") -> bool:
    """Check whether typed text is still sitting unsubmitted at the input prompt."""
    last = last_nonempty_line(output)
    if not last.startswith(">") or len(last) <= 2:
        return False
    if not text:
        return True
    typed = last[1:].strip()
    return bool(typed) and text.strip().startswith(typed[:40])
