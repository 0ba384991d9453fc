"""Agent lifecycle hook artifacts written into each session's working directory.

The agent runs these hooks itself. Each one writes a small JSON token to a
per-session file that the readiness watcher polls:

    <state_dir>/lora-claude-state-<session>.json  {"state": ..., "timestamp": ms}
    <state_dir>/lora-hooks-ready-<session>        written once on session start
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import aiofiles

logger = logging.getLogger(__name__)

HOOK_SCRIPT_NAME = "lora-state-hook.sh"
STATE_FILE_PREFIX = "lora-claude-state-"
READY_MARKER_PREFIX = "lora-hooks-ready-"

_HOOK_SCRIPT = """#!/bin/bash
# Lora agent state hook: writes lifecycle state for the bridge to watch.
# LORA_SESSION is set on the tmux session by the bridge.

HOOK_TYPE="${{LORA_HOOK_TYPE:-notification}}"
INPUT=$(cat)

if [ -z "$LORA_SESSION" ]; then
  exit 0
fi

STATE_DIR="{state_dir}"
STATE_FILE="$STATE_DIR/{state_prefix}$LORA_SESSION.json"
READY_FILE="$STATE_DIR/{ready_prefix}$LORA_SESSION"
TIMESTAMP=$(date +%s000)

write_state() {{
  TMP="$STATE_FILE.$$"
  echo "{{\\"state\\":\\"$1\\",\\"timestamp\\":$TIMESTAMP}}" > "$TMP" && mv "$TMP" "$STATE_FILE"
}}

case "$HOOK_TYPE" in
  session_start)
    echo "$TIMESTAMP" > "$READY_FILE"
    ;;
  stop)
    write_state idle
    ;;
  prompt_submit)
    write_state processing
    ;;
  session_end)
    write_state stopped
    ;;
  notification)
    NOTIFICATION_TYPE=$(echo "$INPUT" | grep -o '"notification_type" *: *"[^"]*"' | sed 's/.*"\\([^"]*\\)"$/\\1/')
    case "$NOTIFICATION_TYPE" in
      permission_prompt) write_state permission ;;
      idle_prompt) write_state idle ;;
    esac
    ;;
esac

exit 0
"""

_SANDBOX_RULES = """# Project Sandbox Rules

This project is running in a sandboxed environment.

- You can ONLY access files within this project directory: `{path}`
- You CANNOT access parent directories or other projects
- Do not navigate outside this directory using `cd ..` or absolute paths
"""


def state_file_path(state_dir: str | Path, session_name: str) -> Path:
    """Side-channel file the hooks write state tokens to."""
    return Path(state_dir) / f"{STATE_FILE_PREFIX}{session_name}.json"


def ready_marker_path(state_dir: str | Path, session_name: str) -> Path:
    """Marker proving the agent's hooks fired at least once."""
    return Path(state_dir) / f"{READY_MARKER_PREFIX}{session_name}"


def _hook_entry(hook_type: str, matcher: str | None = None) -> dict:
    command = f'LORA_HOOK_TYPE={hook_type} bash "$CLAUDE_PROJECT_DIR/.claude/hooks/{HOOK_SCRIPT_NAME}"'
    entry: dict = {"hooks": [{"type": "command", "command": command, "timeout": 5}]}
    if matcher:
        entry["matcher"] = matcher
    return entry


def build_settings(sandboxed: bool) -> dict:
    """Agent settings wiring every lifecycle event to the state hook.

    Args:
        sandboxed: Add the sandbox block and filesystem deny rules

    Returns:
        Settings dictionary ready for JSON serialization
    """
    settings: dict = {}
    if sandboxed:
        settings["sandbox"] = {
            "enabled": True,
            "autoAllowBashIfSandboxed": True,
            "excludedCommands": ["docker", "git"],
            "network": {"allowLocalBinding": True},
        }
        settings["permissions"] = {
            "deny": [
                "Read(../**)",
                "Read(~/.ssh/**)",
                "Read(~/.aws/**)",
                "Read(~/.config/**)",
                "Read(~/.gnupg/**)",
                "Read(/etc/**)",
                "Edit(../**)",
                "Bash(rm -rf /)",
                "Bash(rm -rf ~)",
            ]
        }
    settings["hooks"] = {
        "SessionStart": [_hook_entry("session_start")],
        "UserPromptSubmit": [_hook_entry("prompt_submit")],
        "Stop": [_hook_entry("stop")],
        "SessionEnd": [_hook_entry("session_end")],
        "Notification": [
            _hook_entry("notification", matcher="idle_prompt"),
            _hook_entry("notification", matcher="permission_prompt"),
        ],
    }
    return settings


async def install_agent_hooks(
    working_dir: str | Path,
    state_dir: str | Path = "/tmp",
    sandboxed: bool = True,
) -> Path:
    """Write the hook script and agent settings into a project.

    Args:
        working_dir: Project directory the agent will run in
        state_dir: Directory the hook writes state tokens into
        sandboxed: Also restrict the agent to the project directory

    Returns:
        Path to the written settings file
    """
    project = Path(working_dir)
    claude_dir = project / ".claude"
    hooks_dir = claude_dir / "hooks"
    hooks_dir.mkdir(parents=True, exist_ok=True)

    stale = claude_dir / "settings.local.json"
    if stale.exists():
        stale.unlink()
        logger.info(f"Removed stale {stale}")

    script_path = hooks_dir / HOOK_SCRIPT_NAME
    script = _HOOK_SCRIPT.format(
        state_dir=str(state_dir),
        state_prefix=STATE_FILE_PREFIX,
        ready_prefix=READY_MARKER_PREFIX,
    )
    async with aiofiles.open(script_path, "w") as f:
        await f.write(script)
    os.chmod(script_path, 0o755)

    settings_path = claude_dir / "settings.json"
    async with aiofiles.open(settings_path, "w") as f:
        await f.write(json.dumps(build_settings(sandboxed), indent=2))

    if sandboxed:
        rules_path = project / "CLAUDE.md"
        if not rules_path.exists():
            async with aiofiles.open(rules_path, "w") as f:
                await f.write(_SANDBOX_RULES.format(path=project))

    logger.info(f"Installed agent hooks in {project}")
    return settings_path
