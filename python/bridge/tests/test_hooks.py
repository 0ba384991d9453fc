"""Tests for agent hook installation."""

import json
import os

import pytest

from lora_bridge.hooks import (
    HOOK_SCRIPT_NAME,
    build_settings,
    install_agent_hooks,
    ready_marker_path,
    state_file_path,
)


def test_side_channel_paths():
    assert str(state_file_path("/tmp", "lora-demo")) == "/tmp/lora-claude-state-lora-demo.json"
    assert str(ready_marker_path("/tmp", "lora-demo")) == "/tmp/lora-hooks-ready-lora-demo"


def test_settings_cover_every_lifecycle_event():
    hooks = build_settings(sandboxed=False)["hooks"]

    assert set(hooks) == {"SessionStart", "UserPromptSubmit", "Stop", "SessionEnd", "Notification"}
    matchers = {entry["matcher"] for entry in hooks["Notification"]}
    assert matchers == {"idle_prompt", "permission_prompt"}
    assert "LORA_HOOK_TYPE=stop" in hooks["Stop"][0]["hooks"][0]["command"]


def test_unsandboxed_settings_have_no_restrictions():
    settings = build_settings(sandboxed=False)
    assert "sandbox" not in settings
    assert "permissions" not in settings


@pytest.mark.asyncio
async def test_install_writes_script_and_settings(tmp_path):
    project = tmp_path / "demo"
    (project / ".claude").mkdir(parents=True)
    (project / ".claude" / "settings.local.json").write_text("{}")

    settings_path = await install_agent_hooks(project, state_dir=tmp_path / "state", sandboxed=True)

    script = project / ".claude" / "hooks" / HOOK_SCRIPT_NAME
    assert script.exists()
    assert os.access(script, os.X_OK)
    body = script.read_text()
    assert str(tmp_path / "state") in body
    assert "write_state permission" in body

    settings = json.loads(settings_path.read_text())
    assert settings["sandbox"]["enabled"] is True
    assert "Read(../**)" in settings["permissions"]["deny"]
    assert not (project / ".claude" / "settings.local.json").exists()
    assert (project / "CLAUDE.md").exists()


@pytest.mark.asyncio
async def test_install_keeps_existing_claude_md(tmp_path):
    (tmp_path / "CLAUDE.md").write_text("# Mine")

    await install_agent_hooks(tmp_path, sandboxed=True)

    assert (tmp_path / "CLAUDE.md").read_text() == "# Mine"
