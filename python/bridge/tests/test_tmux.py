"""Tests for tmux command construction with a stubbed subprocess."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from lora_bridge.errors import MultiplexerError
from lora_bridge.tmux import TmuxAdapter


class FakeProcess:
    def __init__(self, returncode: int = 0, stdout: bytes = b"", stderr: bytes = b""):
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr

    async def communicate(self):
        return self._stdout, self._stderr


@pytest.fixture
def spawn(monkeypatch):
    """Replace subprocess creation; each call returns the next scripted process."""
    spawn = AsyncMock(return_value=FakeProcess())
    monkeypatch.setattr("lora_bridge.tmux.asyncio.create_subprocess_exec", spawn)
    return spawn


def _argv(spawn, call: int = -1) -> list[str]:
    return list(spawn.call_args_list[call].args)


@pytest.mark.asyncio
async def test_create_session_passes_cwd_and_env(spawn):
    await TmuxAdapter().create_session("lora-demo", "/srv/demo", env={"LORA_SESSION": "lora-demo"})

    assert _argv(spawn) == [
        "tmux", "new-session", "-d", "-s", "lora-demo", "-c", "/srv/demo", "-e", "LORA_SESSION=lora-demo",
    ]


@pytest.mark.asyncio
async def test_text_is_sent_literally(spawn):
    adapter = TmuxAdapter()

    await adapter.send_text("lora-demo", "echo $HOME; ls")
    await adapter.send_enter("lora-demo")
    await adapter.send_control_key("lora-demo", "c")
    await adapter.send_special_key("lora-demo", "Escape")

    assert [_argv(spawn, i)[1:] for i in range(4)] == [
        ["send-keys", "-t", "lora-demo:0", "-l", "echo $HOME; ls"],
        ["send-keys", "-t", "lora-demo:0", "Enter"],
        ["send-keys", "-t", "lora-demo:0", "C-c"],
        ["send-keys", "-t", "lora-demo:0", "Escape"],
    ]


@pytest.mark.asyncio
async def test_unknown_keys_are_rejected(spawn):
    adapter = TmuxAdapter()
    with pytest.raises(ValueError):
        await adapter.send_control_key("lora-demo", "q")
    with pytest.raises(ValueError):
        await adapter.send_special_key("lora-demo", "F13")
    spawn.assert_not_called()


@pytest.mark.asyncio
async def test_input_is_retried_once(spawn):
    spawn.side_effect = [FakeProcess(1, stderr=b"server busy"), FakeProcess()]

    await TmuxAdapter().send_enter("lora-demo")

    assert spawn.call_count == 2


@pytest.mark.asyncio
async def test_input_failure_surfaces_after_retry(spawn):
    spawn.return_value = FakeProcess(1, stderr=b"can't find session")

    with pytest.raises(MultiplexerError) as exc_info:
        await TmuxAdapter().send_text("lora-gone", "hi")

    assert "can't find session" in str(exc_info.value)
    assert spawn.call_count == 2


@pytest.mark.asyncio
async def test_session_exists(spawn):
    adapter = TmuxAdapter()
    assert await adapter.session_exists("lora-demo") is True

    spawn.return_value = FakeProcess(1)
    assert await adapter.session_exists("lora-demo") is False


@pytest.mark.asyncio
async def test_list_sessions_filters_prefix(spawn):
    spawn.return_value = FakeProcess(stdout=b"lora-demo\nscratch\nlora-demo--a1b2c3\n")

    assert await TmuxAdapter().list_sessions("lora-") == ["lora-demo", "lora-demo--a1b2c3"]


@pytest.mark.asyncio
async def test_capture_failure_is_empty(spawn):
    adapter = TmuxAdapter()
    spawn.return_value = FakeProcess(stdout=b"line one\nline two\n")
    assert await adapter.capture_output("lora-demo", 40) == "line one\nline two\n"
    assert _argv(spawn)[-2:] == ["-S", "-40"]

    spawn.return_value = FakeProcess(1)
    assert await adapter.capture_output("lora-demo") == ""


@pytest.mark.asyncio
async def test_destroy_ignores_missing_session(spawn):
    spawn.return_value = FakeProcess(1, stderr=b"no such session")
    await TmuxAdapter().destroy_session("lora-gone")


@pytest.mark.asyncio
async def test_availability_checks_path(monkeypatch):
    monkeypatch.setattr("lora_bridge.tmux.shutil.which", MagicMock(return_value=None))
    assert await TmuxAdapter().is_available() is False
