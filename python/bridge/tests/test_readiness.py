"""Tests for the readiness watcher and its side-channel source."""

import asyncio
import json
import time

import pytest

from lora_bridge.readiness import ReadinessWatcher, StateFileSource


def _write_token(source: StateFileSource, session: str, state: str, source_tag: str | None = None):
    source.state_dir.mkdir(parents=True, exist_ok=True)
    token = {"state": state, "timestamp": int(time.time() * 1000)}
    if source_tag:
        token["source"] = source_tag
    source.path(session).write_text(json.dumps(token))


class TestStateFileSource:
    """Reading and writing state tokens."""

    @pytest.mark.asyncio
    async def test_missing_file_reads_none(self, state_source):
        assert await state_source.read("lora-demo") is None

    @pytest.mark.asyncio
    async def test_malformed_file_reads_none(self, state_source):
        state_source.state_dir.mkdir(parents=True)
        state_source.path("lora-demo").write_text('{"state": "idl')

        assert await state_source.read("lora-demo") is None

    @pytest.mark.asyncio
    async def test_token_vocabulary(self, state_source):
        expected = {
            "idle": "idle",
            "permission": "awaiting_confirmation",
            "processing": "processing",
            "stopped": "terminated",
            "bogus": "unknown",
        }
        for raw, state in expected.items():
            _write_token(state_source, "lora-demo", raw)
            token = await state_source.read("lora-demo")
            assert token.state == state
            assert token.raw == raw

    @pytest.mark.asyncio
    async def test_write_tags_source(self, state_source):
        await state_source.write("lora-demo", "processing")

        token = await state_source.read("lora-demo")
        assert token.state == "processing"
        assert token.source == "bridge"
        assert not list(state_source.state_dir.glob("*.tmp"))

    def test_session_for_path(self, state_source):
        path = str(state_source.path("lora-demo--abc123"))
        assert state_source.session_for_path(path) == "lora-demo--abc123"
        assert state_source.session_for_path("/tmp/other.json") is None

    def test_remove_is_quiet_when_missing(self, state_source):
        state_source.remove("lora-nothing")


class TestAwaitReady:
    """Waiting for an agent to settle."""

    @pytest.mark.asyncio
    async def test_get_state_defaults_to_unknown(self, watcher):
        assert await watcher.get_state("lora-demo") == "unknown"

    @pytest.mark.asyncio
    async def test_settles_on_idle(self, watcher, state_source):
        _write_token(state_source, "lora-demo", "idle")

        result = await watcher.await_ready("lora-demo", timeout=1)

        assert result.state == "idle"
        assert result.settled
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_confirmation_prompt_counts_as_ready(self, watcher, state_source):
        _write_token(state_source, "lora-demo", "permission")

        result = await watcher.await_ready("lora-demo", timeout=1)
        assert result.state == "awaiting_confirmation"

    @pytest.mark.asyncio
    async def test_timeout_is_a_result_not_an_error(self, watcher, state_source):
        _write_token(state_source, "lora-demo", "processing")

        result = await watcher.await_ready("lora-demo", timeout=0.1)

        assert result.timed_out
        assert result.state == "processing"
        assert not result.settled

    @pytest.mark.asyncio
    async def test_idle_processing_idle_within_one_poll(self, state_source, fake_mux):
        """Polling alone picks up the second idle within one interval."""
        poll = 0.2
        watcher = ReadinessWatcher(state_source, fake_mux, poll_interval=poll, reactive=False, output_fallback=False)
        fake_mux.sessions["lora-demo"] = "/tmp"

        _write_token(state_source, "lora-demo", "idle")
        _write_token(state_source, "lora-demo", "processing")
        waiter = asyncio.create_task(watcher.await_ready("lora-demo", timeout=5))
        await asyncio.sleep(0.05)
        _write_token(state_source, "lora-demo", "idle")
        written_at = time.monotonic()

        result = await waiter

        assert result.state == "idle"
        assert time.monotonic() - written_at <= poll + 0.1

    @pytest.mark.asyncio
    async def test_wake_shortcuts_the_poll(self, state_source):
        watcher = ReadinessWatcher(state_source, None, poll_interval=10, reactive=False)
        _write_token(state_source, "lora-demo", "processing")

        waiter = asyncio.create_task(watcher.await_ready("lora-demo", timeout=20))
        await asyncio.sleep(0.05)
        _write_token(state_source, "lora-demo", "idle")
        watcher.wake("lora-demo")

        result = await asyncio.wait_for(waiter, timeout=2)
        assert result.state == "idle"

    @pytest.mark.asyncio
    async def test_terminated_is_terminal(self, watcher, state_source):
        _write_token(state_source, "lora-demo", "stopped")

        result = await watcher.await_ready("lora-demo", timeout=1)
        assert result.state == "terminated"

    @pytest.mark.asyncio
    async def test_returns_only_new_output(self, watcher, state_source, fake_mux):
        before = "> old prompt\nold answer line here\n> "
        fake_mux.screens["lora-demo"] = "> old prompt\nold answer line here\n> fix tests\nAll twelve tests pass now.\n> "
        _write_token(state_source, "lora-demo", "idle")

        result = await watcher.await_ready("lora-demo", timeout=1, previous_output=before)

        assert "All twelve tests pass now." in result.output
        assert "old answer" not in result.output

    @pytest.mark.asyncio
    async def test_mark_processing_and_forget(self, watcher, state_source):
        await watcher.mark_processing("lora-demo")
        assert await watcher.get_state("lora-demo") == "processing"

        state_source.marker_path("lora-demo").write_text("1")
        assert watcher.hooks_active("lora-demo")

        watcher.forget("lora-demo")
        assert await watcher.get_state("lora-demo") == "unknown"
        assert not watcher.hooks_active("lora-demo")

    @pytest.mark.asyncio
    async def test_screen_fallback_without_hooks(self, state_source, fake_mux):
        watcher = ReadinessWatcher(
            state_source, fake_mux, poll_interval=0.01, reactive=False,
            output_fallback=True, hooks_check_after=0,
        )
        fake_mux.screens["lora-demo"] = "Done with the change.\n>\n"

        result = await watcher.await_ready("lora-demo", timeout=1)

        assert result.state == "idle"
        assert result.used_hooks is False
