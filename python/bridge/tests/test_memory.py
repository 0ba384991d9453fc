"""Tests for conversation memory and compaction."""

from unittest.mock import AsyncMock

import pytest

from lora_bridge.decisions import ControlDecision, PromptDecision
from lora_bridge.memory import ConversationMemoryStore, extract_facts
from lora_bridge.models import ConversationTurn


def _big_turn(i: int) -> ConversationTurn:
    # ~1000 tokens of user speech plus a tiny decision
    return ConversationTurn(user_said=f"{i:04d}" + "x" * 3996, decision=PromptDecision(content="ok"))


def _fill(store: ConversationMemoryStore, project_id: str, count: int) -> None:
    memory = store.get(project_id)
    memory.turns = [_big_turn(i) for i in range(count)]
    store.recompute(memory)


class TestTokenAccounting:
    def test_estimate_is_ceil_of_chars(self, memory):
        assert memory.estimate_tokens("") == 0
        assert memory.estimate_tokens("abcd") == 1
        assert memory.estimate_tokens("abcde") == 2

    def test_turn_estimate_includes_every_field(self, memory):
        bare = ConversationTurn(user_said="abcd", decision=PromptDecision(content="x"))
        full = ConversationTurn(
            user_said="abcd",
            decision=PromptDecision(content="x"),
            agent_output="a" * 40,
            spoken_summary="b" * 8,
        )
        assert memory.estimate_turn_tokens(full) == memory.estimate_turn_tokens(bare) + 12

    @pytest.mark.asyncio
    async def test_update_turn(self, memory):
        turn = ConversationTurn(user_said="fix it", decision=PromptDecision(content="fix it"))
        await memory.append("demo", turn)
        before = memory.get("demo").total_estimated_tokens

        memory.update_turn("demo", turn, agent_output="Fixed.", spoken_summary="I fixed it.")

        assert memory.get("demo").turns[-1].agent_output == "Fixed."
        assert memory.get("demo").total_estimated_tokens > before

    @pytest.mark.asyncio
    async def test_update_turn_targets_the_given_turn(self, memory):
        first = ConversationTurn(user_said="fix it", decision=PromptDecision(content="fix it"))
        second = ConversationTurn(user_said="run tests", decision=PromptDecision(content="run tests"))
        await memory.append("demo", first)
        await memory.append("demo", second)

        memory.update_turn("demo", first, agent_output="Fixed.", spoken_summary="I fixed it.")

        assert first.spoken_summary == "I fixed it."
        assert second.agent_output is None
        assert second.spoken_summary is None
        assert memory.get("demo").total_estimated_tokens == sum(
            memory.estimate_turn_tokens(t) for t in (first, second)
        )


class TestCompaction:
    @pytest.mark.asyncio
    async def test_under_ceiling_is_untouched(self):
        summarizer = AsyncMock(return_value="summary")
        store = ConversationMemoryStore(summarizer=summarizer)

        for i in range(50):
            await store.append("demo", _big_turn(i))

        memory = store.get("demo")
        assert len(memory.turns) == 50
        assert memory.compaction_count == 0
        summarizer.assert_not_called()

    @pytest.mark.asyncio
    async def test_over_ceiling_keeps_exact_tail(self):
        summarizer = AsyncMock(return_value="Working on a project named demo-app, prefers TypeScript.")
        store = ConversationMemoryStore(summarizer=summarizer)
        _fill(store, "demo", 249)

        await store.append("demo", _big_turn(249))

        memory = store.get("demo")
        assert len(memory.turns) == 5
        assert memory.turns[-1].user_said.startswith("0249")
        assert memory.total_estimated_tokens < store.max_context_tokens
        assert memory.compaction_count == 1
        assert memory.compacted_summary.startswith("Working on")
        assert "demo-app" in memory.important_facts
        assert "TypeScript" in memory.important_facts

    @pytest.mark.asyncio
    async def test_summarizer_gets_previous_summary(self):
        summarizer = AsyncMock(return_value="new summary")
        store = ConversationMemoryStore(summarizer=summarizer)
        _fill(store, "demo", 10)
        store.get("demo").compacted_summary = "old summary"

        assert await store.compact("demo") is True

        text = summarizer.call_args.args[1]
        assert "Previous Summary:\nold summary" in text
        assert store.get("demo").compacted_summary == "new summary"

    @pytest.mark.asyncio
    async def test_summarizer_failure_still_truncates(self):
        store = ConversationMemoryStore(summarizer=AsyncMock(side_effect=RuntimeError("quota")))
        _fill(store, "demo", 20)
        store.get("demo").compacted_summary = "kept"

        assert await store.compact("demo") is False

        memory = store.get("demo")
        assert len(memory.turns) == 5
        assert memory.compacted_summary == "kept"
        assert memory.important_facts == []
        assert memory.compaction_count == 0

    @pytest.mark.asyncio
    async def test_no_summarizer_truncates(self):
        store = ConversationMemoryStore()
        _fill(store, "demo", 8)

        assert await store.compact("demo") is False
        assert len(store.get("demo").turns) == 5

    @pytest.mark.asyncio
    async def test_short_history_is_a_noop(self):
        summarizer = AsyncMock(return_value="summary")
        store = ConversationMemoryStore(summarizer=summarizer)
        _fill(store, "demo", 5)

        assert await store.compact("demo") is False
        assert len(store.get("demo").turns) == 5
        summarizer.assert_not_called()

    @pytest.mark.asyncio
    async def test_facts_are_capped_oldest_first(self):
        summaries = [f"The feature number-{i} was discussed" for i in range(25)]
        store = ConversationMemoryStore(summarizer=AsyncMock(side_effect=summaries), max_facts=20)

        for _ in range(25):
            _fill(store, "demo", 6)
            await store.compact("demo")

        facts = store.get("demo").important_facts
        assert len(facts) == 20
        assert facts[0] == "number-5 was discussed"
        assert facts[-1] == "number-24 was discussed"

    @pytest.mark.asyncio
    async def test_facts_are_deduped(self):
        store = ConversationMemoryStore(summarizer=AsyncMock(return_value="User prefers tabs"))

        for _ in range(3):
            _fill(store, "demo", 6)
            await store.compact("demo")

        assert store.get("demo").important_facts == ["tabs"]


class TestFormattedHistory:
    def test_extract_facts(self):
        facts = extract_facts("We created a file called notes.md, for the project named atlas")
        assert facts == ["notes.md", "atlas"]

    @pytest.mark.asyncio
    async def test_history_sections(self, memory):
        await memory.append("demo", ConversationTurn(user_said="run the tests", decision=PromptDecision(content="npm test")))
        await memory.append("demo", ConversationTurn(user_said="yes", decision=ControlDecision(content="CONFIRM")))
        memory.get("demo").important_facts = ["atlas"]

        history = memory.formatted_history("demo")

        assert "## Important Context" in history
        assert 'You sent to the agent: "npm test"' in history
        assert "You used control: CONFIRM" in history
        assert history.rstrip().endswith("]")

    def test_empty_history(self, memory):
        assert memory.formatted_history("nothing") == ""

    @pytest.mark.asyncio
    async def test_clear(self, memory):
        await memory.append("demo", ConversationTurn(user_said="hi", decision=PromptDecision(content="hi")))
        memory.clear("demo")
        assert memory.get("demo").turns == []
