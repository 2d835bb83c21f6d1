"""
Tests for the turn-level manager, the agent middleware and agent wiring.
"""

import asyncio
import logging

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from langchain_core.messages import AIMessage, HumanMessage, RemoveMessage, SystemMessage
from langgraph.graph.message import REMOVE_ALL_MESSAGES

from langchain_context.memory.archive import InMemoryHistoryArchive
from langchain_context.memory.config import ContextConfig
from langchain_context.memory.errors import SummarizationError
from langchain_context.memory import manager as manager_module
from langchain_context.memory.manager import ContextWindowManager, LOCAL_CONVERSATION_ID
from langchain_context.memory.messages import MessageKind, message_kind
from langchain_context.memory.middleware import ContextAgentMiddleware
from langchain_context.memory.state import ArchiveReason, ConversationState
from langchain_context.memory.store import InMemoryConversationStore, JsonFileConversationStore
from langchain_context.memory.token_budget import count_messages_tokens


def _text(tokens: int, char: str = "a") -> str:
    return char * (tokens * 4)


@pytest.fixture(autouse=True)
def _clear_active_runs():
    yield
    manager_module._active_runs.clear()


class TestContextWindowManager:
    def _manager(self, tmp_path, summarize_fn=None, **config_kwargs):
        config = ContextConfig(**{
            "conversation_id": "conv-1",
            "storage_dir": str(tmp_path),
            "active_buffer_tokens": 100,
            "summary_threshold": 150,
            **config_kwargs,
        })
        return ContextWindowManager(config, summarize_fn=summarize_fn)

    def test_persistent_backends_by_default(self, tmp_path):
        manager = self._manager(tmp_path)
        assert isinstance(manager.store, JsonFileConversationStore)
        assert manager.conversation_id == "conv-1"

    def test_in_memory_without_conversation_id(self):
        manager = ContextWindowManager(ContextConfig())
        assert isinstance(manager.store, InMemoryConversationStore)
        assert isinstance(manager.archive, InMemoryHistoryArchive)
        assert manager.conversation_id == LOCAL_CONVERSATION_ID

    @pytest.mark.asyncio
    async def test_first_turn(self, tmp_path, system_prompt):
        manager = self._manager(tmp_path)
        working = await manager.before_turn([system_prompt, HumanMessage(content="hello")])
        assert [m.content for m in working] == [system_prompt.content, "hello"]
        assert message_kind(working[0]) is MessageKind.SYSTEM_PROMPT

    @pytest.mark.asyncio
    async def test_first_message_must_be_system_prompt(self, tmp_path):
        manager = self._manager(tmp_path)
        with pytest.raises(ValueError):
            await manager.before_turn([HumanMessage(content="hi")])

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, tmp_path, system_prompt):
        manager = self._manager(tmp_path)
        working = await manager.before_turn([system_prompt, HumanMessage(content="q1")])
        await manager.after_run(working, result="a1")

        restarted = self._manager(tmp_path)
        working = await restarted.before_turn([system_prompt, HumanMessage(content="q2")])
        assert [m.content for m in working[1:]] == ["q1", "a1", "q2"]

    @pytest.mark.asyncio
    async def test_after_run_does_not_duplicate_answer(self, tmp_path, system_prompt):
        manager = self._manager(tmp_path)
        working = await manager.before_turn([system_prompt, HumanMessage(content="q1")])
        working.append(AIMessage(content="a1"))
        full = await manager.after_run(working, result="a1")
        assert [m.content for m in full[1:]] == ["q1", "a1"]
        assert len(manager.state.recent_messages) == 2

    @pytest.mark.asyncio
    async def test_evicted_messages_are_archived(self, tmp_path, system_prompt):
        manager = self._manager(tmp_path)
        old = HumanMessage(content="needle " + _text(60))
        newer = AIMessage(content=_text(20))
        await manager.store.save(
            "conv-1", ConversationState(recent_messages=[old, newer])
        )

        working = await manager.before_turn([system_prompt, HumanMessage(content=_text(20))])
        contents = [m.content for m in working]
        assert old.content not in contents
        assert newer.content in contents

        archived = await manager.archive.search("conv-1", "needle")
        assert len(archived) == 1
        assert archived[0].reason is ArchiveReason.EVICTED

    @pytest.mark.asyncio
    async def test_compaction_updates_and_saves_state(self, tmp_path, system_prompt):
        fn = MagicMock(return_value="folded summary")
        manager = self._manager(tmp_path, summarize_fn=fn)
        working = await manager.before_turn([system_prompt, HumanMessage(content=_text(40, "1"))])
        working += [
            AIMessage(content=_text(40, "2")),
            HumanMessage(content=_text(40, "3")),
            AIMessage(content=_text(40, "4")),
        ]

        compacted = await manager.after_turn(working)
        assert message_kind(compacted[1]) is MessageKind.SUMMARY
        assert count_messages_tokens(compacted[2:]) <= 100

        saved = await JsonFileConversationStore(tmp_path).load("conv-1")
        assert saved.summary == "folded summary"
        assert [m.content for m in saved.recent_messages] == [
            m.content for m in compacted[2:]
        ]

    @pytest.mark.asyncio
    async def test_no_loss_across_turns(self, tmp_path, system_prompt):
        fn = MagicMock(side_effect=lambda msgs: f"summary of {len(msgs)}")
        manager = self._manager(tmp_path, summarize_fn=fn, summary_threshold=80)
        seen = []

        for turn in range(6):
            user = HumanMessage(content=f"question-{turn} " + _text(25))
            working = await manager.before_turn([system_prompt, user])
            answer = AIMessage(content=f"answer-{turn} " + _text(25))
            working = await manager.after_turn([*working, answer])
            await manager.after_run(working)
            seen += [user, answer]

        state = await manager.load_state()
        live = {m.content for m in state.recent_messages}
        for msg in seen:
            if msg.content in live:
                continue
            tag = msg.content.split(" ")[0]
            archived = await manager.archive.search("conv-1", tag)
            assert [e.content for e in archived] == [msg.content]
        assert fn.called
        assert state.summary

    @pytest.mark.asyncio
    async def test_failed_compaction_commits_nothing(self, tmp_path, system_prompt):
        fn = MagicMock(side_effect=RuntimeError("timeout"))
        manager = self._manager(tmp_path, summarize_fn=fn)
        await manager.store.save("conv-1", ConversationState(summary="keep me"))

        working = await manager.before_turn([system_prompt, HumanMessage(content=_text(60))])
        working += [AIMessage(content=_text(60)), HumanMessage(content=_text(60))]
        with pytest.raises(SummarizationError):
            await manager.after_turn(working)

        saved = await manager.store.load("conv-1")
        assert saved.summary == "keep me"
        assert manager.state.summary == "keep me"

    @pytest.mark.asyncio
    async def test_end_of_run_save_failure_is_logged(self, tmp_path, system_prompt, caplog):
        manager = self._manager(tmp_path)
        working = await manager.before_turn([system_prompt, HumanMessage(content="hi")])
        manager.store.save = MagicMock(side_effect=OSError("disk full"))
        with caplog.at_level(logging.WARNING):
            await manager.after_run(working, result="hello")
        assert "Failed to save state" in caplog.text

    @pytest.mark.asyncio
    async def test_overlapping_runs_are_logged(self, tmp_path, system_prompt, caplog):
        first = self._manager(tmp_path)
        second = self._manager(tmp_path)
        await first.before_turn([system_prompt, HumanMessage(content="a")])
        with caplog.at_level(logging.WARNING):
            working = await second.before_turn([system_prompt, HumanMessage(content="b")])
        assert "already active" in caplog.text
        await first.after_run([system_prompt])
        await second.after_run(working)

    @pytest.mark.asyncio
    async def test_concurrent_runs_on_one_manager_are_logged(
        self, tmp_path, system_prompt, caplog
    ):
        manager = self._manager(tmp_path)
        with caplog.at_level(logging.WARNING):
            first, second = await asyncio.gather(
                manager.before_turn([system_prompt, HumanMessage(content="a")]),
                manager.before_turn([system_prompt, HumanMessage(content="b")]),
            )
        assert "already active" in caplog.text

        await manager.after_run(first)
        assert manager_module._active_runs["conv-1"] == 1
        await manager.after_run(second)
        assert "conv-1" not in manager_module._active_runs

    @pytest.mark.asyncio
    async def test_failed_compaction_ends_run(self, tmp_path, system_prompt, caplog):
        fn = MagicMock(side_effect=RuntimeError("timeout"))
        manager = self._manager(tmp_path, summarize_fn=fn)
        working = await manager.before_turn([system_prompt, HumanMessage(content=_text(60))])
        working += [AIMessage(content=_text(60)), HumanMessage(content=_text(60))]
        with pytest.raises(SummarizationError):
            await manager.after_turn(working)
        assert "conv-1" not in manager_module._active_runs

        with caplog.at_level(logging.WARNING):
            await self._manager(tmp_path).before_turn(
                [system_prompt, HumanMessage(content="retry")]
            )
        assert "already active" not in caplog.text


# ── Middleware Tests ──


class TestContextAgentMiddleware:
    def _middleware(self):
        manager = ContextWindowManager(
            ContextConfig(active_buffer_tokens=100, summary_threshold=150)
        )
        return ContextAgentMiddleware(manager, "You are helpful."), manager

    @pytest.mark.asyncio
    async def test_before_agent_injects_system_prompt(self):
        middleware, _ = self._middleware()
        update = await middleware.abefore_agent(
            {"messages": [HumanMessage(content="hi")]}, None
        )
        messages = update["messages"]
        assert isinstance(messages[0], RemoveMessage)
        assert messages[0].id == REMOVE_ALL_MESSAGES
        assert isinstance(messages[1], SystemMessage)
        assert messages[1].content == "You are helpful."
        assert messages[2].content == "hi"

    @pytest.mark.asyncio
    async def test_after_model_without_compaction(self):
        middleware, _ = self._middleware()
        update = await middleware.abefore_agent(
            {"messages": [HumanMessage(content="hi")]}, None
        )
        messages = [*update["messages"][1:], AIMessage(content="hello")]
        assert await middleware.aafter_model({"messages": messages}, None) is None

    @pytest.mark.asyncio
    async def test_after_model_replaces_on_compaction(self):
        middleware, _ = self._middleware()
        update = await middleware.abefore_agent(
            {"messages": [HumanMessage(content=_text(50))]}, None
        )
        messages = [
            *update["messages"][1:],
            AIMessage(content=_text(60)),
            HumanMessage(content=_text(60)),
        ]
        result = await middleware.aafter_model({"messages": messages}, None)
        replaced = result["messages"]
        assert replaced[0].id == REMOVE_ALL_MESSAGES
        assert message_kind(replaced[2]) is MessageKind.SUMMARY

    @pytest.mark.asyncio
    async def test_model_failure_closes_run(self, tmp_path):
        manager = ContextWindowManager(
            ContextConfig(conversation_id="c2", storage_dir=str(tmp_path))
        )
        middleware = ContextAgentMiddleware(manager, "You are helpful.")
        await middleware.abefore_agent({"messages": [HumanMessage(content="hi")]}, None)
        assert manager_module._active_runs["c2"] == 1

        handler = AsyncMock(side_effect=RuntimeError("rate limited"))
        with pytest.raises(RuntimeError):
            await middleware.awrap_model_call(MagicMock(), handler)
        assert "c2" not in manager_module._active_runs

    @pytest.mark.asyncio
    async def test_after_agent_persists(self):
        middleware, manager = self._middleware()
        update = await middleware.abefore_agent(
            {"messages": [HumanMessage(content="hi")]}, None
        )
        messages = [*update["messages"][1:], AIMessage(content="hello")]
        await middleware.aafter_agent({"messages": messages}, None)
        saved = await manager.store.load(manager.conversation_id)
        assert [m.content for m in saved.recent_messages] == ["hi", "hello"]


# ── Agent Wiring Tests ──


class TestLongContextAgent:
    @patch("langchain_context.agent.create_agent")
    @patch("langchain_context.agent.init_chat_model")
    def test_wires_middleware_and_recall_tool(self, mock_init, mock_create, tmp_path):
        from langchain_context.agent import LongContextAgent
        from langchain_context.tools import ALL_TOOLS

        agent = LongContextAgent(
            config=ContextConfig(conversation_id="demo", storage_dir=str(tmp_path)),
            summarize_fn=lambda msgs: "summary",
        )
        kwargs = mock_create.call_args.kwargs
        assert kwargs["tools"] == ALL_TOOLS
        assert "system_prompt" not in kwargs
        assert isinstance(kwargs["middleware"][0], ContextAgentMiddleware)
        assert agent.context.recall is agent.manager.recall
        # summarize_fn given: only the chat model is created
        assert mock_init.call_count == 1

    def test_get_credentials_prefers_generic(self, monkeypatch):
        from langchain_context.agent import get_credentials

        monkeypatch.setenv("API_KEY", "generic")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "specific")
        monkeypatch.setenv("API_BASE_URL", "https://example.test")
        assert get_credentials() == ("generic", "https://example.test")

    def test_get_last_response(self):
        from langchain_context.agent import LongContextAgent

        result = {"messages": [
            HumanMessage(content="q"),
            AIMessage(content="", tool_calls=[{"name": "recall_memory", "args": {}, "id": "1"}]),
            AIMessage(content="final"),
        ]}
        assert LongContextAgent.get_last_response(result) == "final"
