"""
Context window manager: the turn-level entry points.

Wires the allocator, summarizer, store, archive and recall together for one
conversation and exposes them as three hooks the agent loop calls in order:

    before_turn(messages)  -> working set for the model call
    after_turn(messages)   -> working set after compaction (if any)
    after_run(messages)    -> persists the recent tail at the end of a run

The running summary lives in ``self.state``; it is reloaded from the store at
the start of every run so a restarted process never works from a stale copy.

Runs on the same conversation id must not overlap: the store is
last-write-wins. Overlap inside one process is detected and logged.
"""

import logging
from collections import Counter
from typing import Optional

from langchain_core.messages import AIMessage, BaseMessage, SystemMessage

from .allocator import Allocation, BudgetAllocator
from .archive import HistoryArchive, InMemoryHistoryArchive, JsonlHistoryArchive
from .config import ContextConfig
from .messages import as_system_prompt, ordinary_messages
from .recall import MemoryRecall
from .state import ArchiveReason, ConversationState
from .store import ConversationStore, InMemoryConversationStore, JsonFileConversationStore
from .summarizer import ConversationSummarizer, SummarizeFn
from .token_budget import TokenCounter, estimate_tokens, message_text

logger = logging.getLogger(__name__)

# Key used for the in-memory backends when no conversation id is configured
LOCAL_CONVERSATION_ID = "local"

# Runs in progress per conversation id, across all managers in this process
_active_runs: Counter[str] = Counter()


class ContextWindowManager:
    """
    Keeps one conversation inside a fixed token budget.

    Usage:
        manager = ContextWindowManager(ContextConfig(conversation_id="c1"), llm=llm)
        messages = await manager.before_turn([system_prompt, user_message])
        # ... model call, append response ...
        messages = await manager.after_turn(messages)
        await manager.after_run(messages)
    """

    def __init__(
        self,
        config: Optional[ContextConfig] = None,
        token_counter: TokenCounter = estimate_tokens,
        llm=None,
        summarize_fn: Optional[SummarizeFn] = None,
        store: Optional[ConversationStore] = None,
        archive: Optional[HistoryArchive] = None,
    ):
        self.config = config or ContextConfig()
        self.token_counter = token_counter
        self.conversation_id = self.config.conversation_id or LOCAL_CONVERSATION_ID

        if store is None:
            store = (
                JsonFileConversationStore(self.config.storage_dir)
                if self.config.persistent
                else InMemoryConversationStore()
            )
        if archive is None:
            archive = (
                JsonlHistoryArchive(self.config.storage_dir, token_counter)
                if self.config.persistent
                else InMemoryHistoryArchive(token_counter)
            )
        if not self.config.persistent:
            logger.info("No conversation id configured; context is kept in memory only")

        self.store = store
        self.archive = archive
        self.allocator = BudgetAllocator(self.config, archive, token_counter)
        self.summarizer = ConversationSummarizer(
            self.config,
            archive,
            llm=llm,
            summarize_fn=summarize_fn,
            token_counter=token_counter,
        )
        self.recall = MemoryRecall(archive, self.conversation_id, self.config)
        self.state = ConversationState()
        self._runs = 0

    async def load_state(self) -> ConversationState:
        state = await self.store.load(self.conversation_id)
        self.state = state or ConversationState()
        logger.debug(
            "Loaded state for conversation %s: summary=%d chars, %d recent messages",
            self.conversation_id,
            len(self.state.summary),
            len(self.state.recent_messages),
        )
        return self.state

    def _begin_run(self):
        self._runs += 1
        if not self.config.persistent:
            return
        if _active_runs[self.conversation_id]:
            logger.warning(
                "Another run on conversation %s is already active in this process; "
                "the last one to finish will overwrite the other's state",
                self.conversation_id,
            )
        _active_runs[self.conversation_id] += 1

    def _end_run(self):
        """Release one run started by before_turn. No-op when none is open."""
        if not self._runs:
            return
        self._runs -= 1
        if not self.config.persistent:
            return
        _active_runs[self.conversation_id] -= 1
        if _active_runs[self.conversation_id] <= 0:
            del _active_runs[self.conversation_id]

    def abort_run(self):
        """Close the current run after a failure that skips after_run."""
        self._end_run()

    async def allocate(self, messages: list[BaseMessage]) -> Allocation:
        if not isinstance(messages[0], SystemMessage):
            raise ValueError("The first message of a turn must be the system prompt")
        system_prompt = as_system_prompt(messages[0])
        user_turn = messages[-1] if len(messages) > 1 else None

        state = await self.load_state()
        allocation = await self.allocator.allocate(
            system_prompt, state, user_turn, self.conversation_id
        )
        if allocation.dropped:
            await self.archive.append(
                self.conversation_id, allocation.dropped, ArchiveReason.EVICTED
            )
        self.state = ConversationState(
            summary=state.summary,
            recent_messages=ordinary_messages(allocation.messages),
        )
        return allocation

    async def before_turn(self, messages: list[BaseMessage]) -> list[BaseMessage]:
        """Pre-turn filter: replace the incoming list with the budgeted working set."""
        if not messages:
            return messages
        self._begin_run()
        try:
            allocation = await self.allocate(messages)
        except BaseException:
            self._end_run()
            raise
        return allocation.messages

    async def after_turn(self, messages: list[BaseMessage]) -> list[BaseMessage]:
        """
        Post-turn filter: compact the working set if it grew past the threshold.

        A failed compaction ends the run; the caller retries with a new run.
        """
        try:
            result = await self.summarizer.compact(
                messages, self.state.summary, self.conversation_id
            )
        except BaseException:
            self._end_run()
            raise
        if result is None:
            return messages

        self.state = ConversationState(
            summary=result.summary, recent_messages=list(result.kept)
        )
        try:
            await self.store.save(self.conversation_id, self.state)
        except BaseException:
            self._end_run()
            raise
        return result.messages

    async def after_run(
        self, messages: list[BaseMessage], result: Optional[str] = None
    ) -> list[BaseMessage]:
        """Persist the recent tail (and the final answer) at the end of a run."""
        try:
            full = list(messages)
            if result is not None:
                last = full[-1] if full else None
                if not isinstance(last, AIMessage) or message_text(last) != result:
                    full.append(AIMessage(content=result))

            self.state = ConversationState(
                summary=self.state.summary,
                recent_messages=ordinary_messages(full),
            )
            try:
                await self.store.save(self.conversation_id, self.state)
            except Exception as e:
                logger.warning(
                    "Failed to save state for conversation %s: %s",
                    self.conversation_id,
                    e,
                )
            return full
        finally:
            self._end_run()
