"""
Budget allocator: assembles the working set for one turn.

Given the system prompt, the loaded conversation state and the new user turn,
builds the message list sent to the model so that everything after the
system prompt fits in ``active_buffer_tokens - cost(system prompt)``.

Priority, highest first:
  1. system prompt (never dropped)
  2. the user turn (truncated, with its full text archived, if it alone is
     over budget; in that case nothing else is included)
  3. the running summary (kept whole or dropped whole)
  4. recent messages, newest first, as a contiguous tail
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from langchain_core.messages import BaseMessage

from .archive import HistoryArchive
from .config import ContextConfig
from .errors import ContextBudgetError
from .messages import as_system_prompt, build_summary_message
from .state import ArchiveReason, ConversationState
from .token_budget import (
    TokenCounter,
    count_message_tokens,
    estimate_tokens,
    message_text,
    select_newest,
)

logger = logging.getLogger(__name__)

TRUNCATION_NOTICE = (
    "\n... [SYSTEM WARNING: This input was too long ({tokens} tokens, {chars} chars)"
    " and has been truncated to fit the context window."
    " The full content has been archived to history.]"
)
SHORT_TRUNCATION_NOTICE = "\n[TRUNCATED: {tokens} tokens, {chars} chars, archived]"


@dataclass
class Allocation:
    """Result of one allocation pass."""

    messages: list[BaseMessage]
    summary_kept: bool = False
    dropped: list[BaseMessage] = field(default_factory=list)
    truncated: bool = False


def fit_prefix(text: str, budget: int, counter: TokenCounter, suffix: str = "") -> str:
    """
    Longest prefix of ``text`` such that ``counter(prefix + suffix) <= budget``.

    Re-measures with the real estimator instead of assuming a fixed
    characters-per-token ratio. Assumes the counter does not decrease as text
    grows.
    """
    if counter(text + suffix) <= budget:
        return text
    lo, hi = 0, len(text)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if counter(text[:mid] + suffix) <= budget:
            lo = mid
        else:
            hi = mid - 1
    return text[:lo]


def truncate_content(
    text: str, budget: int, original_tokens: int, counter: TokenCounter
) -> str:
    """Cut ``text`` down to ``budget`` tokens, ending with a truncation notice."""
    for template in (TRUNCATION_NOTICE, SHORT_TRUNCATION_NOTICE):
        notice = template.format(tokens=original_tokens, chars=len(text))
        if counter(notice) <= budget:
            return fit_prefix(text, budget, counter, suffix=notice) + notice
    # Budget too small even for the short notice
    return fit_prefix(notice, budget, counter)


class BudgetAllocator:
    def __init__(
        self,
        config: ContextConfig,
        archive: HistoryArchive,
        token_counter: TokenCounter = estimate_tokens,
    ):
        self.config = config
        self.archive = archive
        self.token_counter = token_counter

    def _cost(self, msg: BaseMessage) -> int:
        return count_message_tokens(msg, self.token_counter)

    async def allocate(
        self,
        system_prompt: BaseMessage,
        state: Optional[ConversationState],
        user_turn: Optional[BaseMessage],
        conversation_id: str,
    ) -> Allocation:
        state = state or ConversationState()
        system_prompt = as_system_prompt(system_prompt)

        system_tokens = self._cost(system_prompt)
        available = self.config.active_buffer_tokens - system_tokens
        if available <= 0:
            raise ContextBudgetError(
                f"System prompt ({system_tokens} tokens) leaves no room in the "
                f"active buffer ({self.config.active_buffer_tokens} tokens)"
            )

        if user_turn is not None:
            user_tokens = self._cost(user_turn)
            if user_tokens > available:
                return await self._allocate_oversized(
                    system_prompt, state, user_turn, user_tokens, available, conversation_id
                )
            history_budget = available - user_tokens
        else:
            history_budget = available

        messages = [system_prompt]
        summary_kept = False

        if state.summary:
            summary_msg = build_summary_message(state.summary)
            summary_tokens = self._cost(summary_msg)
            if summary_tokens <= history_budget:
                messages.append(summary_msg)
                history_budget -= summary_tokens
                summary_kept = True
            else:
                logger.warning(
                    "Summary (%d tokens) dropped for this turn: history budget is %d tokens",
                    summary_tokens,
                    history_budget,
                )

        kept, dropped, kept_tokens = select_newest(
            state.recent_messages, history_budget, self.token_counter
        )
        if dropped:
            logger.info(
                "Dropped %d older recent message(s) to fit history budget "
                "(%d kept, %d/%d tokens)",
                len(dropped),
                len(kept),
                kept_tokens,
                history_budget,
            )
        messages.extend(kept)
        if user_turn is not None:
            messages.append(user_turn)

        return Allocation(
            messages=messages,
            summary_kept=summary_kept,
            dropped=dropped,
        )

    async def _allocate_oversized(
        self,
        system_prompt: BaseMessage,
        state: ConversationState,
        user_turn: BaseMessage,
        user_tokens: int,
        available: int,
        conversation_id: str,
    ) -> Allocation:
        # Archive first: the full text must exist somewhere before we cut it
        await self.archive.append(
            conversation_id, [user_turn], ArchiveReason.OVERSIZED_INPUT
        )

        reserve = min(self.config.truncation_reserve_tokens, available // 5)
        content = truncate_content(
            message_text(user_turn),
            available - reserve,
            user_tokens,
            self.token_counter,
        )
        truncated = user_turn.model_copy(update={"content": content})

        logger.warning(
            "User input (%d tokens) exceeds available budget (%d tokens); "
            "truncated to %d tokens and archived, %d recent message(s) left out",
            user_tokens,
            available,
            self._cost(truncated),
            len(state.recent_messages),
        )
        return Allocation(
            messages=[system_prompt, truncated],
            truncated=True,
            dropped=list(state.recent_messages),
        )
