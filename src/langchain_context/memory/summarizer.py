"""
Conversation summarizer and compaction.

When the working set grows past ``summary_threshold`` the oldest messages are
folded: summarized by the LLM, merged into the running summary, and archived
verbatim. The newest messages that fit in ``active_buffer_tokens`` stay.

A failed summary call propagates. The caller only commits the new summary
after ``compact`` returns, so a failure never leaves a half-written summary
behind.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from .archive import HistoryArchive
from .config import ContextConfig
from .errors import SummarizationError
from .messages import (
    MessageKind,
    build_summary_message,
    message_kind,
    ordinary_messages,
)
from .state import ArchiveReason, role_of
from .token_budget import (
    TokenCounter,
    count_messages_tokens,
    estimate_tokens,
    message_text,
    select_newest,
)

logger = logging.getLogger(__name__)

SummarizeFn = Callable[[list[BaseMessage]], Union[str, Awaitable[str]]]

SUMMARY_SYSTEM_PROMPT = "You are a helpful assistant that summarizes conversations."

SUMMARY_USER_PROMPT = """Summarize the following conversation concisely. Capture key details, decisions, and context that should be preserved:

{conversation}

Summary:"""

COMPRESS_SYSTEM_PROMPT = """Compress the following summary to approximately 1/3 of its length.
Keep the most important information. Output in the same language."""

PRIOR_LABEL = "Prior Context:"
RECENT_LABEL = "Recent Developments:"


def merge_summaries(old_summary: str, new_summary: str) -> str:
    """Two-part merge; the previous summary is always carried forward."""
    if not old_summary:
        return new_summary
    if not new_summary:
        return old_summary
    return f"{PRIOR_LABEL} {old_summary}\n\n{RECENT_LABEL} {new_summary}"


def format_conversation(messages: list[BaseMessage]) -> str:
    return "\n\n".join(f"[{role_of(m)}]: {message_text(m)}" for m in messages)


def _response_text(response: Any) -> str:
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, list):
        return message_text(HumanMessage(content=content))
    return str(content or "")


@dataclass
class CompactionResult:
    messages: list[BaseMessage]
    summary: str
    folded: list[BaseMessage]
    kept: list[BaseMessage]


class ConversationSummarizer:
    """Folds old messages into the running summary."""

    def __init__(
        self,
        config: ContextConfig,
        archive: HistoryArchive,
        llm=None,
        summarize_fn: Optional[SummarizeFn] = None,
        token_counter: TokenCounter = estimate_tokens,
    ):
        self.config = config
        self.archive = archive
        self._llm = llm
        self._summarize_fn = summarize_fn
        self.token_counter = token_counter

    async def _call_llm(self, system_prompt: str, text: str) -> str:
        response = await self._llm.ainvoke([
            SystemMessage(content=system_prompt),
            HumanMessage(content=text),
        ])
        return _response_text(response).strip()

    async def generate_summary(self, messages: list[BaseMessage]) -> str:
        """Summarize ``messages``. Any failure is raised as SummarizationError."""
        try:
            if self._summarize_fn is not None:
                result = self._summarize_fn(messages)
                if inspect.isawaitable(result):
                    result = await result
                return str(result or "").strip()
            if self._llm is not None:
                prompt = SUMMARY_USER_PROMPT.format(
                    conversation=format_conversation(messages)
                )
                return await self._call_llm(SUMMARY_SYSTEM_PROMPT, prompt)
        except Exception as e:
            raise SummarizationError(
                f"Failed to summarize {len(messages)} message(s): {e}"
            ) from e

        logger.warning(
            "No summarizer model configured; folding %d message(s) with a placeholder summary",
            len(messages),
        )
        return f"[{len(messages)} earlier message(s) folded; full text is in the history archive]"

    async def compress_summary(self, summary: str) -> str:
        if self._llm is None:
            return summary
        try:
            return await self._call_llm(COMPRESS_SYSTEM_PROMPT, summary) or summary
        except Exception as e:
            raise SummarizationError(f"Failed to compress summary: {e}") from e

    async def merge(self, old_summary: str, new_summary: str) -> str:
        """
        Merge the new summary into the old one.

        With ``max_summary_tokens`` set and an over-long merge, the prior part
        is compressed first; both labelled parts are still present afterwards.
        """
        merged = merge_summaries(old_summary, new_summary)
        limit = self.config.max_summary_tokens
        if old_summary and limit and self.token_counter(merged) > limit:
            compressed = await self.compress_summary(old_summary)
            merged = merge_summaries(compressed, new_summary)
            logger.info(
                "Compressed prior summary (%d -> %d tokens)",
                self.token_counter(old_summary),
                self.token_counter(compressed),
            )
        return merged

    def partition(
        self, messages: list[BaseMessage]
    ) -> tuple[list[BaseMessage], list[BaseMessage]]:
        """Split ordinary messages into (to_keep, to_fold)."""
        candidates = ordinary_messages(messages)
        to_keep, to_fold, _ = select_newest(
            candidates, self.config.active_buffer_tokens, self.token_counter
        )
        return to_keep, to_fold

    async def compact(
        self,
        messages: list[BaseMessage],
        summary: str,
        conversation_id: str,
    ) -> Optional[CompactionResult]:
        """
        Fold the oldest messages if the working set is over the threshold.

        Returns None when nothing needs folding.
        """
        total = count_messages_tokens(messages, self.token_counter)
        if total <= self.config.summary_threshold:
            return None

        to_keep, to_fold = self.partition(messages)
        if not to_fold:
            logger.debug(
                "Working set at %d tokens but nothing to fold", total
            )
            return None

        logger.info(
            "Compacting conversation %s: %d tokens > threshold %d, folding %d message(s), keeping %d",
            conversation_id,
            total,
            self.config.summary_threshold,
            len(to_fold),
            len(to_keep),
        )

        new_summary = await self.generate_summary(to_fold)
        merged = await self.merge(summary, new_summary)
        await self.archive.append(conversation_id, to_fold, ArchiveReason.FOLDED)

        system_prompt = next(
            (m for m in messages if message_kind(m) is MessageKind.SYSTEM_PROMPT),
            None,
        )
        rebuilt = []
        if system_prompt is not None:
            rebuilt.append(system_prompt)
        if merged:
            rebuilt.append(build_summary_message(merged))
        rebuilt.extend(to_keep)

        return CompactionResult(
            messages=rebuilt, summary=merged, folded=to_fold, kept=to_keep
        )
