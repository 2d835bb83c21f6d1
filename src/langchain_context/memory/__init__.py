"""
Context window management with summary folding and on-demand recall.

Keeps an unbounded conversation inside a fixed token budget:

- Budget Allocator: per turn, assembles system prompt + running summary +
  newest recent messages + user turn within ``active_buffer_tokens``
- Summarizer: once the working set passes ``summary_threshold``, folds the
  oldest messages into the running summary
- Conversation Store: durable summary + recent tail per conversation
- History Archive: append-only log of everything that left the working set
- Recall: bounded keyword search over the archive, exposed as a tool
"""

from .allocator import Allocation, BudgetAllocator
from .archive import HistoryArchive, InMemoryHistoryArchive, JsonlHistoryArchive
from .config import ContextConfig
from .errors import ContextBudgetError, ContextError, SummarizationError
from .manager import ContextWindowManager
from .messages import MessageKind, build_summary_message, message_kind, tag_message
from .middleware import ContextAgentMiddleware
from .recall import MemoryRecall
from .state import ArchiveReason, ConversationState, HistoryArchiveEntry
from .store import ConversationStore, InMemoryConversationStore, JsonFileConversationStore
from .summarizer import CompactionResult, ConversationSummarizer, SummarizeFn, merge_summaries
from .token_budget import (
    TokenCounter,
    count_message_tokens,
    count_messages_tokens,
    estimate_tokens,
    message_text,
    select_newest,
)

__all__ = [
    "Allocation",
    "ArchiveReason",
    "BudgetAllocator",
    "CompactionResult",
    "ContextAgentMiddleware",
    "ContextBudgetError",
    "ContextConfig",
    "ContextError",
    "ContextWindowManager",
    "ConversationState",
    "ConversationStore",
    "ConversationSummarizer",
    "HistoryArchive",
    "HistoryArchiveEntry",
    "InMemoryConversationStore",
    "InMemoryHistoryArchive",
    "JsonFileConversationStore",
    "JsonlHistoryArchive",
    "MemoryRecall",
    "MessageKind",
    "SummarizationError",
    "SummarizeFn",
    "TokenCounter",
    "build_summary_message",
    "count_message_tokens",
    "count_messages_tokens",
    "estimate_tokens",
    "merge_summaries",
    "message_kind",
    "message_text",
    "select_newest",
    "tag_message",
]
