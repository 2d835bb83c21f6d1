"""
Context window configuration.
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_STORAGE_DIR = "./storage"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass(frozen=True)
class ContextConfig:
    """Budgets and storage settings for the context window manager."""

    # Descriptive ceiling for the whole model context
    max_tokens: int = 8000

    # Target size of the uncompressed tail (and the allocator's hard budget)
    active_buffer_tokens: int = 4000

    # Working set size that triggers compaction
    summary_threshold: int = 6000

    # None = in-memory only, nothing survives the process
    conversation_id: Optional[str] = None
    storage_dir: str = DEFAULT_STORAGE_DIR

    # 0 = never compress the prior summary before merging
    max_summary_tokens: int = 0

    # Headroom kept free when an oversized user turn is cut down
    truncation_reserve_tokens: int = 200

    # Recall output caps (characters)
    recall_total_char_limit: int = 12000
    recall_entry_char_limit: int = 3000

    def __post_init__(self):
        if self.active_buffer_tokens <= 0:
            raise ValueError("active_buffer_tokens must be positive")
        if self.summary_threshold <= 0:
            raise ValueError("summary_threshold must be positive")
        if self.recall_entry_char_limit > self.recall_total_char_limit:
            raise ValueError(
                "recall_entry_char_limit cannot exceed recall_total_char_limit"
            )

    @property
    def persistent(self) -> bool:
        return bool(self.conversation_id)

    @classmethod
    def from_env(cls) -> "ContextConfig":
        """Load configuration from environment variables."""
        return cls(
            max_tokens=_env_int("CONTEXT_MAX_TOKENS", 8000),
            active_buffer_tokens=_env_int("CONTEXT_ACTIVE_BUFFER_TOKENS", 4000),
            summary_threshold=_env_int("CONTEXT_SUMMARY_THRESHOLD", 6000),
            conversation_id=os.getenv("CONTEXT_CONVERSATION_ID") or None,
            storage_dir=os.getenv("CONTEXT_STORAGE_DIR", DEFAULT_STORAGE_DIR),
            max_summary_tokens=_env_int("CONTEXT_MAX_SUMMARY_TOKENS", 0),
            truncation_reserve_tokens=_env_int(
                "CONTEXT_TRUNCATION_RESERVE_TOKENS", 200
            ),
            recall_total_char_limit=_env_int("CONTEXT_RECALL_TOTAL_CHARS", 12000),
            recall_entry_char_limit=_env_int("CONTEXT_RECALL_ENTRY_CHARS", 3000),
        )
