"""
Exceptions raised by the context window manager.
"""


class ContextError(Exception):
    """Base class for context window errors."""


class ContextBudgetError(ContextError, ValueError):
    """The configured budget cannot hold the system prompt."""


class SummarizationError(ContextError):
    """Summary generation failed during compaction; nothing was committed."""
