"""
Token estimation and newest-first budget selection.

The estimator is pluggable: anything with the shape ``count(text) -> int``
works. Message costs are derived from the message text (plus serialized tool
call arguments for AI turns that only carry tool calls).
"""

import json
import math
from typing import Callable, Sequence

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage

TokenCounter = Callable[[str], int]


def estimate_tokens(text: str) -> int:
    """Default estimator: ~4 chars per token, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def message_text(msg: BaseMessage) -> str:
    """Flatten message content into plain text."""
    content = getattr(msg, "content", "")
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                text = (
                    block.get("text")
                    or block.get("thinking")
                    or block.get("reasoning")
                    or ""
                )
                if text:
                    parts.append(text)
        return "\n".join(parts)
    return str(content)


def count_message_tokens(
    msg: BaseMessage, counter: TokenCounter = estimate_tokens
) -> int:
    """Estimate the cost of one message with the given counter."""
    total = counter(message_text(msg))
    if isinstance(msg, AIMessage) and msg.tool_calls:
        for call in msg.tool_calls:
            payload = {"name": call.get("name"), "args": call.get("args") or {}}
            total += counter(json.dumps(payload, ensure_ascii=False))
    return total


def count_messages_tokens(
    messages: Sequence[BaseMessage], counter: TokenCounter = estimate_tokens
) -> int:
    return sum(count_message_tokens(m, counter) for m in messages)


def select_newest(
    messages: Sequence[BaseMessage],
    budget: int,
    counter: TokenCounter = estimate_tokens,
) -> tuple[list[BaseMessage], list[BaseMessage], int]:
    """
    Pick the newest contiguous run of messages that fits in ``budget``.

    Walks backwards from the most recent message and stops at the first one
    that does not fit, so the kept messages are always a suffix of the input
    and everything dropped is strictly older than everything kept. A kept
    suffix never opens with tool results whose calling AI message was cut.

    Returns (kept, dropped, kept_tokens), both lists in chronological order.
    """
    split = len(messages)
    used = 0
    for index in range(len(messages) - 1, -1, -1):
        cost = count_message_tokens(messages[index], counter)
        if used + cost > budget:
            break
        used += cost
        split = index

    while split < len(messages) and isinstance(messages[split], ToolMessage):
        used -= count_message_tokens(messages[split], counter)
        split += 1

    return list(messages[split:]), list(messages[:split]), used
