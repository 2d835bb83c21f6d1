"""
Message kinds for the working set.

The working set mixes three kinds of messages: the agent's fixed system
prompt, the synthetic summary marker, and ordinary conversation messages.
The kind travels with the message in ``additional_kwargs`` so it never has to
be guessed from roles or content prefixes.
"""

from enum import Enum

from langchain_core.messages import BaseMessage, SystemMessage

KIND_KEY = "context_kind"
SYSTEM_PROMPT_ID = "context-system-prompt"
SUMMARY_ID = "context-summary"
SUMMARY_HEADER = "PREVIOUS CONVERSATION SUMMARY:"


class MessageKind(str, Enum):
    SYSTEM_PROMPT = "system_prompt"
    SUMMARY = "summary"
    ORDINARY = "ordinary"


def message_kind(msg: BaseMessage) -> MessageKind:
    raw = (msg.additional_kwargs or {}).get(KIND_KEY)
    if raw is None:
        return MessageKind.ORDINARY
    return MessageKind(raw)


def tag_message(msg: BaseMessage, kind: MessageKind) -> BaseMessage:
    """Return a copy of ``msg`` carrying ``kind``; the original is untouched."""
    if message_kind(msg) is kind:
        return msg
    kwargs = {**(msg.additional_kwargs or {}), KIND_KEY: kind.value}
    return msg.model_copy(update={"additional_kwargs": kwargs})


def as_system_prompt(msg: BaseMessage) -> BaseMessage:
    if message_kind(msg) is MessageKind.SYSTEM_PROMPT:
        return msg
    tagged = tag_message(msg, MessageKind.SYSTEM_PROMPT)
    if tagged.id is None:
        tagged = tagged.model_copy(update={"id": SYSTEM_PROMPT_ID})
    return tagged


def build_summary_message(summary: str) -> SystemMessage:
    """The synthetic system message that carries the running summary."""
    return SystemMessage(
        content=f"{SUMMARY_HEADER}\n{summary}",
        id=SUMMARY_ID,
        additional_kwargs={KIND_KEY: MessageKind.SUMMARY.value},
    )


def ordinary_messages(messages: list[BaseMessage]) -> list[BaseMessage]:
    """Drop the system prompt and summary marker, keep everything else in order."""
    return [m for m in messages if message_kind(m) is MessageKind.ORDINARY]
