"""
LangChain agent middleware for the context window manager.

Hooks the manager into ``create_agent``:

- ``abefore_agent``: prepends the system prompt and swaps the incoming
  messages for the budgeted working set (summary + recent tail + user turn)
- ``aafter_model``: compacts the working set after each model response
- ``aafter_agent``: persists the recent tail
- ``awrap_model_call`` / ``awrap_tool_call``: close the run when a model or
  tool call raises, since ``aafter_agent`` will not run

The graph's message list is replaced wholesale with ``REMOVE_ALL_MESSAGES``
followed by the new list; the agent is expected to run without a
checkpointer since the conversation store already carries the history.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from langchain.agents.middleware import (
    AgentMiddleware,
    AgentState,
    ModelRequest,
    ModelResponse,
)
from langchain_core.messages import BaseMessage, RemoveMessage, SystemMessage
from langgraph.graph.message import REMOVE_ALL_MESSAGES
from langgraph.runtime import Runtime

from .manager import ContextWindowManager
from .messages import MessageKind, as_system_prompt, message_kind

logger = logging.getLogger(__name__)


def replace_messages(messages: list[BaseMessage]) -> dict[str, Any]:
    return {"messages": [RemoveMessage(id=REMOVE_ALL_MESSAGES), *messages]}


class ContextAgentMiddleware(AgentMiddleware):
    """Adapts ContextWindowManager to the LangChain agent hook points."""

    def __init__(self, manager: ContextWindowManager, system_prompt: str):
        super().__init__()
        self.manager = manager
        self.system_prompt = as_system_prompt(SystemMessage(content=system_prompt))

    def _with_system_prompt(self, messages: list[BaseMessage]) -> list[BaseMessage]:
        if messages and message_kind(messages[0]) is MessageKind.SYSTEM_PROMPT:
            return list(messages)
        return [self.system_prompt, *messages]

    async def abefore_agent(
        self, state: AgentState, runtime: Runtime
    ) -> Optional[dict[str, Any]]:
        messages = self._with_system_prompt(state["messages"])
        working = await self.manager.before_turn(messages)
        logger.debug("Working set for this run: %d messages", len(working))
        return replace_messages(working)

    async def awrap_model_call(
        self,
        request: ModelRequest,
        handler: Callable[[ModelRequest], Awaitable[ModelResponse]],
    ) -> ModelResponse:
        try:
            return await handler(request)
        except BaseException:
            self.manager.abort_run()
            raise

    async def awrap_tool_call(self, request, handler):
        try:
            return await handler(request)
        except BaseException:
            self.manager.abort_run()
            raise

    async def aafter_model(
        self, state: AgentState, runtime: Runtime
    ) -> Optional[dict[str, Any]]:
        messages = list(state["messages"])
        compacted = await self.manager.after_turn(messages)
        if compacted is messages:
            return None
        return replace_messages(compacted)

    async def aafter_agent(
        self, state: AgentState, runtime: Runtime
    ) -> Optional[dict[str, Any]]:
        await self.manager.after_run(list(state["messages"]))
        return None
