"""
LangChain tools exposed to the agent.

- recall_memory: keyword search over history that has been folded into the
  running summary, evicted from the recent tail, or truncated on input

ToolRuntime gives the tool access to the per-agent context (the recall
interface bound to the current conversation).
"""

from dataclasses import dataclass

from langchain.tools import tool, ToolRuntime

from .memory.recall import MemoryRecall


@dataclass
class ContextAgentContext:
    """
    Agent runtime context

    Accessed from tools through ToolRuntime[ContextAgentContext]
    """
    recall: MemoryRecall


@tool
async def recall_memory(query: str, runtime: ToolRuntime[ContextAgentContext]) -> str:
    """
    Search through the full conversation history for specific details that
    might have been summarized.

    Use this when you need to recall code snippets, specific instructions, or
    details from earlier in the conversation that are not in your current
    context. Matching is a case-insensitive substring match, so prefer short,
    distinctive keywords.

    Args:
        query: The keyword or phrase to search for in past messages
    """
    return await runtime.context.recall.recall(query)


ALL_TOOLS = [recall_memory]
