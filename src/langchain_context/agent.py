"""
Long-context conversational agent

Wraps LangChain 1.0's create_agent with the context window manager:
- the working set sent to the model is budgeted every run (summary, recent
  tail, user turn)
- old messages are folded into a running summary once the working set grows
  past the threshold, and archived verbatim
- the agent can pull archived details back with the recall_memory tool

Persistence is handled by the conversation store (JSON files under
CONTEXT_STORAGE_DIR, or PostgreSQL when DATABASE_URL is set), not by a
LangGraph checkpointer.
"""

import asyncio
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from langchain.agents import create_agent
from langchain.chat_models import init_chat_model
from langchain_core.messages import AIMessage

from .memory import (
    ContextAgentMiddleware,
    ContextConfig,
    ContextWindowManager,
    SummarizeFn,
    TokenCounter,
    estimate_tokens,
    message_text,
)
from .tools import ALL_TOOLS, ContextAgentContext

logger = logging.getLogger(__name__)


# override=True: .env wins over the process environment
load_dotenv(override=True)


DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.7

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant in a long-running conversation.

Older parts of the conversation may have been condensed into a summary. When you
need an exact detail that is not in your current context (code, file names,
numbers, instructions), use the recall_memory tool to search the full history
before answering."""


def get_credentials() -> tuple[str | None, str | None]:
    """
    Resolve API credentials.

    Generic variables win over provider-specific ones:
    - API Key: API_KEY > ANTHROPIC_API_KEY > ANTHROPIC_AUTH_TOKEN
    - Base URL: API_BASE_URL > ANTHROPIC_BASE_URL
    """
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("ANTHROPIC_API_KEY")
        or os.getenv("ANTHROPIC_AUTH_TOKEN")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("ANTHROPIC_BASE_URL")
    return api_key, base_url


def _model_kwargs(temperature: float, max_tokens: int) -> dict:
    api_key, base_url = get_credentials()
    kwargs = {"temperature": temperature, "max_tokens": max_tokens}
    if api_key:
        kwargs["api_key"] = api_key
    if base_url:
        kwargs["base_url"] = base_url
    # model_provider is only passed when set, otherwise init_chat_model infers it
    model_provider = os.getenv("MODEL_PROVIDER")
    if model_provider:
        kwargs["model_provider"] = model_provider
    return kwargs


class LongContextAgent:
    """
    Conversational agent bounded by a fixed context budget.

    Usage:
        agent = LongContextAgent(config=ContextConfig(conversation_id="demo"))
        print(agent.invoke("Let's plan the deploy"))
    """

    def __init__(
        self,
        model: Optional[str] = None,
        config: Optional[ContextConfig] = None,
        system_prompt: Optional[str] = None,
        token_counter: TokenCounter = estimate_tokens,
        summarize_fn: Optional[SummarizeFn] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ):
        self.model_name = model or os.getenv("CHAT_MODEL", DEFAULT_MODEL)
        self.max_tokens = max_tokens or int(os.getenv("MAX_TOKENS", str(DEFAULT_MAX_TOKENS)))
        self.temperature = (
            temperature
            if temperature is not None
            else float(os.getenv("MODEL_TEMPERATURE", str(DEFAULT_TEMPERATURE)))
        )
        self.config = config or ContextConfig.from_env()
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT

        self._pg_conn = self._connect_postgres()
        store, archive = self._create_backends(token_counter)

        self.manager = ContextWindowManager(
            config=self.config,
            token_counter=token_counter,
            llm=None if summarize_fn else self._create_summarizer_llm(),
            summarize_fn=summarize_fn,
            store=store,
            archive=archive,
        )
        self.context = ContextAgentContext(recall=self.manager.recall)
        self.agent = self._create_agent()

    def _connect_postgres(self):
        """Open a PostgreSQL connection when DATABASE_URL is set."""
        db_url = os.getenv("DATABASE_URL")
        if not db_url:
            return None
        try:
            from psycopg import Connection
            from psycopg.rows import dict_row

            return Connection.connect(
                db_url,
                autocommit=True,
                prepare_threshold=0,
                row_factory=dict_row,
            )
        except Exception as e:
            logger.warning(
                "Failed to connect to PostgreSQL: %s. Falling back to file storage.", e
            )
            return None

    def _create_backends(self, token_counter: TokenCounter):
        if not self._pg_conn or not self.config.persistent:
            return None, None
        from .memory.postgres import PostgresConversationStore, PostgresHistoryArchive

        return (
            PostgresConversationStore(self._pg_conn),
            PostgresHistoryArchive(self._pg_conn, token_counter),
        )

    def _create_summarizer_llm(self):
        """A low-temperature model instance for summaries (same credentials)."""
        try:
            return init_chat_model(
                self.model_name, **_model_kwargs(temperature=0.3, max_tokens=2000)
            )
        except Exception as e:
            logger.warning("Failed to create summarizer LLM: %s", e)
            return None

    def _create_agent(self):
        model = init_chat_model(
            self.model_name,
            **_model_kwargs(temperature=self.temperature, max_tokens=self.max_tokens),
        )
        middleware = ContextAgentMiddleware(self.manager, self.system_prompt)
        # No system_prompt here: the middleware injects it so it is budgeted
        return create_agent(
            model=model,
            tools=ALL_TOOLS,
            context_schema=ContextAgentContext,
            middleware=[middleware],
        )

    async def ainvoke(self, message: str) -> dict:
        return await self.agent.ainvoke(
            {"messages": [{"role": "user", "content": message}]},
            context=self.context,
        )

    def invoke(self, message: str) -> str:
        """Run one turn synchronously and return the final answer text."""
        result = asyncio.run(self.ainvoke(message))
        return self.get_last_response(result)

    @staticmethod
    def get_last_response(result: dict) -> str:
        for msg in reversed(result.get("messages", [])):
            if isinstance(msg, AIMessage) and not msg.tool_calls:
                return message_text(msg)
        return ""

    async def recall(self, query: str) -> str:
        return await self.manager.recall.recall(query)
