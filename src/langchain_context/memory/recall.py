"""
On-demand recall over the history archive.

Recall exists to undo the lossiness of summarization, so its output is capped
twice: each matched entry is cut to ``recall_entry_char_limit`` characters and
the whole result to ``recall_total_char_limit``. When the total cap is hit the
agent is told to narrow its query.
"""

import logging

from .archive import HistoryArchive
from .config import ContextConfig

logger = logging.getLogger(__name__)

NO_QUERY = "Please provide a keyword or phrase to search for."
NO_MATCHES = "No matching messages found in history."


class MemoryRecall:
    def __init__(
        self,
        archive: HistoryArchive,
        conversation_id: str,
        config: ContextConfig,
    ):
        self.archive = archive
        self.conversation_id = conversation_id
        self.total_char_limit = config.recall_total_char_limit
        self.entry_char_limit = config.recall_entry_char_limit

    async def recall(self, query: str) -> str:
        if not query or not query.strip():
            return NO_QUERY

        logger.info(
            "Recalling memory for conversation %s, query %r",
            self.conversation_id,
            query,
        )
        results = await self.archive.search(self.conversation_id, query)
        if not results:
            return NO_MATCHES

        output = f"Found {len(results)} matches in history:\n"
        shown = 0
        truncated = False

        for entry in results:
            content = entry.content
            if len(content) > self.entry_char_limit:
                content = (
                    content[: self.entry_char_limit]
                    + f"\n... [Content Truncated, original length: {len(entry.content)} chars]"
                )

            block = f"\n---\n[{entry.role}]: {content}"
            if len(output) + len(block) > self.total_char_limit:
                if not shown:
                    # Always show something of the first match
                    output += block[: max(self.total_char_limit - len(output), 0)]
                    shown = 1
                truncated = True
                break
            output += block
            shown += 1

        if truncated:
            logger.info(
                "Recall output capped: showing %d of %d matches", shown, len(results)
            )
            output += (
                f"\n\n[System Warning]: Output truncated because it exceeds the size "
                f"limit (showing {shown} of {len(results)} matches). Please refine your "
                f'query "{query}" to be more specific (e.g., add a date, file name, '
                f"or more keywords)."
            )
        return output
