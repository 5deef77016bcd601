"""
Summarizer collaborator for the SmallSummary and LargeSummary tiers.

``Summarizer`` is the interface the tier calculator consumes.
``ConversationSummarizer`` implements it on top of a LangChain chat model,
compressing the cumulative summary when a merge outgrows its budget.
"""

import logging
from typing import Optional, Protocol, Sequence

from langchain_core.messages import HumanMessage, SystemMessage

from .errors import SummarizationError
from .token_budget import estimate_tokens

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """You are a story chronicler. Summarize the following story passages concisely.
Focus on:
- Time and place of each event
- Key actions, decisions and their outcomes
- Characters involved and changes in their relationships or state
- Open threads that later passages may pick up

Output a concise summary in the same language as the passages. Do NOT use markdown headers."""

MERGE_SYSTEM_PROMPT = """You maintain a long-running story summary.
You are given the existing summary followed by new passages that happened after it.
Rewrite the summary so it covers everything, oldest events first, keeping earlier facts
that still matter and folding the new passages in at the end.
Output only the updated summary in the same language. Do NOT use markdown headers."""

COMPRESS_SYSTEM_PROMPT = """Compress the following summary to approximately 1/3 of its length.
Keep the most important information. Output in the same language."""

# Long passages are clipped before being sent for summarization
MAX_PASSAGE_CHARS = 2000

RETRYABLE_ERRORS = (TimeoutError, ConnectionError)


class Summarizer(Protocol):
    """Text-generation collaborator used by the tier calculator."""

    def summarize(self, texts: Sequence[str]) -> str: ...

    def merge(self, previous_summary: str, new_texts: Sequence[str]) -> str: ...


def _passages_text(texts: Sequence[str]) -> str:
    lines = []
    for index, text in enumerate(texts, 1):
        if len(text) > MAX_PASSAGE_CHARS:
            text = text[:MAX_PASSAGE_CHARS] + "..."
        lines.append(f"[{index}] {text}")
    return "\n\n".join(lines)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, RETRYABLE_ERRORS):
        return True
    # Provider SDKs name their transient errors consistently enough
    name = type(exc).__name__
    return any(word in name for word in ("Timeout", "RateLimit", "Connection", "Overloaded"))


class ConversationSummarizer:
    """Summarizes and merges story passages with a LangChain chat model."""

    def __init__(self, llm=None, max_summary_tokens: int = 1000):
        self._llm = llm
        self.max_summary_tokens = max_summary_tokens

    def _invoke(self, system_prompt: str, user_content: str) -> str:
        if not self._llm:
            raise SummarizationError("No summarization model configured", retryable=False)
        try:
            response = self._llm.invoke([
                SystemMessage(content=system_prompt),
                HumanMessage(content=user_content),
            ])
        except Exception as e:
            logger.warning("Summarization call failed: %s", e)
            raise SummarizationError(str(e) or type(e).__name__, retryable=_is_retryable(e)) from e

        content = response.content if hasattr(response, "content") else response
        if isinstance(content, list):
            content = "".join(
                block.get("text", "") if isinstance(block, dict) else str(block)
                for block in content
            )
        text = str(content).strip() if content else ""
        if not text:
            raise SummarizationError("Model returned an empty summary", retryable=True)
        return text

    def summarize(self, texts: Sequence[str]) -> str:
        """Summarize an ordered batch of passages."""
        if not texts:
            return ""
        return self._invoke(SUMMARY_SYSTEM_PROMPT, _passages_text(texts))

    def merge(self, previous_summary: str, new_texts: Sequence[str]) -> str:
        """
        Fold new passages into an existing cumulative summary.

        If the merged result exceeds max_summary_tokens, compress it once.
        """
        if not new_texts:
            return previous_summary
        if not previous_summary:
            return self.summarize(new_texts)

        content = (
            f"[Existing Summary]\n{previous_summary}\n\n"
            f"[New Passages]\n{_passages_text(new_texts)}"
        )
        merged = self._invoke(MERGE_SYSTEM_PROMPT, content)

        if estimate_tokens(merged) > self.max_summary_tokens:
            logger.info(
                "Merged summary over budget (%d > %d tokens), compressing",
                estimate_tokens(merged),
                self.max_summary_tokens,
            )
            merged = self.compress_summary(merged) or merged
        return merged

    def compress_summary(self, summary: str) -> Optional[str]:
        """Compress a summary to fit within budget."""
        if not summary:
            return summary
        return self._invoke(COMPRESS_SYSTEM_PROMPT, summary)
