"""
Summarizer - pluggable text generation for summaries.

This module provides:
- Summarizer: interface with required summarize() and optional capabilities
- SummarizerCapabilities: what optional steps a summarizer supports,
  read once by the engine at construction
- BaseSummarizer: heuristics shared by concrete summarizers (code blocks,
  key insights, importance scoring, importance analysis)
- SimpleTextSummarizer: model-free default
- CallableSummarizer: adapts user callables (e.g. an LLM client) to the interface
"""

import inspect
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from .models import (
    CodeBlock,
    ContextImportance,
    ContextSummary,
    HierarchicalSummary,
    Message,
    MetaSummary,
    SummaryResult,
    utcnow,
)

logger = logging.getLogger(__name__)

CODE_BLOCK_PATTERN = re.compile(r"```(?:([\w-]+)\n)?([\s\S]*?)```")
INSIGHT_PATTERN = re.compile(r"[^.!?]*[!?]+")
MAX_MESSAGE_INSIGHTS = 5

HIGH_IMPORTANCE_KEYWORDS = ("critical", "urgent", "important", "crucial")
QUESTION_WORDS = re.compile(r"\b(how|what|why|when)\b")


@dataclass(frozen=True)
class SummarizerCapabilities:
    """Optional steps a summarizer supports."""

    hierarchical: bool = False
    meta: bool = False
    importance_analysis: bool = False


class Summarizer(ABC):
    """
    Interface consumed by the engine.

    Only summarize() is required. Subclasses that implement the optional
    methods advertise them through `capabilities`; the engine skips a
    cascade step whose capability is absent.
    """

    capabilities = SummarizerCapabilities()

    @abstractmethod
    async def summarize(self, messages: Sequence[Message], context_id: str) -> SummaryResult:
        """Summarize a context's messages."""

    async def create_hierarchical_summary(
        self,
        summaries: Sequence[ContextSummary],
        parent_id: str
    ) -> HierarchicalSummary:
        raise NotImplementedError

    async def create_meta_summary(
        self,
        context_ids: Sequence[str],
        summaries: Sequence[HierarchicalSummary] = ()
    ) -> MetaSummary:
        raise NotImplementedError

    async def analyze_message_importance(self, message: Message, context_id: str) -> ContextImportance:
        raise NotImplementedError


def extract_code_blocks(messages: Sequence[Message]) -> List[CodeBlock]:
    """Pull fenced code blocks out of message content."""
    blocks = []
    for message in messages:
        for match in CODE_BLOCK_PATTERN.finditer(message.content):
            blocks.append(CodeBlock(
                language=match.group(1) or None,
                code=match.group(2).strip(),
                importance=float(message.importance) if message.importance else 1.0
            ))
    return blocks


def extract_key_insights(messages: Sequence[Message]) -> List[str]:
    """
    Collect user sentences that end in a question or exclamation mark.

    Returns:
        Up to 5 distinct insights, in order of appearance.
    """
    insights: List[str] = []
    for message in messages:
        if message.role != "user":
            continue
        for match in INSIGHT_PATTERN.finditer(message.content):
            insight = match.group(0).strip()
            if len(insight) > 10 and insight not in insights:
                insights.append(insight)
    return insights[:MAX_MESSAGE_INSIGHTS]


def calculate_importance_score(messages: Sequence[Message]) -> float:
    """Score a context from the share of HIGH/CRITICAL messages."""
    if not messages:
        return 0.5

    high_count = sum(
        1 for m in messages
        if m.importance is not None and m.importance >= ContextImportance.HIGH
    )
    if high_count:
        return min(0.5 + (high_count / len(messages)) * 0.5, 1.0)
    return 0.5


def heuristic_importance(content: str) -> ContextImportance:
    """
    Keyword heuristic for message importance.

    - urgency keywords or an exclamation -> HIGH
    - a question -> MEDIUM
    - under 20 characters -> LOW
    - otherwise MEDIUM
    """
    text = content.lower()

    if any(word in text for word in HIGH_IMPORTANCE_KEYWORDS) or re.search(r"![^!]", text):
        return ContextImportance.HIGH

    if "?" in text or QUESTION_WORDS.search(text):
        return ContextImportance.MEDIUM

    if len(text) < 20:
        return ContextImportance.LOW

    return ContextImportance.MEDIUM


def _truncate(text: str, length: int = 100) -> str:
    return text[:length] + ("..." if len(text) > length else "")


class BaseSummarizer(Summarizer):
    """
    Heuristics shared by concrete summarizers.

    Subclasses implement generate_summary_text(); hierarchical and meta text
    default to simple concatenations.
    """

    capabilities = SummarizerCapabilities(hierarchical=True, meta=True, importance_analysis=True)

    @abstractmethod
    async def generate_summary_text(self, messages: Sequence[Message], context_id: str) -> str:
        """Produce summary text for a list of messages."""

    async def generate_hierarchical_text(self, summaries: Sequence[ContextSummary], parent_id: str) -> str:
        combined = "\n\n".join(f"Context {s.context_id}: {s.summary}" for s in summaries)
        return f"Hierarchical summary for {len(summaries)} related contexts: {combined[:200]}..."

    async def generate_meta_text(self, summaries: Sequence[HierarchicalSummary]) -> str:
        return f"Meta-summary covering {len(summaries)} hierarchical contexts"

    def create_summary_object(
        self,
        context_id: str,
        summary: str,
        messages: Sequence[Message],
        version: int = 1
    ) -> ContextSummary:
        return ContextSummary(
            context_id=context_id,
            updated_at=utcnow(),
            summary=summary,
            code_blocks=extract_code_blocks(messages),
            message_count=len(messages),
            version=version,
            key_insights=extract_key_insights(messages),
            importance_score=calculate_importance_score(messages)
        )

    async def summarize(self, messages: Sequence[Message], context_id: str) -> SummaryResult:
        if not messages:
            return SummaryResult(success=False, error="No messages to summarize")

        try:
            text = await self.generate_summary_text(messages, context_id)
        except Exception as e:
            logger.warning(f"Summary generation failed for {context_id}: {e}")
            return SummaryResult(success=False, error=str(e))

        if not text or not text.strip():
            return SummaryResult(success=False, error="Summarizer returned empty text")

        return SummaryResult(success=True, summary=self.create_summary_object(context_id, text, messages))

    async def create_hierarchical_summary(
        self,
        summaries: Sequence[ContextSummary],
        parent_id: str
    ) -> HierarchicalSummary:
        # Imported here to avoid a cycle: hierarchy imports summarizer capabilities
        from .hierarchy import build_hierarchical_summary

        text = await self.generate_hierarchical_text(summaries, parent_id)
        return build_hierarchical_summary(parent_id, text, summaries)

    async def create_meta_summary(
        self,
        context_ids: Sequence[str],
        summaries: Sequence[HierarchicalSummary] = ()
    ) -> MetaSummary:
        from .hierarchy import build_meta_summary, generate_meta_id

        text = await self.generate_meta_text(summaries)
        meta = build_meta_summary(generate_meta_id(), text, summaries)
        if not meta.context_ids:
            meta.context_ids = list(context_ids)
        return meta

    async def analyze_message_importance(self, message: Message, context_id: str) -> ContextImportance:
        return heuristic_importance(message.content)


class SimpleTextSummarizer(BaseSummarizer):
    """Creates a basic summary without using an actual AI model."""

    async def generate_summary_text(self, messages: Sequence[Message], context_id: str) -> str:
        recent = " | ".join(
            _truncate(m.content) for m in [m for m in messages if m.role == "user"][-3:]
        )
        return f"Summary of {len(messages)} messages for context {context_id}. Recent topics: {recent}"

    async def generate_hierarchical_text(self, summaries: Sequence[ContextSummary], parent_id: str) -> str:
        # Most important contexts first
        top = sorted(summaries, key=lambda s: s.importance_score, reverse=True)[:3]
        top_text = "\n".join(f"Context {s.context_id}: {s.summary}" for s in top)
        total = sum(s.message_count for s in summaries)
        return (
            f"Hierarchical summary for {len(summaries)} related contexts.\n\n"
            f"Most important topics:\n{top_text}\n\n"
            f"This hierarchy contains a total of {total} messages."
        )

    async def generate_meta_text(self, summaries: Sequence[HierarchicalSummary]) -> str:
        return (
            f"Project-wide meta-summary covering {len(summaries)} hierarchical contexts. "
            "This automatically generated meta-summary provides an overview of all "
            "related conversations in this project."
        )


TextFunc = Callable[..., Union[str, Awaitable[str]]]


async def _call(func: TextFunc, *args) -> str:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class CallableSummarizer(BaseSummarizer):
    """
    Adapts plain callables (sync or async) to the Summarizer interface.

    Usage:
        summarizer = CallableSummarizer(lambda messages: llm.complete(prompt(messages)))
    """

    def __init__(
        self,
        summary_func: TextFunc,
        hierarchical_func: Optional[TextFunc] = None,
        meta_func: Optional[TextFunc] = None
    ):
        self.summary_func = summary_func
        self.hierarchical_func = hierarchical_func
        self.meta_func = meta_func

    async def generate_summary_text(self, messages: Sequence[Message], context_id: str) -> str:
        return await _call(self.summary_func, list(messages))

    async def generate_hierarchical_text(self, summaries: Sequence[ContextSummary], parent_id: str) -> str:
        if self.hierarchical_func:
            try:
                return await _call(self.hierarchical_func, list(summaries))
            except Exception as e:
                logger.error(f"Error generating hierarchical summary: {e}")
        return await super().generate_hierarchical_text(summaries, parent_id)

    async def generate_meta_text(self, summaries: Sequence[HierarchicalSummary]) -> str:
        if self.meta_func:
            try:
                return await _call(self.meta_func, list(summaries))
            except Exception as e:
                logger.error(f"Error generating meta-summary: {e}")
        return await super().generate_meta_text(summaries)
