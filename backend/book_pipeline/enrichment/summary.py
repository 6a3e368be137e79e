"""
Summary generator — produces the book's AI overview.

Only the first `context_chars` characters of the text are sent to the model
(8,000 by default). An empty or whitespace-only completion is a
GenerationError so the coordinator records the stage as FAILED rather than
storing a blank overview.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from book_pipeline.core.errors import GenerationError
from book_pipeline.enrichment.base import BookMetadata
from book_pipeline.enrichment.prompts import SUMMARY_SYSTEM_PROMPT, build_summary_prompt
from book_pipeline.llm.gateway import TextGenerator, UsageStats

logger = logging.getLogger(__name__)

DEFAULT_TARGET_WORDS = 200
DEFAULT_CONTEXT_CHARS = 8_000


@dataclass(frozen=True)
class SummaryResult:
    summary: str
    model:   str
    usage:   UsageStats


class SummaryGenerator:
    def __init__(
        self,
        generator:     TextGenerator,
        target_words:  int = DEFAULT_TARGET_WORDS,
        context_chars: int = DEFAULT_CONTEXT_CHARS,
    ) -> None:
        self._generator = generator
        self._target_words = target_words
        self._context_chars = context_chars

    async def generate(self, metadata: BookMetadata, text: str) -> SummaryResult:
        prompt = build_summary_prompt(
            metadata, text,
            target_words=self._target_words,
            context_chars=self._context_chars,
        )
        response = await self._generator.generate(
            prompt,
            system_prompt=SUMMARY_SYSTEM_PROMPT,
            temperature=0.5,
            max_tokens=1000,
        )

        summary = response.content.strip()
        if not summary:
            raise GenerationError(f"Summary generation returned no text for '{metadata.title}'")

        logger.info(
            "Summary generated | title=%r chars=%d words=%d",
            metadata.title, len(summary), len(summary.split()),
        )
        return SummaryResult(summary=summary, model=response.model_used, usage=response.usage)
