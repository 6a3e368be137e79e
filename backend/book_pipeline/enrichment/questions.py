"""
Question generator — produces the book's AI question/answer set.

Parsing is deliberately forgiving about shape and strict about content:

  raw completion
      │  strip ``` / ```json fences
      ▼
  json.loads ──(invalid JSON / not a list)──▶ GenerationError
      │
      ▼
  validate each element as QuestionAnswer
      │  elements missing a non-empty question or answer are dropped
      ▼
  zero survivors ──▶ GenerationError
      │
      ▼
  QuestionSetResult  (count mismatch vs requested is logged, not fatal)
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from book_pipeline.core.errors import GenerationError
from book_pipeline.enrichment.base import BookMetadata
from book_pipeline.enrichment.prompts import QUESTIONS_SYSTEM_PROMPT, build_questions_prompt
from book_pipeline.llm.gateway import TextGenerator, UsageStats

logger = logging.getLogger(__name__)

DEFAULT_QUESTION_COUNT = 20
DEFAULT_CONTEXT_CHARS = 12_000

_FENCE_OPEN = re.compile(r"^\s*```(?:json)?[ \t]*\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?[ \t]*```\s*$")


class QuestionAnswer(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    question: str = Field(..., min_length=1)
    answer:   str = Field(..., min_length=1)


@dataclass(frozen=True)
class QuestionSetResult:
    pairs:     list[QuestionAnswer]
    requested: int
    returned:  int   # elements in the raw array, before validation
    model:     str
    usage:     UsageStats


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def strip_code_fences(content: str) -> str:
    return _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", content)).strip()


def parse_question_pairs(content: str) -> tuple[list[QuestionAnswer], int]:
    """
    Parse a model completion into validated pairs.

    Returns (pairs, raw_count) where raw_count is the number of elements the
    model returned before malformed ones were dropped.
    """
    cleaned = strip_code_fences(content)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise GenerationError(f"Question output is not valid JSON: {exc}") from exc

    if not isinstance(data, list):
        raise GenerationError(
            f"Question output must be a JSON array, got {type(data).__name__}"
        )

    pairs: list[QuestionAnswer] = []
    for index, item in enumerate(data):
        try:
            pairs.append(QuestionAnswer.model_validate(item))
        except ValidationError:
            logger.debug("Dropping malformed question element | index=%d", index)

    if not pairs:
        raise GenerationError(
            f"Question output contained no valid question/answer pairs ({len(data)} elements)"
        )
    return pairs, len(data)


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class QuestionGenerator:
    def __init__(
        self,
        generator:     TextGenerator,
        count:         int = DEFAULT_QUESTION_COUNT,
        context_chars: int = DEFAULT_CONTEXT_CHARS,
    ) -> None:
        self._generator = generator
        self._count = count
        self._context_chars = context_chars

    async def generate(self, metadata: BookMetadata, text: str) -> QuestionSetResult:
        prompt = build_questions_prompt(
            metadata, text,
            count=self._count,
            context_chars=self._context_chars,
        )
        response = await self._generator.generate(
            prompt,
            system_prompt=QUESTIONS_SYSTEM_PROMPT,
            temperature=0.7,
            max_tokens=4000,
        )

        pairs, returned = parse_question_pairs(response.content)
        if returned != self._count or len(pairs) != returned:
            logger.warning(
                "Question count mismatch | title=%r requested=%d returned=%d valid=%d",
                metadata.title, self._count, returned, len(pairs),
            )

        logger.info("Questions generated | title=%r valid=%d", metadata.title, len(pairs))
        return QuestionSetResult(
            pairs=pairs,
            requested=self._count,
            returned=returned,
            model=response.model_used,
            usage=response.usage,
        )
