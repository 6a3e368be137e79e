"""
Prompt templates for the enrichment stages.

Wording is not part of any contract; only the placeholders matter. Each
builder truncates the book text to the stage's context budget before
rendering, so the rendered prompt size is bounded regardless of book length.
"""

from __future__ import annotations

from typing import Final

from book_pipeline.enrichment.base import BookMetadata

# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT: Final[str] = (
    "You are a literary assistant who writes accurate, engaging overviews of books "
    "for a digital library. Use only the supplied excerpt and metadata."
)

_SUMMARY_TEMPLATE: Final[str] = """\
Write an overview of the book below in about {target_words} words.

Title: {title}
Authors: {authors}
Categories: {categories}

Cover what the book is about, its main themes, and who would enjoy it.
Do not invent plot details that are not supported by the excerpt.
Respond with the overview text only, no headings.

Excerpt:
{excerpt}
"""


def build_summary_prompt(
    metadata:     BookMetadata,
    text:         str,
    target_words: int,
    context_chars: int,
) -> str:
    return _SUMMARY_TEMPLATE.format(
        target_words=target_words,
        title=metadata.title,
        authors=metadata.authors_display,
        categories=metadata.categories_display,
        excerpt=text[:context_chars],
    )


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------

QUESTIONS_SYSTEM_PROMPT: Final[str] = (
    "You create study questions for books. You always answer with raw JSON and "
    "nothing else."
)

_QUESTIONS_TEMPLATE: Final[str] = """\
Create exactly {count} question-and-answer pairs that help a reader understand
the book below. Mix factual, thematic and analytical questions. Every answer
must be supported by the excerpt.

Title: {title}
Authors: {authors}

Return a JSON array of objects with the keys "question" and "answer", for
example:
[{{"question": "...", "answer": "..."}}]

Excerpt:
{excerpt}
"""


def build_questions_prompt(
    metadata:      BookMetadata,
    text:          str,
    count:         int,
    context_chars: int,
) -> str:
    return _QUESTIONS_TEMPLATE.format(
        count=count,
        title=metadata.title,
        authors=metadata.authors_display,
        excerpt=text[:context_chars],
    )
