"""
Relevance excerpt selection for chat context.

Books are far larger than a chat prompt can hold, so the reader sends only
the parts of the text that overlap with the user's latest message:

  1. text fits the budget        → returned unchanged
  2. split into paragraph windows (~1,500 chars each)
  3. score windows by occurrences of the message's keywords
     (stop words and tokens shorter than 3 chars ignored)
  4. keep the opening window, then the best-scoring windows that still fit
  5. reassemble in document order; gaps are marked with an elision line

When the message has no usable keywords, or nothing matches, the opening of
the book is returned with a truncation note. The result never exceeds
max_chars.
"""

from __future__ import annotations

import re
from collections import Counter

DEFAULT_EXCERPT_CHARS = 15_000
DEFAULT_WINDOW_CHARS = 1_500

ELISION = "\n\n[...]\n\n"
TRUNCATION_NOTE = "\n\n[Content truncated: showing the opening of the book only.]"

_WORD = re.compile(r"\w+")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")

_STOP_WORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "any", "can", "had",
    "her", "was", "one", "our", "out", "has", "him", "his", "how", "its", "may",
    "who", "did", "does", "this", "that", "with", "from", "they", "them", "what",
    "when", "where", "which", "while", "will", "would", "could", "should", "there",
    "their", "about", "into", "than", "then", "some", "such", "very", "just",
    "also", "been", "were", "have", "your", "more", "most", "other", "why",
    "tell", "explain", "book", "please", "describe",
})


def extract_terms(query: str) -> set[str]:
    return {
        word
        for word in (w.lower() for w in _WORD.findall(query))
        if len(word) > 2 and word not in _STOP_WORDS
    }


def split_windows(text: str, window_chars: int = DEFAULT_WINDOW_CHARS) -> list[str]:
    """Group paragraphs into windows of at most window_chars characters."""
    windows: list[str] = []
    current: list[str] = []
    current_len = 0

    def flush() -> None:
        nonlocal current, current_len
        if current:
            windows.append("\n\n".join(current))
        current, current_len = [], 0

    for paragraph in _PARAGRAPH_BREAK.split(text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        while len(paragraph) > window_chars:
            flush()
            windows.append(paragraph[:window_chars])
            paragraph = paragraph[window_chars:]
        if current and current_len + len(paragraph) + 2 > window_chars:
            flush()
        current.append(paragraph)
        current_len += len(paragraph) + 2
    flush()
    return windows


def truncate_with_note(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    if max_chars <= len(TRUNCATION_NOTE):
        return text[:max_chars]
    return text[: max_chars - len(TRUNCATION_NOTE)].rstrip() + TRUNCATION_NOTE


def _score(window: str, terms: set[str]) -> int:
    counts = Counter(w.lower() for w in _WORD.findall(window))
    return sum(counts[term] for term in terms)


def select_relevant_excerpt(
    text:         str,
    query:        str | None,
    max_chars:    int = DEFAULT_EXCERPT_CHARS,
    window_chars: int = DEFAULT_WINDOW_CHARS,
) -> str:
    if len(text) <= max_chars:
        return text

    terms = extract_terms(query or "")
    windows = split_windows(text, window_chars)
    if not terms or not windows or len(windows[0]) > max_chars:
        return truncate_with_note(text, max_chars)

    scores = [_score(window, terms) for window in windows]
    if not any(scores):
        return truncate_with_note(text, max_chars)

    selected = {0}
    used = len(windows[0])
    ranked = sorted(range(1, len(windows)), key=lambda i: (-scores[i], i))
    for index in ranked:
        if scores[index] == 0:
            break
        cost = len(windows[index]) + len(ELISION)
        if used + cost > max_chars:
            continue
        selected.add(index)
        used += cost

    parts: list[str] = []
    previous = None
    for index in sorted(selected):
        if previous is not None:
            parts.append("\n\n" if index == previous + 1 else ELISION)
        parts.append(windows[index])
        previous = index

    # ELISION is the largest separator, so `used` is an upper bound
    return "".join(parts)[:max_chars]
