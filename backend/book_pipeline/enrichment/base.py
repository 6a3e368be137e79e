"""Shared input type for the enrichment generators."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class BookMetadata:
    title:      str
    authors:    list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)

    @classmethod
    def from_book(cls, book) -> "BookMetadata":
        return cls(
            title=book.title,
            authors=list(book.authors or []),
            categories=list(book.categories or []),
        )

    @property
    def authors_display(self) -> str:
        return ", ".join(self.authors) or "Unknown"

    @property
    def categories_display(self) -> str:
        return ", ".join(self.categories) or "Uncategorized"
