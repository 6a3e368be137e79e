"""
Embedding generator — chunk vectors for a book's text.

Chunking follows the same splitter settings the platform has always used
(1000 chars, 200 overlap, paragraph → sentence → word separators). Vectors
are requested in batches of EMBEDDING_BATCH_SIZE through the LangChain
Embeddings interface, so any provider (or a fake in tests) can be plugged in.
The interface reports no token usage, so usage is estimated from chunk length.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from langchain_core.embeddings import Embeddings
from langchain_text_splitters import RecursiveCharacterTextSplitter

from book_pipeline.core.errors import GenerationError
from book_pipeline.enrichment.base import BookMetadata
from book_pipeline.llm.gateway import UsageStats, estimate_tokens

logger = logging.getLogger(__name__)

EMBEDDING_BATCH_SIZE = 100    # texts per provider call
CHUNK_SIZE = 1000
CHUNK_OVERLAP = 200


@dataclass(frozen=True)
class EmbeddedChunk:
    index:  int
    text:   str
    vector: list[float]


@dataclass(frozen=True)
class EmbeddingSetResult:
    chunks:     list[EmbeddedChunk]
    model:      str
    usage:      UsageStats
    elapsed_ms: float


def split_into_chunks(text: str) -> list[str]:
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=CHUNK_SIZE,
        chunk_overlap=CHUNK_OVERLAP,
        separators=["\n\n", "\n", ". ", " ", ""],
    )
    return [chunk for chunk in splitter.split_text(text) if chunk.strip()]


class EmbeddingGenerator:
    def __init__(self, embedder: Embeddings, model_name: str) -> None:
        self._embedder = embedder
        self._model_name = model_name

    async def generate(self, metadata: BookMetadata, text: str) -> EmbeddingSetResult:
        t0 = time.perf_counter()
        chunks = split_into_chunks(text)
        if not chunks:
            raise GenerationError(f"No embeddable text for '{metadata.title}'")

        vectors: list[list[float]] = []
        for start in range(0, len(chunks), EMBEDDING_BATCH_SIZE):
            batch = chunks[start:start + EMBEDDING_BATCH_SIZE]
            batch_vectors = await self._embedder.aembed_documents(batch)
            if len(batch_vectors) != len(batch):
                raise GenerationError(
                    f"Embedding provider returned {len(batch_vectors)} vectors "
                    f"for {len(batch)} chunks"
                )
            vectors.extend(batch_vectors)

        elapsed_ms = (time.perf_counter() - t0) * 1000
        prompt_tokens = sum(estimate_tokens(chunk) for chunk in chunks)
        logger.info(
            "Embeddings generated | title=%r chunks=%d model=%s tokens=%d elapsed_ms=%.1f",
            metadata.title, len(chunks), self._model_name, prompt_tokens, elapsed_ms,
        )
        return EmbeddingSetResult(
            chunks=[
                EmbeddedChunk(index=i, text=chunk, vector=list(vector))
                for i, (chunk, vector) in enumerate(zip(chunks, vectors))
            ],
            model=self._model_name,
            usage=UsageStats(
                prompt_tokens=prompt_tokens,
                completion_tokens=0,
                total_tokens=prompt_tokens,
                estimated=True,
            ),
            elapsed_ms=elapsed_ms,
        )
