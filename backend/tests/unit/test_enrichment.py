"""
Unit Tests — Enrichment Generators
══════════════════════════════════
Tests for:
  • parse_question_pairs — fences, malformed-element dropping, hard failures
  • QuestionGenerator    — count mismatch is logged, not fatal
  • SummaryGenerator     — trimmed overview, empty completion → GenerationError
  • EmbeddingGenerator   — chunking + vectors via DeterministicFakeEmbedding
  • prompts              — metadata and truncated text reach the model

LLM calls use LangChain's FakeListChatModel — no API key, no network.
"""

from __future__ import annotations

import logging

import pytest

from book_pipeline.core.errors import GenerationError
from book_pipeline.enrichment import (
    BookMetadata,
    QuestionGenerator,
    SummaryGenerator,
    parse_question_pairs,
)
from book_pipeline.enrichment.embeddings import CHUNK_SIZE, split_into_chunks
from book_pipeline.enrichment.prompts import build_questions_prompt, build_summary_prompt
from book_pipeline.enrichment.questions import strip_code_fences
from book_pipeline.llm import TextGenerator

METADATA = BookMetadata(title="The Lighthouse Keeper", authors=["Ada Marsh"], categories=["Fiction"])


@pytest.mark.unit
class TestParseQuestionPairs:

    def test_all_valid(self, make_question_payload):
        pairs, returned = parse_question_pairs(make_question_payload(20))

        assert returned == 20
        assert len(pairs) == 20
        assert pairs[0].question == "Question 1?"
        assert pairs[0].answer == "Answer 1."

    def test_malformed_elements_are_dropped(self, make_question_payload):
        pairs, returned = parse_question_pairs(make_question_payload(20, malformed=3))

        assert returned == 20
        assert len(pairs) == 17

    def test_code_fences_are_stripped(self, make_question_payload):
        fenced = "```json\n" + make_question_payload(2) + "\n```"
        pairs, _ = parse_question_pairs(fenced)
        assert len(pairs) == 2

    def test_bare_fence_without_language(self):
        assert strip_code_fences('```\n[1, 2]\n```') == "[1, 2]"

    def test_empty_array_is_an_error(self):
        with pytest.raises(GenerationError, match="no valid question"):
            parse_question_pairs("[]")

    def test_only_malformed_elements_is_an_error(self, make_question_payload):
        with pytest.raises(GenerationError):
            parse_question_pairs(make_question_payload(3, malformed=3))

    def test_invalid_json_is_an_error(self):
        with pytest.raises(GenerationError, match="not valid JSON"):
            parse_question_pairs("Here are your questions: 1. Who?")

    def test_object_instead_of_array_is_an_error(self):
        with pytest.raises(GenerationError, match="JSON array"):
            parse_question_pairs('{"question": "Who?", "answer": "Ada."}')

    def test_whitespace_is_trimmed(self):
        pairs, _ = parse_question_pairs('[{"question": "  Who?  ", "answer": " Ada. "}]')
        assert pairs[0].question == "Who?"
        assert pairs[0].answer == "Ada."


@pytest.mark.unit
class TestQuestionGenerator:

    async def test_returns_validated_pairs(self, question_generator, book_text):
        result = await question_generator.generate(METADATA, book_text)

        assert len(result.pairs) == 20
        assert result.requested == 20
        assert result.returned == 20

    async def test_count_mismatch_is_logged(self, fake_chat_model, make_question_payload, book_text, caplog):
        generator = QuestionGenerator(
            TextGenerator(fake_chat_model(make_question_payload(20, malformed=3))), count=20,
        )

        with caplog.at_level(logging.WARNING, logger="book_pipeline.enrichment.questions"):
            result = await generator.generate(METADATA, book_text)

        assert len(result.pairs) == 17
        assert any("Question count mismatch" in r.getMessage() for r in caplog.records)

    async def test_unusable_completion_raises(self, fake_chat_model, book_text):
        generator = QuestionGenerator(TextGenerator(fake_chat_model("I cannot help with that.")))

        with pytest.raises(GenerationError):
            await generator.generate(METADATA, book_text)


@pytest.mark.unit
class TestSummaryGenerator:

    async def test_returns_trimmed_summary(self, fake_chat_model, book_text):
        generator = SummaryGenerator(TextGenerator(fake_chat_model("  A keeper tends the light.  \n")))
        result = await generator.generate(METADATA, book_text)

        assert result.summary == "A keeper tends the light."
        assert result.usage.total_tokens > 0

    async def test_blank_completion_raises(self, fake_chat_model, book_text):
        generator = SummaryGenerator(TextGenerator(fake_chat_model("   ")))

        with pytest.raises(GenerationError, match="no text"):
            await generator.generate(METADATA, book_text)


@pytest.mark.unit
class TestEmbeddingGenerator:

    async def test_one_vector_per_chunk(self, embedding_generator, book_text):
        text = "\n\n".join([book_text] * 6)
        result = await embedding_generator.generate(METADATA, text)

        assert len(result.chunks) == len(split_into_chunks(text))
        assert len(result.chunks) > 1
        assert [c.index for c in result.chunks] == list(range(len(result.chunks)))
        assert all(len(c.vector) == 8 for c in result.chunks)
        assert result.model == "fake-embedding"

    async def test_vectors_are_deterministic(self, embedding_generator, book_text):
        first = await embedding_generator.generate(METADATA, book_text)
        second = await embedding_generator.generate(METADATA, book_text)
        assert first.chunks[0].vector == second.chunks[0].vector

    async def test_reports_estimated_usage(self, embedding_generator, book_text):
        result = await embedding_generator.generate(METADATA, book_text)

        assert result.usage.estimated is True
        assert result.usage.completion_tokens == 0
        assert result.usage.prompt_tokens == sum(max(1, len(c.text) // 4) for c in result.chunks)
        assert result.usage.total_tokens == result.usage.prompt_tokens

    async def test_blank_text_raises(self, embedding_generator):
        with pytest.raises(GenerationError):
            await embedding_generator.generate(METADATA, "   \n\n  ")

    def test_chunks_respect_size(self, book_text):
        chunks = split_into_chunks("\n\n".join([book_text] * 20))
        assert all(len(chunk) <= CHUNK_SIZE for chunk in chunks)


@pytest.mark.unit
class TestPrompts:

    def test_summary_prompt_carries_metadata_and_truncates(self):
        prompt = build_summary_prompt(METADATA, "x" * 10_000, target_words=200, context_chars=100)

        assert "The Lighthouse Keeper" in prompt
        assert "Ada Marsh" in prompt
        assert "x" * 100 in prompt
        assert "x" * 101 not in prompt

    def test_questions_prompt_asks_for_count(self):
        prompt = build_questions_prompt(METADATA, "Some text.", count=20, context_chars=1000)

        assert "20" in prompt
        assert "Some text." in prompt
