"""
Text-Generation Gateway — single call site for all LLM requests

  ┌──────────────────────────────────────────────┐
  │  TextGenerator.generate(prompt)              │
  │       │                                      │
  │       ▼                                      │
  │  chat model (injected, or ChatOpenAI built   │
  │  from settings for this temperature/budget)  │
  │       │                                      │
  │       ▼                                      │
  │  GatewayResponse(content, model, usage)      │
  └──────────────────────────────────────────────┘

The gateway never retries: in-run retries belong to the pipeline's retry
controller, so ChatOpenAI is built with max_retries=0 to avoid stacking two
retry loops.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI, OpenAIEmbeddings

from book_pipeline.core.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Token usage estimation (fallback when the provider reports nothing)
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    """Rough token count: 4 chars ≈ 1 token (OpenAI heuristic)."""
    return max(1, len(text) // 4)


# ---------------------------------------------------------------------------
# Response dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UsageStats:
    prompt_tokens:     int
    completion_tokens: int
    total_tokens:      int
    estimated:         bool = False


@dataclass(frozen=True)
class GatewayResponse:
    """The result of a single text-generation call."""
    content:    str
    model_used: str
    usage:      UsageStats
    latency_ms: float


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------

def get_llm(temperature: float = 0.5, max_tokens: int = 1000) -> ChatOpenAI:
    """Return the configured chat model for one generation budget."""
    return ChatOpenAI(
        model=settings.llm_model,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url or None,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=settings.generation_timeout_seconds,
        max_retries=0,
    )


def get_embedding_model() -> OpenAIEmbeddings:
    """
    Return the configured OpenAI embedding model.

    text-embedding-3-small → 1536 dims  (default, cost-efficient)
    text-embedding-3-large → 3072 dims  (higher accuracy, 2× cost)
    """
    return OpenAIEmbeddings(
        model=settings.embedding_model,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url or None,
        dimensions=settings.embedding_dimensions,
        max_retries=0,
    )


def generation_enabled() -> bool:
    return bool(settings.openai_api_key)


# ---------------------------------------------------------------------------
# TextGenerator
# ---------------------------------------------------------------------------

class TextGenerator:
    """
    Prompt in, text out.

    chat_model is injectable (any LangChain BaseChatModel); when omitted a
    ChatOpenAI instance is built per call so each caller can pick its own
    temperature and token budget.
    """

    def __init__(self, chat_model: BaseChatModel | None = None) -> None:
        self._chat_model = chat_model

    async def generate(
        self,
        prompt:        str,
        system_prompt: str | None = None,
        temperature:   float = 0.5,
        max_tokens:    int = 1000,
    ) -> GatewayResponse:
        model = self._chat_model or get_llm(temperature=temperature, max_tokens=max_tokens)
        messages = self.build_messages(prompt, system_prompt)

        t0 = time.perf_counter()
        message = await model.ainvoke(messages)
        latency = (time.perf_counter() - t0) * 1000

        content = message.content if isinstance(message.content, str) else ""
        usage = _usage_from(message, prompt, content)
        model_used = _model_name(model)

        logger.info(
            "TextGenerator | model=%s tokens_in=%d tokens_out=%d latency_ms=%.1f",
            model_used, usage.prompt_tokens, usage.completion_tokens, latency,
        )
        return GatewayResponse(content=content, model_used=model_used, usage=usage, latency_ms=latency)

    @staticmethod
    def build_messages(prompt: str, system_prompt: str | None = None) -> list[BaseMessage]:
        messages: list[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))
        return messages


def _usage_from(message, prompt: str, content: str) -> UsageStats:
    metadata = getattr(message, "usage_metadata", None)
    if metadata:
        return UsageStats(
            prompt_tokens=metadata.get("input_tokens", 0),
            completion_tokens=metadata.get("output_tokens", 0),
            total_tokens=metadata.get("total_tokens", 0),
        )
    prompt_tokens = estimate_tokens(prompt)
    completion_tokens = estimate_tokens(content) if content else 0
    return UsageStats(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
        estimated=True,
    )


def _model_name(model: BaseChatModel) -> str:
    return getattr(model, "model_name", None) or getattr(model, "model", None) or model._llm_type
