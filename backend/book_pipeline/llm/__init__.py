"""
LLM Package

Provider access for the enrichment stages:
  - gateway.TextGenerator    prompt → text (ChatOpenAI by default)
  - gateway.get_embedding_model   OpenAIEmbeddings for chunk vectors
"""

from book_pipeline.llm.gateway import (
    GatewayResponse,
    TextGenerator,
    UsageStats,
    generation_enabled,
    get_embedding_model,
    get_llm,
)

__all__ = [
    "GatewayResponse",
    "TextGenerator",
    "UsageStats",
    "generation_enabled",
    "get_embedding_model",
    "get_llm",
]
