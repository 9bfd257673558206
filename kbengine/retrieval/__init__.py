"""Retrieval module: query preprocessing, cross-language variants, vector search and scoring."""

from .query_preprocessor import preprocess_query, preprocess_sources
from .query_embedder import QueryEmbedder
from .translator import QueryTranslator
from .retriever import RetrievalEngine
from .scoring import calculate_fetch_k, distance_to_score

__all__ = [
    "preprocess_query",
    "preprocess_sources",
    "QueryEmbedder",
    "QueryTranslator",
    "RetrievalEngine",
    "calculate_fetch_k",
    "distance_to_score",
]
