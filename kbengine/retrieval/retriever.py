"""
Retrieval engine: query in, ranked chunks out.

preprocess -> fetch breadth -> (cross-language) variants -> vector search per
variant -> merge/dedupe -> source filter -> score -> top k.

If the native search path fails, an in-memory similarity scan is used and
results are ranked by position. The caller is not told which path ran.
"""
from typing import AbstractSet, List, Optional, Sequence

from kbengine.config import SearchSettings
from kbengine.exceptions import EmbeddingError, SchemaMismatchError, SimilaritySearchError
from kbengine.logging_config import get_logger
from kbengine.observability import track, Phase
from kbengine.retrieval.language import detect_language, extract_core_keywords, generate_query_expansions
from kbengine.retrieval.query_embedder import QueryEmbedder
from kbengine.retrieval.scoring import (
    ScoredHit,
    calculate_fetch_k,
    dedupe_by_text,
    drop_unknown_sources,
    filter_by_sources,
    rank_by_distance,
    rank_by_position,
)
from kbengine.retrieval.translator import QueryTranslator
from kbengine.schemas.chunks import VectorHit
from kbengine.store.vector_table import VectorTableManager, source_predicate

log = get_logger(__name__)


class RetrievalEngine:
    def __init__(
        self,
        table: VectorTableManager,
        query_embedder: QueryEmbedder,
        translator: QueryTranslator,
        settings: SearchSettings,
    ):
        self._table = table
        self._query_embedder = query_embedder
        self._translator = translator
        self.settings = settings

    async def query_variants(self, query: str) -> List[str]:
        """
        The original query, plus keyword and translated variants when the
        query's language differs from the retrieval language.
        """
        target = self.settings.retrieval_language
        language = detect_language(query)
        if language in ("unknown", target):
            return [query]

        keywords = extract_core_keywords(query)
        variants = generate_query_expansions(query, keywords)
        translated = await self._translator.translate(query, target)
        if translated and translated not in variants:
            # Leave room for the translation within the variant budget
            variants = variants[: max(1, self.settings.max_variants - 1)] + [translated]
        else:
            variants = variants[: self.settings.max_variants]

        log.info("query_variants_generated", language=language, target=target, variants=len(variants))
        return variants

    @track(name="retrieve", phase=Phase.RETRIEVAL)
    async def search(
        self,
        query: str,
        k: int,
        sources: Optional[Sequence[str]] = None,
        known: Optional[AbstractSet[str]] = None,
    ) -> List[ScoredHit]:
        """
        Args:
            query: preprocessed query text
            k: number of results wanted
            sources: normalized source keys to restrict to, or None for a global search
            known: normalized keys of catalogued sources; rows of any other source are
                dropped before ranking so they never take a place in the top k

        Raises:
            SchemaMismatchError: the table cannot be searched with the active binding
            ProviderUnavailableError: the query could not be embedded
            SimilaritySearchError: both search paths failed
        """
        if not self._table.is_ready:
            if self._table.needs_rebuild:
                raise SchemaMismatchError("Vector table is incompatible with the active embedding model")
            log.info("search_empty_knowledge_base")
            return []

        keys = list(sources) if sources else None
        total_rows = await self._table.row_count()
        fetch_k = calculate_fetch_k(k, total_rows, scoped=keys is not None, settings=self.settings)

        try:
            variants = await self.query_variants(query)
            hits = await self._native_search(variants, fetch_k, keys)
            ranked = rank_by_distance(self._catalogued(hits, known), k)
            path = "native"
        except (SchemaMismatchError, EmbeddingError):
            raise
        except Exception as e:
            log.warning("native_search_failed", error=str(e), error_type=type(e).__name__)
            ranked = await self._fallback_search(query, fetch_k, keys, k, known)
            path = "fallback"

        log.info("retrieval_completed", k=k, fetch_k=fetch_k, scoped=keys is not None,
                 results_count=len(ranked), path=path)
        return ranked

    @staticmethod
    def _catalogued(hits: List[VectorHit], known: Optional[AbstractSet[str]]) -> List[VectorHit]:
        kept = drop_unknown_sources(hits, known)
        if len(kept) < len(hits):
            log.warning("search_orphan_rows_skipped", count=len(hits) - len(kept))
        return kept

    async def _embed_checked(self, text: str) -> List[float]:
        vector = await self._query_embedder.embed(text)
        dimension = self._table.dimension
        if dimension is not None and len(vector) != dimension:
            raise SchemaMismatchError(
                f"Query vector has {len(vector)} dimensions, table holds {dimension}",
                expected=dimension, actual=len(vector),
            )
        return vector

    async def _native_search(self, variants: List[str], fetch_k: int, keys: Optional[List[str]]) -> List[VectorHit]:
        merged: List[VectorHit] = []
        for variant in variants:
            vector = await self._embed_checked(variant)
            merged.extend(await self._search_one(vector, fetch_k, keys))

        if len(variants) > 1:
            merged = dedupe_by_text(merged)[:fetch_k]
        return filter_by_sources(merged, keys, self.settings.fuzzy_source_limit)

    async def _search_one(self, vector: List[float], fetch_k: int, keys: Optional[List[str]]) -> List[VectorHit]:
        if not keys:
            return await self._table.search(vector, fetch_k)
        try:
            return await self._table.search(vector, fetch_k, where=source_predicate(keys))
        except Exception as e:
            # Predicate rejected; the in-memory filter still applies
            log.warning("source_predicate_pushdown_failed", error=str(e), sources=len(keys))
            return await self._table.search(vector, fetch_k)

    async def _fallback_search(
        self,
        query: str,
        fetch_k: int,
        keys: Optional[List[str]],
        k: int,
        known: Optional[AbstractSet[str]] = None,
    ) -> List[ScoredHit]:
        vector = await self._embed_checked(query)
        try:
            hits = await self._table.similarity_search(vector, fetch_k)
        except Exception as e:
            log.error("fallback_search_failed", error=str(e))
            raise SimilaritySearchError(f"Vector search failed: {e}") from e
        filtered = filter_by_sources(hits, keys, self.settings.fuzzy_source_limit)
        return rank_by_position(self._catalogued(filtered, known), k)
