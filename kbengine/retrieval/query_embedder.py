"""Query embedding with an in-memory cache keyed by binding fingerprint."""
import time
from typing import List

from kbengine.cache import TTLCache
from kbengine.exceptions import EmbeddingError
from kbengine.ingestion.embedder import EmbeddingProviderBinding
from kbengine.logging_config import get_logger
from kbengine.observability import track
from kbengine.state import EmbeddingBinding

log = get_logger(__name__)


class QueryEmbedder:
    """
    Embeds queries with the same binding used at ingestion time.
    The cache is cleared whenever the binding changes.
    """

    def __init__(self, embeddings: EmbeddingProviderBinding, cache: TTLCache):
        self._embeddings = embeddings
        self.cache = cache
        embeddings.add_invalidation_listener(self._on_rebind)

    def _on_rebind(self, binding: EmbeddingBinding) -> None:
        self.cache.clear()
        log.info("query_embedding_cache_cleared", binding=binding.fingerprint)

    @track(name="embed_query")
    async def embed(self, query: str) -> List[float]:
        """
        Raises:
            EmbeddingError: empty query
            ProviderUnavailableError: provider failure
        """
        if not query:
            raise EmbeddingError("Cannot embed empty query")

        key = (self._embeddings.binding.fingerprint, query)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        start_time = time.perf_counter()
        embedding = await self._embeddings.embed_query(query)
        latency_ms = (time.perf_counter() - start_time) * 1000
        log.debug("query_embedded", dimension=len(embedding), latency_ms=round(latency_ms, 2))

        self.cache.set(key, embedding)
        return embedding
