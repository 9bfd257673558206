"""
Ingestion pipeline: chunks in, vector rows out.

Embeds and writes in batches. Progress for one source is reported inside the
slice of the overall job that the caller hands over as a ``ProgressScope``.
"""
from dataclasses import dataclass
from typing import Optional, Sequence

from kbengine.exceptions import SchemaMismatchError
from kbengine.ingestion.embedder import EmbeddingProviderBinding
from kbengine.logging_config import get_logger
from kbengine.observability import track, Phase
from kbengine.paths import normalize_path
from kbengine.progress import ProgressScope
from kbengine.schemas.chunks import DocumentChunk
from kbengine.schemas.progress import TaskType
from kbengine.store.vector_table import VectorTableManager

log = get_logger(__name__)


@dataclass
class IngestOutcome:
    source: str
    chunk_count: int = 0
    rebuild_needed: bool = False


class IngestionPipeline:
    def __init__(self, embeddings: EmbeddingProviderBinding, table: VectorTableManager, batch_size: int = 64):
        self._embeddings = embeddings
        self._table = table
        self.batch_size = max(1, batch_size)

    @track(name="ingest_chunks", phase=Phase.INGESTION)
    async def ingest(
        self,
        source_key: str,
        chunks: Sequence[DocumentChunk],
        progress: Optional[ProgressScope] = None,
    ) -> IngestOutcome:
        """
        Embed and write ``chunks`` for one source.

        An empty chunk list is a no-op. A schema mismatch on write is returned
        as ``rebuild_needed`` instead of raised; every other failure propagates.
        """
        key = normalize_path(source_key)
        if not chunks:
            log.info("ingest_skipped_empty", source=key)
            return IngestOutcome(source=key)

        # Rows are always written under the canonical key
        chunks = [c if c.source == key else c.model_copy(update={"source": key}) for c in chunks]
        total = len(chunks)
        written = 0

        for start in range(0, total, self.batch_size):
            batch = chunks[start:start + self.batch_size]
            vectors = await self._embeddings.embed_documents([c.content for c in batch])
            try:
                written += await self._table.upsert(batch, vectors)
            except SchemaMismatchError as e:
                log.warning("ingest_schema_mismatch", source=key, written=written, error=str(e))
                return IngestOutcome(source=key, chunk_count=written, rebuild_needed=True)

            if progress:
                await progress.report(
                    written / total,
                    f"Embedded {written}/{total} chunks",
                    task_type=TaskType.EMBEDDING_GENERATION,
                    current=written,
                    total=total,
                )

        log.info("source_rows_written", source=key, chunks=written)
        return IngestOutcome(source=key, chunk_count=written)
