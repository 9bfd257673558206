"""
KnowledgeBase: the engine facade used by the REST API, the MCP server and the scripts.

One instance owns the ``EngineState`` (table handle, row-count cache, active
embedding binding) and every component that reads or mutates it. Hosts create
it once, ``await open()``, and ``await close()`` on shutdown.

    kb = KnowledgeBase.from_settings()
    await kb.open()
    result = await kb.ingest_source("docs/guide.pdf")
    hits = await kb.search("how do I configure the proxy?", k=4)
"""
import asyncio
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Set, Tuple, TypeVar

from langchain_core.language_models import BaseChatModel

from kbengine.cache import TTLCache
from kbengine.catalog.records import build_record, mark_stale
from kbengine.catalog.service import Catalog
from kbengine.catalog.store import CatalogStore
from kbengine.config import EmbeddingProvider, Settings, get_settings
from kbengine.db.db_manager import DatabaseManager
from kbengine.exceptions import (
    CollectionNotFoundError,
    EmptyContentError,
    ErrorKind,
    KnowledgeBaseError,
    SchemaMismatchError,
    SourceNotFoundError,
    StorageException,
)
from kbengine.ingestion.document_loader import DocumentLoader
from kbengine.ingestion.embedder import EmbedderFactory, EmbeddingProviderBinding, build_embedder
from kbengine.ingestion.file_discovery import discover_files
from kbengine.ingestion.pipeline import IngestionPipeline
from kbengine.llm_factory import get_llm
from kbengine.locking import GLOBAL_LOCK, OperationLock
from kbengine.logging_config import get_logger
from kbengine.observability import track, Phase
from kbengine.paths import display_name, normalize_path
from kbengine.progress import ProgressChannel, ProgressScope, ProgressStream
from kbengine.rebuild import MODEL_CHECK_END, PARSE_END, RebuildOrchestrator
from kbengine.retrieval.query_embedder import QueryEmbedder
from kbengine.retrieval.query_preprocessor import preprocess_query, preprocess_sources
from kbengine.retrieval.retriever import RetrievalEngine
from kbengine.retrieval.translator import QueryTranslator
from kbengine.schemas.catalog import KnowledgeBaseSnapshot, SourceRecord
from kbengine.schemas.files import FileInfo
from kbengine.schemas.ingest import (
    BatchIngestResult,
    ErrorInfo,
    IngestResult,
    LoadedSource,
    RebuildMode,
    RebuildReport,
    SourceError,
)
from kbengine.schemas.progress import ProgressStatus, TaskType
from kbengine.schemas.retrieval import SearchResult
from kbengine.schemas.stats import EngineStats
from kbengine.state import EmbeddingBinding, EngineState
from kbengine.store.vector_table import VectorTableManager

log = get_logger(__name__)

T = TypeVar("T")


def _failure(key: str, error: KnowledgeBaseError) -> IngestResult:
    return IngestResult(success=False, source=key, error=ErrorInfo(kind=error.kind.value, message=str(error)))


def _auto_tags(file_info: FileInfo) -> List[str]:
    """Parent directory name and upper-cased extension, e.g. ``["manuals", "PDF"]``."""
    tags = [file_info.file_path.parent.name, file_info.file_extension.lstrip(".").upper()]
    return [tag for tag in tags if tag]


class KnowledgeBase:
    def __init__(
        self,
        settings: Settings,
        db: Optional[DatabaseManager] = None,
        loader: Optional[DocumentLoader] = None,
        embedder_factory: EmbedderFactory = build_embedder,
        llm_factory: Callable[[], BaseChatModel] = get_llm,
    ):
        self.settings = settings
        self.state = EngineState(binding=EmbeddingBinding.from_settings(settings.embedding))
        self.db = db or DatabaseManager(settings.storage.catalog_url)
        self.catalog = Catalog(CatalogStore(self.db), max_versions=settings.ingestion.max_versions)
        self.lock = OperationLock(
            default_max_wait=settings.lock.max_wait_seconds,
            stale_after=settings.lock.stale_after_seconds,
        )
        self.embeddings = EmbeddingProviderBinding(
            self.state,
            api_key=settings.embedding.api_key,
            timeout=settings.timeout.embedding_seconds,
            max_retries=settings.embedding.max_retries,
            factory=embedder_factory,
        )
        self.table = VectorTableManager(
            settings.storage.vector_db_path,
            settings.storage.table_name,
            self.state,
            row_count_ttl=settings.cache.row_count_ttl_seconds,
        )
        self.loader = loader or DocumentLoader.from_settings(settings)
        self.pipeline = IngestionPipeline(self.embeddings, self.table, settings.ingestion.embedding_batch_size)
        self.query_embedder = QueryEmbedder(
            self.embeddings,
            TTLCache(settings.cache.query_embedding_size, settings.cache.query_embedding_ttl_seconds),
        )
        self.translator = QueryTranslator(
            TTLCache(settings.cache.translation_size, settings.cache.translation_ttl_seconds, refresh_on_read=False),
            timeout=settings.timeout.translation_seconds,
            enabled=settings.llm.enabled,
            llm_factory=llm_factory,
        )
        self.retrieval = RetrievalEngine(self.table, self.query_embedder, self.translator, settings.search)
        self.rebuilder = RebuildOrchestrator(
            self.catalog,
            self.loader,
            self.pipeline,
            self.table,
            self.embeddings,
            self.lock,
            max_concurrency=settings.ingestion.max_concurrent_sources,
            preview_chars=settings.ingestion.preview_chars,
            drop_on_transient_failure=settings.rebuild.drop_on_transient_failure,
        )
        self.last_rebuild: Optional[RebuildReport] = None
        self._recorded_binding: Optional[str] = None
        self._heal_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "KnowledgeBase":
        return cls(settings or get_settings(), **kwargs)

    # -- lifecycle ---------------------------------------------------------

    async def open(self) -> "KnowledgeBase":
        """
        Create the catalog tables and bind to the vector table. A table written
        with a different embedding binding is left alone and flagged for rebuild.
        """
        await self.db.init_db()
        stored = await self.catalog.stored_binding()
        if stored is not None:
            self._recorded_binding = stored.fingerprint
            if stored.fingerprint != self.state.binding.fingerprint and await self.table.table_exists():
                log.warning("embedding_binding_changed_since_last_write",
                            stored=stored.fingerprint, active=self.state.binding.fingerprint)
                self.state.detach_table(needs_rebuild=True)
        ready = await self.table.open()
        if ready and stored is None:
            await self._record_binding()
        log.info("knowledge_base_opened", table_ready=ready, needs_rebuild=self.state.needs_rebuild,
                 binding=self.state.binding.fingerprint)
        return self

    async def close(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.db.dispose()
        log.info("knowledge_base_closed")

    async def __aenter__(self) -> "KnowledgeBase":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def stream(self, operation: Callable[[ProgressChannel], Awaitable[T]]) -> ProgressStream[T]:
        """Run ``operation(channel)`` in the background and iterate its progress messages."""
        return ProgressStream(operation)

    # -- ingestion ---------------------------------------------------------

    @track(name="ingest_source", phase=Phase.INGESTION)
    async def ingest_source(
        self,
        identifier: str,
        tags: Sequence[str] = (),
        collection_id: Optional[str] = None,
        progress: Optional[ProgressChannel] = None,
    ) -> IngestResult:
        """
        Load, chunk, embed and index one file or URL, then upsert its record.

        Failures come back as ``IngestResult(success=False, error=...)``.
        Re-ingesting a source replaces its rows and record.
        """
        key = normalize_path(identifier)
        scope = ProgressScope(progress, task_type=TaskType.KNOWLEDGE_BASE_BUILD, source=key)
        if collection_id:
            try:
                await self.catalog.get_collection(collection_id)
            except CollectionNotFoundError as e:
                await scope.report(0.0, str(e), status=ProgressStatus.ERROR)
                return _failure(key, e)

        result = await self._ingest_one(identifier, tags, scope)
        if result.success and collection_id:
            await self.catalog.add_to_collection(collection_id, [result.source])

        if result.success:
            await scope.report(1.0, f"Indexed {display_name(identifier)} ({result.chunk_count} chunks)",
                               status=ProgressStatus.COMPLETED)
        else:
            await scope.report(1.0, result.error.message, status=ProgressStatus.ERROR)
        return result

    async def _ingest_one(self, identifier: str, tags: Sequence[str], scope: ProgressScope) -> IngestResult:
        key = normalize_path(identifier)
        try:
            await self.embeddings.ensure_ready(scope.sub(0.0, MODEL_CHECK_END, task_type=TaskType.MODEL_DOWNLOAD))
            await scope.report(MODEL_CHECK_END, f"Reading {display_name(identifier)}", task_type=TaskType.DOCUMENT_PARSE)
            loaded = await self.loader.load(identifier)
            if not loaded.chunks:
                raise EmptyContentError(f"No extractable text in {display_name(identifier)}")
            record = await self._index_loaded(loaded, tags, scope, locked=False)
        except KnowledgeBaseError as e:
            log.warning("source_ingest_failed", source=key, kind=e.kind.value, error=str(e))
            return _failure(key, e)

        return IngestResult(success=True, source=record.key, chunk_count=record.chunk_count, preview=record.preview)

    async def _index_loaded(
        self,
        loaded: LoadedSource,
        tags: Sequence[str],
        scope: ProgressScope,
        locked: bool,
    ) -> SourceRecord:
        """
        Replace the rows of ``loaded.key`` and upsert its record.

        On a schema mismatch the record is saved first (stale) and a full
        rebuild re-indexes everything under the new table.
        """
        key = loaded.key
        await scope.report(PARSE_END, f"Split into {len(loaded.chunks)} chunks",
                           task_type=TaskType.DOCUMENT_SPLIT, total=len(loaded.chunks))
        previous = await self.catalog.find_record(key)
        try:
            # Remove before re-ingest so a source never holds two generations of rows
            await self.table.remove_by_source(key)
            outcome = await self.pipeline.ingest(
                key, loaded.chunks, scope.sub(PARSE_END, 1.0, task_type=TaskType.EMBEDDING_GENERATION)
            )
        except KnowledgeBaseError:
            await self._cleanup_failed_write(key, previous)
            raise

        record = build_record(loaded, outcome.chunk_count, self.settings.ingestion.preview_chars, tags, previous)
        if not outcome.rebuild_needed:
            record = await self.catalog.upsert_record(record)
            await self._record_binding()
            log.info("source_ingested", source=key, chunks=record.chunk_count, kind=record.kind.value)
            return record

        await self.catalog.upsert_record(mark_stale(record))
        log.warning("source_ingest_triggered_rebuild", source=key)
        if locked:
            await self._rebuild_locked(RebuildMode.FULL)
        else:
            await self._self_heal()
        healed = await self.catalog.find_record(key)
        if healed is None or healed.stale:
            raise SchemaMismatchError(f"Vector table was rebuilt but {display_name(loaded.identifier)} could not be indexed")
        return healed

    async def _cleanup_failed_write(self, key: str, previous: Optional[SourceRecord]) -> None:
        try:
            await self.table.remove_by_source(key)
        except StorageException as e:
            log.warning("ingest_cleanup_failed", source=key, error=str(e))
        if previous is not None:
            # Old rows are gone; keep the record but show it needs re-indexing
            await self.catalog.upsert_record(mark_stale(previous))

    @track(name="ingest_sources", phase=Phase.INGESTION)
    async def ingest_sources(
        self,
        identifiers: Sequence[str],
        tags: Sequence[str] = (),
        collection_id: Optional[str] = None,
        progress: Optional[ProgressChannel] = None,
    ) -> BatchIngestResult:
        """
        Ingest several sources with bounded concurrency. One failing source
        never aborts the others; ``success`` is True if any source was added.

        Raises:
            CollectionNotFoundError: ``collection_id`` does not exist
        """
        return await self._ingest_many([(i, list(tags)) for i in identifiers], collection_id, progress)

    @track(name="import_folder", phase=Phase.INGESTION)
    async def import_folder(
        self,
        folder: str,
        collection_id: Optional[str] = None,
        auto_tag: bool = True,
        progress: Optional[ProgressChannel] = None,
    ) -> BatchIngestResult:
        """
        Ingest every supported file below ``folder``.

        Raises:
            FileDiscoveryError: ``folder`` is not a directory
            CollectionNotFoundError: ``collection_id`` does not exist
        """
        folder_path = Path(folder).expanduser()
        files = await asyncio.to_thread(discover_files, folder_path, self.settings.ingestion.extensions)
        if not files:
            log.info("folder_import_empty", folder=str(folder_path))
            if progress:
                await ProgressScope(progress).report(1.0, "No supported files found", status=ProgressStatus.ERROR)
            return BatchIngestResult(success=False, errors=[SourceError(
                source=normalize_path(str(folder_path)),
                kind=ErrorKind.EMPTY_CONTENT.value,
                message=f"No supported files found in {folder_path}",
            )])
        items = [(str(f.file_path), _auto_tags(f) if auto_tag else []) for f in files]
        return await self._ingest_many(items, collection_id, progress)

    async def _ingest_many(
        self,
        items: List[Tuple[str, List[str]]],
        collection_id: Optional[str],
        progress: Optional[ProgressChannel],
    ) -> BatchIngestResult:
        if collection_id:
            await self.catalog.get_collection(collection_id)

        unique = {}
        for identifier, tags in items:
            unique.setdefault(normalize_path(identifier), (identifier.strip(), tags))
        work = list(unique.values())
        total = len(work)
        scope = ProgressScope(progress, task_type=TaskType.KNOWLEDGE_BASE_BUILD)
        semaphore = asyncio.Semaphore(self.settings.ingestion.max_concurrent_sources)

        async def run(index: int, identifier: str, tags: List[str]) -> IngestResult:
            key = normalize_path(identifier)
            async with semaphore:
                try:
                    return await self._ingest_one(identifier, tags, scope.sub(index / total, (index + 1) / total, source=key))
                except Exception as e:
                    log.exception("source_ingest_crashed", source=key)
                    return IngestResult(success=False, source=key,
                                        error=ErrorInfo(kind=ErrorKind.INTERNAL.value, message=str(e)))

        results = await asyncio.gather(*(run(i, identifier, tags) for i, (identifier, tags) in enumerate(work)))

        added = [r.source for r in results if r.success]
        errors = [SourceError(source=r.source, kind=r.error.kind, message=r.error.message)
                  for r in results if not r.success]
        if collection_id and added:
            await self.catalog.add_to_collection(collection_id, added)

        batch = BatchIngestResult(
            success=bool(added),
            count=sum(r.chunk_count for r in results if r.success),
            added=added,
            errors=errors,
        )
        log.info("batch_ingest_completed", sources=total, added=len(added), failed=len(errors), chunks=batch.count)
        await scope.report(
            1.0,
            f"Indexed {len(added)} of {total} sources" + (f", {len(errors)} failed" if errors else ""),
            status=ProgressStatus.COMPLETED if added else ProgressStatus.ERROR,
        )
        return batch

    # -- source maintenance ------------------------------------------------

    @track(name="remove_source", phase=Phase.CATALOG)
    async def remove_source(self, identifier: str) -> KnowledgeBaseSnapshot:
        """Delete a source's rows (best effort) and its record, and drop it from every collection."""
        key = normalize_path(identifier)
        try:
            rows = await self.table.remove_by_source(key)
        except StorageException as e:
            # Orphaned rows are filtered out of search results
            log.warning("vector_delete_failed", source=key, error=str(e))
            rows = 0
        removed = await self.catalog.remove_records([key])
        log.info("source_removed", source=key, rows=rows, record_found=bool(removed))
        return await self.catalog.snapshot()

    @track(name="reindex_source", phase=Phase.INGESTION)
    async def reindex_source(
        self,
        identifier: str,
        progress: Optional[ProgressChannel] = None,
        max_wait: Optional[float] = None,
    ) -> KnowledgeBaseSnapshot:
        """
        Re-load and re-embed one indexed source, holding the global lock.

        Raises:
            SourceNotFoundError: the source is not in the catalog
            SourceUnreachableError: the file or URL can no longer be read
            LockTimeoutError: another structural mutation is running
        """
        key = normalize_path(identifier)
        scope = ProgressScope(progress, task_type=TaskType.KNOWLEDGE_BASE_BUILD, source=key)
        async with self.lock.hold(f"reindex:{key}", max_wait=max_wait):
            record = await self.catalog.find_record(key)
            if record is None:
                raise SourceNotFoundError(f"Source is not indexed: {identifier}")
            try:
                await self.embeddings.ensure_ready(scope.sub(0.0, MODEL_CHECK_END, task_type=TaskType.MODEL_DOWNLOAD))
                loaded = await self.loader.load(record.path)
                if not loaded.chunks:
                    raise EmptyContentError(f"No extractable text in {record.name}")
                record = await self._index_loaded(loaded, (), scope, locked=True)
            except KnowledgeBaseError as e:
                log.warning("source_reindex_failed", source=key, kind=e.kind.value, error=str(e))
                await scope.report(1.0, str(e), status=ProgressStatus.ERROR)
                raise
        await scope.report(1.0, f"Re-indexed {record.name} ({record.chunk_count} chunks)",
                           status=ProgressStatus.COMPLETED)
        return await self.catalog.snapshot()

    async def rebuild(
        self,
        mode: RebuildMode = RebuildMode.FULL,
        progress: Optional[ProgressChannel] = None,
        max_wait: Optional[float] = None,
    ) -> KnowledgeBaseSnapshot:
        """
        Recompute the vector table from the catalog (see ``RebuildOrchestrator``).

        Raises:
            LockTimeoutError: another structural mutation is running
        """
        self.last_rebuild = await self.rebuilder.rebuild(mode, progress, max_wait)
        await self._record_binding()
        return await self.catalog.snapshot()

    async def _rebuild_locked(self, mode: RebuildMode, progress: Optional[ProgressChannel] = None) -> RebuildReport:
        self.last_rebuild = await self.rebuilder.rebuild_locked(mode, progress)
        await self._record_binding()
        return self.last_rebuild

    async def _self_heal(self) -> None:
        """Run (or join) the single full rebuild that repairs an incompatible table."""
        await asyncio.shield(self._schedule_heal())

    def _schedule_heal(self) -> asyncio.Task:
        if self._heal_task is None or self._heal_task.done():
            log.warning("self_heal_rebuild_scheduled", binding=self.state.binding.fingerprint)
            self._heal_task = asyncio.ensure_future(self.rebuild(RebuildMode.FULL))
            self._background.add(self._heal_task)
            self._heal_task.add_done_callback(self._on_heal_done)
        return self._heal_task

    def _on_heal_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error("self_heal_rebuild_failed", error=str(error), error_type=type(error).__name__)
        else:
            log.info("self_heal_rebuild_completed")

    async def _record_binding(self) -> None:
        fingerprint = self.state.binding.fingerprint
        if self._recorded_binding != fingerprint and self.table.is_ready:
            await self.catalog.record_binding(self.state.binding)
            self._recorded_binding = fingerprint

    # -- search ------------------------------------------------------------

    @track(name="search", phase=Phase.RETRIEVAL)
    async def search(
        self,
        query: str,
        k: Optional[int] = None,
        sources: Optional[Sequence[str]] = None,
    ) -> List[SearchResult]:
        """
        Ranked chunks for ``query``, best first, at most ``k``.

        ``sources`` restricts results to those files or URLs. An incompatible
        vector table yields no results and schedules a rebuild in the background.

        Raises:
            QueryPreprocessingError: empty or oversized query
            ProviderUnavailableError: the query could not be embedded
        """
        search_settings = self.settings.search
        text = preprocess_query(query, search_settings.max_query_length)
        k = min(max(1, k or search_settings.default_k), search_settings.max_k)
        keys = preprocess_sources(list(sources) if sources else None, search_settings.max_sources)

        records = {record.key: record for record in await self.catalog.list_records()}
        try:
            ranked = await self.retrieval.search(text, k, keys, known=records.keys())
        except SchemaMismatchError as e:
            log.warning("search_schema_mismatch", error=str(e))
            self.state.detach_table(needs_rebuild=True)
            self._schedule_heal()
            return []

        results: List[SearchResult] = []
        for hit, score in ranked:
            record = records.get(normalize_path(hit.source))
            if record is None:
                continue
            results.append(SearchResult(
                content=hit.text,
                file_name=record.name,
                source=record.path,
                page=hit.page,
                score=score,
            ))
        log.info("search_completed", k=k, scoped=keys is not None, results_count=len(results))
        return results

    # -- collections -------------------------------------------------------

    async def create_collection(
        self,
        name: Optional[str] = None,
        description: str = "",
        files: Sequence[str] = (),
    ) -> KnowledgeBaseSnapshot:
        await self.catalog.create_collection(name, description, files)
        return await self.catalog.snapshot()

    async def update_collection(
        self,
        collection_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        files: Optional[Sequence[str]] = None,
    ) -> KnowledgeBaseSnapshot:
        """
        Raises:
            CollectionNotFoundError: no collection with ``collection_id``
        """
        await self.catalog.update_collection(collection_id, name, description, files)
        return await self.catalog.snapshot()

    @track(name="delete_collection", phase=Phase.CATALOG)
    async def delete_collection(self, collection_id: str, max_wait: Optional[float] = None) -> KnowledgeBaseSnapshot:
        """
        Delete a collection together with the sources that belong to no other
        collection (rows and records). Shared sources survive.
        """
        async with self.lock.hold(f"delete_collection:{collection_id}", max_wait=max_wait):
            try:
                exclusive = await self.catalog.exclusive_members(collection_id)
            except CollectionNotFoundError:
                log.info("collection_delete_missing", collection_id=collection_id)
                return await self.catalog.snapshot()

            for key in exclusive:
                try:
                    await self.table.remove_by_source(key)
                except StorageException as e:
                    log.warning("vector_delete_failed", source=key, error=str(e))
            await self.catalog.remove_records(exclusive)
            await self.catalog.remove_collection(collection_id)
        log.info("collection_deleted", collection_id=collection_id, sources_removed=len(exclusive))
        return await self.catalog.snapshot()

    # -- introspection -----------------------------------------------------

    async def snapshot(self) -> KnowledgeBaseSnapshot:
        return await self.catalog.snapshot()

    async def stats(self) -> EngineStats:
        # A crashed holder would otherwise show as busy forever
        self.lock.cleanup_expired()
        exists = await self.table.table_exists()
        rows = await self.table.row_count()
        records = await self.catalog.list_records()
        chunks = sum(r.chunk_count for r in records)

        warnings: List[str] = []
        if self.state.needs_rebuild:
            warnings.append("Vector table does not match the active embedding model; run a full rebuild.")
        elif chunks != rows:
            warnings.append(
                f"Catalog lists {chunks} chunks but the vector table holds {rows} rows; run an incremental rebuild."
            )

        binding = self.state.binding
        return EngineStats(
            table_exists=exists,
            table_name=self.table.table_name,
            vector_db_path=str(self.table.db_path),
            row_count=rows,
            table_dimension=self.table.dimension,
            needs_rebuild=self.state.needs_rebuild,
            binding={
                "provider": binding.provider.value,
                "model": binding.model,
                "endpoint": binding.endpoint,
                "dimension": str(binding.dimension),
            },
            catalog_sources=len(records),
            catalog_chunks=chunks,
            stale_sources=sum(1 for r in records if r.stale),
            caches={
                "query_embeddings": self.query_embedder.cache.stats(),
                "translations": self.translator.cache.stats(),
            },
            lock=self.lock.status(),
            warnings=warnings,
        )

    async def set_embedding_binding(
        self,
        provider: EmbeddingProvider,
        model: str,
        dimension: int,
        endpoint: Optional[str] = None,
    ) -> EngineStats:
        """
        Switch the embedding model. Existing vectors were produced by the old
        model, so the table is flagged for a full rebuild.
        """
        binding = EmbeddingBinding(provider=EmbeddingProvider(provider), model=model,
                                   endpoint=endpoint, dimension=dimension)
        if self.embeddings.rebind(binding) and await self.table.table_exists():
            self.state.detach_table(needs_rebuild=True)
        return await self.stats()

    def force_release_lock(self, lock_id: str = GLOBAL_LOCK) -> int:
        return self.lock.force_release(lock_id)
