"""
Rebuild / refresh orchestration.

A rebuild recomputes the vector table from the catalog under the global
operation lock:

    model check (0-5%) -> resolve every record (5-30%) -> embed + write (30-100%)

Each record resolves to one of:

    keep    content unchanged, rows left as they are (incremental only)
    update  content (re)loaded, rows replaced
    drop    backing file deleted or URL permanently gone; record removed
    stale   temporarily unreachable or unparseable; record kept, flagged stale
"""
import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from kbengine.catalog.records import build_record, mark_stale
from kbengine.catalog.service import Catalog
from kbengine.exceptions import (
    EmptyContentError,
    KnowledgeBaseError,
    ProviderUnavailableError,
    SchemaMismatchError,
    SourceUnreachableError,
)
from kbengine.ingestion.document_loader import DocumentLoader
from kbengine.ingestion.embedder import EmbeddingProviderBinding
from kbengine.ingestion.file_discovery import get_file_hash
from kbengine.ingestion.pipeline import IngestionPipeline
from kbengine.locking import GLOBAL_LOCK, OperationLock
from kbengine.logging_config import get_logger, operation_context
from kbengine.observability import track, Phase
from kbengine.progress import ProgressChannel, ProgressScope
from kbengine.schemas.catalog import SourceKind, SourceRecord
from kbengine.schemas.ingest import LoadedSource, RebuildMode, RebuildReport, SourceError
from kbengine.schemas.progress import ProgressStatus, TaskType
from kbengine.store.vector_table import VectorTableManager

log = get_logger(__name__)

MODEL_CHECK_END = 0.05
PARSE_END = 0.30


class Action(str, Enum):
    KEEP = "keep"
    UPDATE = "update"
    DROP = "drop"
    STALE = "stale"


@dataclass
class Resolution:
    record: SourceRecord
    action: Action
    loaded: Optional[LoadedSource] = None
    error: Optional[KnowledgeBaseError] = None


class RebuildOrchestrator:
    def __init__(
        self,
        catalog: Catalog,
        loader: DocumentLoader,
        pipeline: IngestionPipeline,
        table: VectorTableManager,
        embeddings: EmbeddingProviderBinding,
        lock: OperationLock,
        max_concurrency: int = 3,
        preview_chars: int = 160,
        drop_on_transient_failure: bool = False,
    ):
        self._catalog = catalog
        self._loader = loader
        self._pipeline = pipeline
        self._table = table
        self._embeddings = embeddings
        self._lock = lock
        self.max_concurrency = max(1, max_concurrency)
        self.preview_chars = preview_chars
        self.drop_on_transient_failure = drop_on_transient_failure
        # Set while a full rebuild runs over a dropped table
        self._table_reset = False
        self._written: Dict[str, SourceRecord] = {}

    @track(name="rebuild", phase=Phase.REBUILD)
    async def rebuild(
        self,
        mode: RebuildMode = RebuildMode.FULL,
        progress: Optional[ProgressChannel] = None,
        max_wait: Optional[float] = None,
    ) -> RebuildReport:
        """
        Rebuild holding the global lock.

        Raises:
            LockTimeoutError: another structural mutation is still running
        """
        async with self._lock.hold(f"rebuild:{mode.value}", GLOBAL_LOCK, max_wait):
            return await self.rebuild_locked(mode, progress)

    async def rebuild_locked(self, mode: RebuildMode, progress: Optional[ProgressChannel] = None) -> RebuildReport:
        """Rebuild for a caller that already holds the global lock."""
        scope = ProgressScope(progress, task_type=TaskType.INDEX_REBUILD)
        with operation_context(operation="rebuild", rebuild_id=uuid.uuid4().hex[:8]):
            try:
                report = await self._run(mode, scope)
            except Exception as e:
                log.error("rebuild_failed", mode=mode.value, error=str(e), error_type=type(e).__name__)
                if self._table_reset:
                    await self._settle_failed_full_rebuild()
                await scope.report(0.0, f"Rebuild failed: {e}", status=ProgressStatus.ERROR)
                raise
            await scope.report(
                1.0,
                f"Rebuild complete: {len(report.updated)} updated, {len(report.kept)} kept, "
                f"{len(report.dropped)} dropped",
                status=ProgressStatus.COMPLETED,
            )
            return report

    async def _run(self, mode: RebuildMode, scope: ProgressScope, escalated: bool = False) -> RebuildReport:
        log.info("rebuild_started", mode=mode.value, escalated=escalated)
        self._table_reset = False
        await self._embeddings.ensure_ready(scope.sub(0.0, MODEL_CHECK_END, task_type=TaskType.MODEL_DOWNLOAD))

        if mode == RebuildMode.INCREMENTAL and self._table.needs_rebuild:
            log.warning("rebuild_escalated_to_full", reason="incompatible_table")
            mode, escalated = RebuildMode.FULL, True

        if mode == RebuildMode.FULL:
            self._written = {}
            await self._table.reset()
            self._table_reset = True
            row_counts: Dict[str, int] = {}
        else:
            await self._table.open()
            row_counts = await self._table.source_counts()

        records = await self._catalog.list_records()
        resolutions = await self._resolve_all(
            records, mode, row_counts,
            scope.sub(MODEL_CHECK_END, PARSE_END, task_type=TaskType.DOCUMENT_PARSE),
        )

        report = RebuildReport(mode=mode, escalated=escalated)
        upserts: List[SourceRecord] = []
        removals: List[str] = []
        embed_scope = scope.sub(PARSE_END, 1.0, task_type=TaskType.EMBEDDING_GENERATION)
        updates = [r for r in resolutions if r.action == Action.UPDATE]
        total_chunks = sum(len(r.loaded.chunks) for r in updates) or 1
        done_chunks = 0

        for resolution in resolutions:
            record = resolution.record
            if resolution.action == Action.KEEP:
                report.kept.append(record.key)
                report.total_chunks += record.chunk_count
            elif resolution.action == Action.DROP:
                if mode == RebuildMode.INCREMENTAL:
                    await self._cleanup(record.key)
                removals.append(record.key)
                report.dropped.append(record.key)
            elif resolution.action == Action.STALE:
                self._note_failure(report, record, resolution.error)
                if mode == RebuildMode.FULL:
                    upserts.append(mark_stale(record))
                else:
                    # Incremental: rows (if any) are untouched, only the flag changes
                    upserts.append(record.model_copy(update={"stale": record.stale or record.key not in row_counts}))

        for resolution in updates:
            record, loaded = resolution.record, resolution.loaded
            count = len(loaded.chunks)
            source_scope = embed_scope.sub(done_chunks / total_chunks, (done_chunks + count) / total_chunks,
                                           source=record.key)
            done_chunks += count
            try:
                if mode == RebuildMode.INCREMENTAL:
                    await self._table.remove_by_source(record.key)
                outcome = await self._pipeline.ingest(record.key, loaded.chunks, source_scope)
            except ProviderUnavailableError:
                raise
            except KnowledgeBaseError as e:
                log.warning("rebuild_source_write_failed", source=record.key, error=str(e))
                await self._cleanup(record.key)
                self._note_failure(report, record, e)
                upserts.append(mark_stale(record))
                continue

            if outcome.rebuild_needed:
                if mode == RebuildMode.INCREMENTAL:
                    log.warning("rebuild_escalated_to_full", reason="schema_mismatch_on_write", source=record.key)
                    return await self._run(RebuildMode.FULL, scope, escalated=True)
                raise SchemaMismatchError(f"Freshly created table rejected vectors for {record.key}")

            rebuilt = build_record(loaded, outcome.chunk_count, self.preview_chars, previous=record)
            self._written[record.key] = rebuilt
            upserts.append(rebuilt)
            report.updated.append(record.key)
            report.total_chunks += outcome.chunk_count

        await self._catalog.apply_changes(upserts, removals)
        self._table_reset = False
        log.info("rebuild_completed", mode=mode.value, kept=len(report.kept), updated=len(report.updated),
                 dropped=len(report.dropped), failed=len(report.failed), total_chunks=report.total_chunks)
        return report

    async def _resolve_all(
        self,
        records: List[SourceRecord],
        mode: RebuildMode,
        row_counts: Dict[str, int],
        scope: ProgressScope,
    ) -> List[Resolution]:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        total = len(records)
        done = 0

        async def resolve(record: SourceRecord) -> Resolution:
            nonlocal done
            async with semaphore:
                resolution = await self._resolve(record, mode, row_counts)
            done += 1
            await scope.report(
                done / total,
                f"Checked {record.name} ({resolution.action.value})",
                current=done,
                total=total,
            )
            return resolution

        if not records:
            await scope.report(1.0, "No sources to process")
            return []
        return list(await asyncio.gather(*(resolve(r) for r in records)))

    async def _resolve(self, record: SourceRecord, mode: RebuildMode, row_counts: Dict[str, int]) -> Resolution:
        if mode == RebuildMode.INCREMENTAL and record.kind == SourceKind.FILE:
            path = Path(record.path).expanduser()
            if not path.is_file():
                log.info("rebuild_source_missing", source=record.key)
                return Resolution(record, Action.DROP)
            if record.key in row_counts and not record.stale and not await asyncio.to_thread(
                _file_changed, path, record
            ):
                return Resolution(record, Action.KEEP)

        try:
            loaded = await self._loader.load(record.path)
        except SourceUnreachableError as e:
            if e.permanent or self.drop_on_transient_failure:
                log.info("rebuild_source_unreachable", source=record.key, permanent=e.permanent, error=str(e))
                return Resolution(record, Action.DROP, error=e)
            log.warning("rebuild_source_temporarily_unreachable", source=record.key, error=str(e))
            return Resolution(record, Action.STALE, error=e)
        except KnowledgeBaseError as e:
            log.warning("rebuild_source_unparseable", source=record.key, error=str(e))
            return Resolution(record, Action.STALE, error=e)

        if not loaded.chunks:
            log.warning("rebuild_source_empty", source=record.key)
            return Resolution(record, Action.STALE, error=EmptyContentError(f"No extractable text in {record.name}"))

        if (
            mode == RebuildMode.INCREMENTAL
            and record.key in row_counts
            and not record.stale
            and loaded.content_hash is not None
            and loaded.content_hash == record.content_hash
        ):
            return Resolution(record, Action.KEEP)
        return Resolution(record, Action.UPDATE, loaded=loaded)

    async def _settle_failed_full_rebuild(self) -> None:
        """
        The table was dropped and the rebuild did not finish: keep the records
        re-indexed so far and flag every other record stale, with its partial rows removed.
        """
        self._table_reset = False
        try:
            upserts = []
            for record in await self._catalog.list_records():
                if record.key in self._written:
                    upserts.append(self._written[record.key])
                else:
                    await self._cleanup(record.key)
                    upserts.append(mark_stale(record))
            await self._catalog.apply_changes(upserts, [])
        except KnowledgeBaseError as e:
            log.error("rebuild_settle_failed", error=str(e))
            return
        log.warning("rebuild_records_marked_stale",
                    stale=sum(1 for r in upserts if r.key not in self._written))

    async def _cleanup(self, key: str) -> None:
        try:
            await self._table.remove_by_source(key)
        except KnowledgeBaseError as e:
            log.warning("rebuild_cleanup_failed", source=key, error=str(e))

    @staticmethod
    def _note_failure(report: RebuildReport, record: SourceRecord, error: KnowledgeBaseError) -> None:
        report.failed.append(SourceError(source=record.key, kind=error.kind.value, message=str(error)))


def _file_changed(path: Path, record: SourceRecord) -> bool:
    """Size first, then mtime, then content hash for touched-but-identical files."""
    stat = path.stat()
    if record.size is not None and stat.st_size != record.size:
        return True
    modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
    if modified <= record.updated_at:
        return False
    if record.content_hash is None:
        return True
    return get_file_hash(path) != record.content_hash
