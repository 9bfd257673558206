"""
Catalog of indexed sources and collections.

The store only offers whole-document get/set, so every mutation here is a
read-modify-write cycle serialized by an in-process mutex. Collections never
keep keys of records that no longer exist: reads prune them.
"""
import asyncio
import uuid
from collections import Counter
from typing import Iterable, List, Optional, Sequence, Set

from kbengine.catalog.store import CatalogStore
from kbengine.exceptions import CollectionNotFoundError
from kbengine.logging_config import get_logger
from kbengine.observability import track, Phase
from kbengine.paths import normalize_path
from kbengine.state import EmbeddingBinding
from kbengine.schemas.catalog import (
    Collection,
    KnowledgeBaseSnapshot,
    SourceEntry,
    SourceRecord,
    SourceVersion,
    TagCount,
    utcnow,
)

log = get_logger(__name__)

DEFAULT_COLLECTION_NAME = "Untitled collection"


def _prune(collections: List[Collection], existing: Set[str]) -> int:
    """Drop dangling keys in place. Returns how many references were removed."""
    removed = 0
    for collection in collections:
        kept = [key for key in collection.files if key in existing]
        if len(kept) != len(collection.files):
            removed += len(collection.files) - len(kept)
            collection.files = kept
    return removed


def _sanitize_files(files: Iterable[str], existing: Set[str]) -> List[str]:
    result: List[str] = []
    for item in files:
        key = normalize_path(item)
        if key in existing and key not in result:
            result.append(key)
    return result


class Catalog:
    def __init__(self, store: CatalogStore, max_versions: int = 10):
        self._store = store
        self.max_versions = max_versions
        self._mutex = asyncio.Lock()

    # -- records -----------------------------------------------------------

    async def list_records(self) -> List[SourceRecord]:
        return await self._store.get_files()

    async def find_record(self, identifier: str) -> Optional[SourceRecord]:
        key = normalize_path(identifier)
        for record in await self._store.get_files():
            if record.key == key:
                return record
        return None

    async def upsert_record(self, record: SourceRecord) -> SourceRecord:
        """Insert or replace by normalized key, extending the version history."""
        async with self._mutex:
            records = await self._store.get_files()
            merged = self._merge(record, next((r for r in records if r.key == record.key), None))
            records = [r for r in records if r.key != record.key] + [merged]
            await self._store.set_files(records)
        log.info("catalog_record_upserted", source=merged.key, chunks=merged.chunk_count)
        return merged

    def _merge(self, record: SourceRecord, previous: Optional[SourceRecord]) -> SourceRecord:
        history = list(previous.versions) if previous else []
        if record.chunk_count and not record.stale:
            history.append(SourceVersion(
                updated_at=record.updated_at,
                chunk_count=record.chunk_count,
                content_hash=record.content_hash,
            ))
        update = {"versions": history[-self.max_versions:]}
        if previous and not record.tags:
            update["tags"] = previous.tags
        return record.model_copy(update=update)

    async def remove_records(self, keys: Sequence[str]) -> List[SourceRecord]:
        """Remove records and every collection reference to them."""
        wanted = {normalize_path(k) for k in keys}
        async with self._mutex:
            records = await self._store.get_files()
            removed = [r for r in records if r.key in wanted]
            if removed:
                await self._store.set_files([r for r in records if r.key not in wanted])
            collections = await self._store.get_collections()
            existing = {r.key for r in records if r.key not in wanted}
            if _prune(collections, existing):
                await self._store.set_collections(collections)
        if removed:
            log.info("catalog_records_removed", sources=[r.key for r in removed])
        return removed

    async def apply_changes(self, upserts: Sequence[SourceRecord], removals: Sequence[str]) -> List[SourceRecord]:
        """
        Apply a rebuild result in one cycle: replace ``upserts`` by key, drop
        ``removals``, keep every other record (including ones added meanwhile).
        Records removed meanwhile stay removed.
        """
        removed_keys = {normalize_path(k) for k in removals}
        async with self._mutex:
            current = {r.key: r for r in await self._store.get_files()}
            for record in upserts:
                if record.key not in current:
                    # Removed while the rebuild ran
                    log.info("catalog_upsert_skipped_removed", source=record.key)
                    continue
                current[record.key] = self._merge(record, current[record.key])
            records = [r for key, r in current.items() if key not in removed_keys]
            await self._store.set_files(records)
            collections = await self._store.get_collections()
            if _prune(collections, {r.key for r in records}):
                await self._store.set_collections(collections)
        return records

    async def stored_binding(self) -> Optional[EmbeddingBinding]:
        return await self._store.get_binding()

    async def record_binding(self, binding: EmbeddingBinding) -> None:
        await self._store.set_binding(binding)
        log.info("embedding_binding_recorded", binding=binding.fingerprint)

    # -- collections -------------------------------------------------------

    async def get_collection(self, collection_id: str) -> Collection:
        for collection in await self._store.get_collections():
            if collection.id == collection_id:
                return collection
        raise CollectionNotFoundError(f"Collection not found: {collection_id}")

    @track(name="create_collection", phase=Phase.CATALOG)
    async def create_collection(
        self,
        name: Optional[str] = None,
        description: str = "",
        files: Sequence[str] = (),
    ) -> Collection:
        async with self._mutex:
            collections = await self._store.get_collections()
            existing = {r.key for r in await self._store.get_files()}
            collection = Collection(
                id=str(uuid.uuid4()),
                name=(name or "").strip() or f"{DEFAULT_COLLECTION_NAME} {len(collections) + 1}",
                description=description,
                files=_sanitize_files(files, existing),
            )
            collections.append(collection)
            await self._store.set_collections(collections)
        log.info("collection_created", collection_id=collection.id, files=len(collection.files))
        return collection

    @track(name="update_collection", phase=Phase.CATALOG)
    async def update_collection(
        self,
        collection_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        files: Optional[Sequence[str]] = None,
    ) -> Collection:
        async with self._mutex:
            collections = await self._store.get_collections()
            target = next((c for c in collections if c.id == collection_id), None)
            if target is None:
                raise CollectionNotFoundError(f"Collection not found: {collection_id}")
            if name is not None and name.strip():
                target.name = name.strip()
            if description is not None:
                target.description = description
            if files is not None:
                existing = {r.key for r in await self._store.get_files()}
                target.files = _sanitize_files(files, existing)
            target.updated_at = utcnow()
            await self._store.set_collections(collections)
        log.info("collection_updated", collection_id=collection_id)
        return target

    async def add_to_collection(self, collection_id: str, keys: Sequence[str]) -> Collection:
        async with self._mutex:
            collections = await self._store.get_collections()
            target = next((c for c in collections if c.id == collection_id), None)
            if target is None:
                raise CollectionNotFoundError(f"Collection not found: {collection_id}")
            existing = {r.key for r in await self._store.get_files()}
            target.files = _sanitize_files(list(target.files) + list(keys), existing)
            target.updated_at = utcnow()
            await self._store.set_collections(collections)
        return target

    async def remove_collection(self, collection_id: str) -> Optional[Collection]:
        async with self._mutex:
            collections = await self._store.get_collections()
            target = next((c for c in collections if c.id == collection_id), None)
            if target is not None:
                await self._store.set_collections([c for c in collections if c.id != collection_id])
        return target

    async def exclusive_members(self, collection_id: str) -> List[str]:
        """Keys of ``collection_id`` that belong to no other collection."""
        collections = await self._store.get_collections()
        target = next((c for c in collections if c.id == collection_id), None)
        if target is None:
            raise CollectionNotFoundError(f"Collection not found: {collection_id}")
        shared = {key for c in collections if c.id != collection_id for key in c.files}
        return [key for key in target.files if key not in shared]

    async def prune_collections(self) -> int:
        async with self._mutex:
            collections = await self._store.get_collections()
            existing = {r.key for r in await self._store.get_files()}
            removed = _prune(collections, existing)
            if removed:
                await self._store.set_collections(collections)
                log.info("collections_pruned", references_removed=removed)
        return removed

    # -- snapshot ----------------------------------------------------------

    async def snapshot(self) -> KnowledgeBaseSnapshot:
        """Records, collections and tag counts, with collections pruned first."""
        await self.prune_collections()
        records = await self._store.get_files()
        collections = await self._store.get_collections()
        tags = Counter(tag for record in records for tag in record.tags)
        return KnowledgeBaseSnapshot(
            files=[
                SourceEntry(**record.model_dump(), status="stale" if record.stale else "ready")
                for record in sorted(records, key=lambda r: r.updated_at, reverse=True)
            ],
            collections=collections,
            available_tags=[TagCount(name=name, count=count) for name, count in sorted(tags.items())],
        )
