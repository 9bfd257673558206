import asyncio
import time

import pytest
from unittest.mock import AsyncMock, patch

from kbengine.config import EmbeddingSettings
from kbengine.exceptions import (
    FileDiscoveryError,
    QueryPreprocessingError,
    SourceNotFoundError,
    SourceUnreachableError,
)
from kbengine.ingestion.web_loader import FetchedPage
from kbengine.knowledge_base import KnowledgeBase
from kbengine.schemas.progress import ProgressStatus

from conftest import DIMENSION, fake_embedder_factory, paragraphs

URL = "https://example.com/handbook"


def fetched(count=5, label="handbook"):
    return FetchedPage(url=URL, text=paragraphs(label, count), title="Handbook", site_name="Example", size=900)


def key(path):
    return str(path).lower()


class TestIngestion:
    """Single and batch ingestion."""

    @pytest.mark.asyncio
    async def test_ingest_file(self, kb, make_doc):
        """A file becomes one record and one row per chunk."""
        path = make_doc("guide.txt", 3)

        result = await kb.ingest_source(str(path), tags=["manuals"])

        assert result.success
        assert result.chunk_count == 3
        assert result.preview.startswith("guide paragraph 0")
        snapshot = await kb.snapshot()
        assert [(f.key, f.name, f.chunk_count, f.tags) for f in snapshot.files] == [
            (key(path), "guide.txt", 3, ["manuals"])
        ]
        assert await kb.table.source_counts() == {key(path): 3}

    @pytest.mark.asyncio
    async def test_reingest_is_idempotent(self, kb, make_doc):
        """Ingesting twice keeps one record reflecting the latest content."""
        path = make_doc("guide.txt", 3)
        await kb.ingest_source(str(path))
        make_doc("guide.txt", 2, label="updated")

        result = await kb.ingest_source(str(path))

        assert result.chunk_count == 2
        records = await kb.catalog.list_records()
        assert len(records) == 1
        assert records[0].chunk_count == 2
        assert records[0].preview.startswith("updated paragraph 0")
        assert [v.chunk_count for v in records[0].versions] == [3, 2]
        assert await kb.table.source_counts() == {key(path): 2}

    @pytest.mark.asyncio
    async def test_ingest_url(self, kb):
        with patch("kbengine.ingestion.document_loader.fetch_page", AsyncMock(return_value=fetched())):
            result = await kb.ingest_source(URL)

        assert result.success and result.chunk_count == 5
        record = await kb.catalog.find_record(URL)
        assert record.kind.value == "url"
        assert record.name == "Handbook"
        assert record.site_name == "Example"

    @pytest.mark.asyncio
    async def test_missing_file_is_a_structured_failure(self, kb, docs_dir):
        result = await kb.ingest_source(str(docs_dir / "nope.txt"))

        assert not result.success
        assert result.error.kind == "resource_unreachable"
        assert await kb.catalog.list_records() == []

    @pytest.mark.asyncio
    async def test_empty_file_is_rejected(self, kb, docs_dir):
        path = docs_dir / "blank.txt"
        path.write_text("  \n\n ", encoding="utf-8")

        result = await kb.ingest_source(str(path))

        assert not result.success
        assert result.error.kind == "empty_content"
        assert not kb.table.is_ready

    @pytest.mark.asyncio
    async def test_unknown_collection_is_a_failure(self, kb, make_doc):
        result = await kb.ingest_source(str(make_doc("a.txt")), collection_id="missing")
        assert result.error.kind == "not_found"
        assert await kb.catalog.list_records() == []

    @pytest.mark.asyncio
    async def test_ingest_into_collection(self, kb, make_doc):
        snapshot = await kb.create_collection("Manuals")
        collection_id = snapshot.collections[0].id
        path = make_doc("a.txt")

        await kb.ingest_source(str(path), collection_id=collection_id)

        assert (await kb.catalog.get_collection(collection_id)).files == [key(path)]

    @pytest.mark.asyncio
    async def test_progress_stream_ends_completed(self, kb, make_doc):
        path = make_doc("a.txt", 2)

        stream = kb.stream(lambda channel: kb.ingest_source(str(path), progress=channel))
        messages = [m async for m in stream]
        result = await stream.result()

        assert result.success
        assert messages[-1].status == ProgressStatus.COMPLETED
        assert messages[-1].percent == 100.0
        percents = [m.percent for m in messages]
        assert percents == sorted(percents)

    @pytest.mark.asyncio
    async def test_partial_failure_isolation(self, kb, make_doc, docs_dir):
        """The 2nd of 3 sources fails to parse; the other two are indexed."""
        first = make_doc("first.txt", 3)
        broken = docs_dir / "broken.pdf"
        broken.write_bytes(b"this is not a pdf")
        third = make_doc("third.txt", 2)

        batch = await kb.ingest_sources([str(first), str(broken), str(third)])

        assert batch.success
        assert batch.count == 5
        assert sorted(batch.added) == sorted([key(first), key(third)])
        assert [(e.source, e.kind) for e in batch.errors] == [(key(broken), "unparseable")]
        assert sorted(r.key for r in await kb.catalog.list_records()) == sorted([key(first), key(third)])

    @pytest.mark.asyncio
    async def test_concurrent_batch_into_empty_knowledge_base(self, kb, make_doc):
        """Sources written in parallel all land, even though none of them finds a table yet."""
        paths = [make_doc(f"f{i}.txt", 2) for i in range(5)]
        kb.settings.ingestion.max_concurrent_sources = 5

        batch = await kb.ingest_sources([str(p) for p in paths])

        assert batch.errors == []
        assert batch.count == 10
        assert await kb.table.source_counts() == {key(p): 2 for p in paths}

    @pytest.mark.asyncio
    async def test_batch_of_failures_is_unsuccessful(self, kb, docs_dir):
        batch = await kb.ingest_sources([str(docs_dir / "a.txt"), str(docs_dir / "b.txt")])
        assert not batch.success
        assert len(batch.errors) == 2

    @pytest.mark.asyncio
    async def test_import_folder_auto_tags(self, kb, make_doc, docs_dir):
        make_doc("manuals/setup.md", 2)
        make_doc("manuals/usage.txt", 1)
        make_doc("notes/todo.txt", 1)

        batch = await kb.import_folder(str(docs_dir))

        assert batch.success and len(batch.added) == 3
        tags = {t.name: t.count for t in (await kb.snapshot()).available_tags}
        assert tags == {"manuals": 2, "notes": 1, "MD": 1, "TXT": 2}

    @pytest.mark.asyncio
    async def test_import_empty_folder(self, kb, docs_dir):
        batch = await kb.import_folder(str(docs_dir))
        assert not batch.success
        assert batch.errors[0].kind == "empty_content"

    @pytest.mark.asyncio
    async def test_import_missing_folder_raises(self, kb, docs_dir):
        with pytest.raises(FileDiscoveryError):
            await kb.import_folder(str(docs_dir / "missing"))


class TestSourceMaintenance:
    """Removal and re-indexing."""

    @pytest.mark.asyncio
    async def test_remove_source_is_complete(self, kb, make_doc):
        a = make_doc("alpha.txt", 3)
        b = make_doc("beta.txt", 2)
        await kb.ingest_sources([str(a), str(b)])
        await kb.create_collection("Both", files=[str(a), str(b)])

        snapshot = await kb.remove_source(str(a))

        assert [f.key for f in snapshot.files] == [key(b)]
        assert snapshot.collections[0].files == [key(b)]
        assert await kb.table.source_counts() == {key(b): 2}
        results = await kb.search("alpha paragraph 1", k=10)
        assert results and all(r.source != str(a) for r in results)

    @pytest.mark.asyncio
    async def test_remove_unknown_source_is_noop(self, kb):
        snapshot = await kb.remove_source("/nowhere.txt")
        assert snapshot.files == []

    @pytest.mark.asyncio
    async def test_reindex_source(self, kb, make_doc):
        path = make_doc("a.txt", 2)
        await kb.ingest_source(str(path), tags=["keep"])
        make_doc("a.txt", 4, label="fresh")

        snapshot = await kb.reindex_source(str(path))

        entry = snapshot.files[0]
        assert entry.chunk_count == 4
        assert entry.tags == ["keep"]
        assert await kb.table.source_counts() == {key(path): 4}
        assert not kb.lock.is_locked()

    @pytest.mark.asyncio
    async def test_reindex_unknown_source(self, kb):
        with pytest.raises(SourceNotFoundError):
            await kb.reindex_source("/docs/unknown.txt")

    @pytest.mark.asyncio
    async def test_reindex_deleted_file_surfaces_error(self, kb, make_doc):
        path = make_doc("a.txt", 2)
        await kb.ingest_source(str(path))
        path.unlink()

        with pytest.raises(SourceUnreachableError):
            await kb.reindex_source(str(path))
        # Unlike a rebuild, reindex never drops the record
        assert await kb.catalog.find_record(str(path)) is not None


class TestSearch:
    """End-to-end search behaviour."""

    @pytest.mark.asyncio
    async def test_file_and_url_scenario(self, kb, make_doc):
        """File A (3 chunks) and URL B (5 chunks): global and scoped search."""
        a = make_doc("a.txt", 3)
        await kb.ingest_source(str(a))
        with patch("kbengine.ingestion.document_loader.fetch_page", AsyncMock(return_value=fetched(5))):
            await kb.ingest_source(URL)

        results = await kb.search("x", k=4)
        assert 0 < len(results) <= 4
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert {r.source for r in results} <= {str(a), URL}

        scoped = await kb.search("x", k=4, sources=[str(a)])
        assert 0 < len(scoped) <= 3
        assert {r.source for r in scoped} == {str(a)}
        assert {r.file_name for r in scoped} == {"a.txt"}

    @pytest.mark.asyncio
    async def test_exact_chunk_text_ranks_first(self, kb, make_doc):
        path = make_doc("a.txt", 3)
        await kb.ingest_source(str(path))
        target = paragraphs("a", 3).split("\n\n")[1].strip()

        results = await kb.search(target, k=3)

        assert results[0].content == target
        assert results[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_empty_knowledge_base(self, kb):
        assert await kb.search("anything") == []

    @pytest.mark.asyncio
    async def test_invalid_query(self, kb):
        with pytest.raises(QueryPreprocessingError):
            await kb.search("   ")

    @pytest.mark.asyncio
    async def test_k_is_clamped(self, kb, make_doc):
        await kb.ingest_source(str(make_doc("a.txt", 3)))
        kb.settings.search.max_k = 2
        assert len(await kb.search("x", k=10)) == 2
        assert len(await kb.search("x", k=0)) == 2

    @pytest.mark.asyncio
    async def test_orphan_rows_are_skipped(self, kb, make_doc):
        a = make_doc("a.txt", 2)
        b = make_doc("b.txt", 2)
        await kb.ingest_sources([str(a), str(b)])
        # Record gone, rows left behind
        await kb.catalog.remove_records([str(a)])

        results = await kb.search("x", k=10)

        assert {r.source for r in results} == {str(b)}

    @pytest.mark.asyncio
    async def test_orphans_do_not_shrink_result_count(self, kb, make_doc):
        a = make_doc("a.txt", 3)
        b = make_doc("b.txt", 3)
        await kb.ingest_sources([str(a), str(b)])
        await kb.catalog.remove_records([str(a)])
        # Exact text of an orphaned chunk ranks it first
        target = paragraphs("a", 3).split("\n\n")[0].strip()

        results = await kb.search(target, k=3)

        assert len(results) == 3
        assert {r.source for r in results} == {str(b)}


class TestCollections:
    """Collection lifecycle and cascade."""

    @pytest.mark.asyncio
    async def test_delete_collection_cascades_to_exclusive_members(self, kb, make_doc):
        a, b, c = make_doc("a.txt", 1), make_doc("b.txt", 2), make_doc("c.txt", 3)
        await kb.ingest_sources([str(a), str(b), str(c)])
        await kb.create_collection("First", files=[str(a), str(b)])
        snapshot = await kb.create_collection("Second", files=[str(b), str(c)])
        first = next(col for col in snapshot.collections if col.name == "First")

        snapshot = await kb.delete_collection(first.id)

        assert sorted(f.key for f in snapshot.files) == sorted([key(b), key(c)])
        assert [col.name for col in snapshot.collections] == ["Second"]
        assert snapshot.collections[0].files == [key(b), key(c)]
        assert await kb.table.source_counts() == {key(b): 2, key(c): 3}

    @pytest.mark.asyncio
    async def test_delete_missing_collection_returns_snapshot(self, kb):
        snapshot = await kb.delete_collection("missing")
        assert snapshot.collections == []

    @pytest.mark.asyncio
    async def test_update_collection(self, kb, make_doc):
        path = make_doc("a.txt")
        await kb.ingest_source(str(path))
        collection_id = (await kb.create_collection("Old")).collections[0].id

        snapshot = await kb.update_collection(collection_id, name="New", files=[str(path)])

        assert (snapshot.collections[0].name, snapshot.collections[0].files) == ("New", [key(path)])


class TestEmbeddingBinding:
    """Model switches and self-healing."""

    @pytest.mark.asyncio
    async def test_dimension_change_self_heals_on_search(self, settings, kb, make_doc):
        path = make_doc("a.txt", 3)
        await kb.ingest_source(str(path))
        await kb.close()

        wide = settings.model_copy(update={"embedding": EmbeddingSettings(
            provider="huggingface", model="fake-wide", dimension=DIMENSION * 2,
        )})
        async with KnowledgeBase(wide, embedder_factory=fake_embedder_factory) as healed:
            assert healed.state.needs_rebuild

            # The first search finds nothing and schedules the rebuild
            assert await healed.search("x") == []
            await healed._heal_task

            assert healed.table.dimension == DIMENSION * 2
            assert len(await healed.search("x", k=3)) == 3
            assert (await healed.catalog.stored_binding()).model == "fake-wide"

    @pytest.mark.asyncio
    async def test_ingest_after_dimension_change_rebuilds(self, settings, kb, make_doc):
        a = make_doc("a.txt", 3)
        await kb.ingest_source(str(a))
        await kb.close()

        wide = settings.model_copy(update={"embedding": EmbeddingSettings(
            provider="huggingface", model="fake-wide", dimension=DIMENSION * 2,
        )})
        async with KnowledgeBase(wide, embedder_factory=fake_embedder_factory) as healed:
            b = make_doc("b.txt", 2)
            result = await healed.ingest_source(str(b))

            assert result.success
            assert result.chunk_count == 2
            assert await healed.table.source_counts() == {key(a): 3, key(b): 2}
            assert not (await healed.stats()).warnings

    @pytest.mark.asyncio
    async def test_same_dimension_model_change_flags_rebuild(self, settings, kb, make_doc):
        await kb.ingest_source(str(make_doc("a.txt", 2)))
        await kb.close()

        other = settings.model_copy(update={"embedding": EmbeddingSettings(
            provider="huggingface", model="another-model", dimension=DIMENSION,
        )})
        async with KnowledgeBase(other, embedder_factory=fake_embedder_factory) as reopened:
            assert reopened.state.needs_rebuild
            assert (await reopened.stats()).needs_rebuild

    @pytest.mark.asyncio
    async def test_set_embedding_binding(self, kb, make_doc):
        await kb.ingest_source(str(make_doc("a.txt", 2)))
        kb.query_embedder.cache.set(("x", "y"), [0.0])

        stats = await kb.set_embedding_binding("huggingface", "other", DIMENSION)

        assert stats.needs_rebuild
        assert stats.binding["model"] == "other"
        assert len(kb.query_embedder.cache) == 0
        assert stats.warnings


class TestStatsAndLock:
    @pytest.mark.asyncio
    async def test_stats(self, kb, make_doc):
        await kb.ingest_source(str(make_doc("a.txt", 3)))

        stats = await kb.stats()

        assert stats.table_exists
        assert stats.row_count == 3
        assert stats.catalog_sources == 1
        assert stats.catalog_chunks == 3
        assert stats.table_dimension == DIMENSION
        assert stats.warnings == []
        assert not stats.lock.locked

    @pytest.mark.asyncio
    async def test_stats_warns_when_out_of_sync(self, kb, make_doc):
        path = make_doc("a.txt", 3)
        await kb.ingest_source(str(path))
        await kb.table.remove_by_source(str(path))

        stats = await kb.stats()

        assert stats.row_count == 0
        assert "incremental rebuild" in stats.warnings[0]

    @pytest.mark.asyncio
    async def test_delete_collection_waits_for_lock(self, kb):
        handle = await kb.lock.acquire("rebuild:full")
        task = asyncio.create_task(kb.delete_collection("missing"))
        await asyncio.sleep(0.01)
        assert not task.done()
        assert kb.lock.status().queued_operations == ["delete_collection:missing"]

        handle.release()
        await task

    @pytest.mark.asyncio
    async def test_force_release_lock(self, kb):
        await kb.lock.acquire("stuck")
        assert kb.force_release_lock() == 0
        assert not kb.lock.is_locked()

    @pytest.mark.asyncio
    async def test_crashed_holder_expires_after_configured_age(self, kb, settings):
        await kb.lock.acquire("crashed")
        assert kb.lock.stale_after == settings.lock.stale_after_seconds
        kb.lock._clock = lambda: time.monotonic() + settings.lock.stale_after_seconds + 1

        stats = await kb.stats()

        assert not stats.lock.locked
        await kb.delete_collection("missing", max_wait=0.1)

    @pytest.mark.asyncio
    async def test_translation_cache_evicts_oldest_first(self, kb):
        assert kb.translator.cache.refresh_on_read is False
        assert kb.query_embedder.cache.refresh_on_read is True
