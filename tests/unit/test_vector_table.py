import asyncio
from unittest.mock import patch

import pytest

from kbengine.config import EmbeddingProvider
from kbengine.exceptions import SchemaMismatchError
from kbengine.schemas.chunks import DocumentChunk
from kbengine.state import EmbeddingBinding, EngineState
from kbengine.store.vector_table import VectorTableManager, quote_literal, source_predicate


def make_state(dimension=4):
    return EngineState(binding=EmbeddingBinding(
        provider=EmbeddingProvider.HUGGINGFACE, model="fake", dimension=dimension,
    ))


def make_table(tmp_path, state):
    return VectorTableManager(tmp_path / "vectors", "chunks", state)


def chunks(source, count):
    return [DocumentChunk(content=f"{source} chunk {i}", source=source, page=i + 1) for i in range(count)]


def vectors(count, dimension=4, offset=0.0):
    return [[float(i) + offset] * dimension for i in range(count)]


def test_predicates_escape_quotes():
    assert quote_literal("it's") == "'it''s'"
    assert source_predicate(["a"]) == "source = 'a'"
    assert source_predicate(["a", "b"]) == "source IN ('a', 'b')"


@pytest.mark.asyncio
async def test_open_without_table(tmp_path):
    table = make_table(tmp_path, make_state())
    assert await table.open() is False
    assert not table.is_ready
    assert not table.needs_rebuild


@pytest.mark.asyncio
async def test_first_upsert_creates_table(tmp_path):
    state = make_state()
    table = make_table(tmp_path, state)

    written = await table.upsert(chunks("/docs/A.txt", 3), vectors(3))

    assert written == 3
    assert table.is_ready
    assert table.dimension == 4
    assert await table.row_count() == 3
    # Rows are keyed by the normalized source
    assert await table.source_counts() == {"/docs/a.txt": 3}


@pytest.mark.asyncio
async def test_concurrent_first_writes_share_one_table(tmp_path):
    table = make_table(tmp_path, make_state())

    written = await asyncio.gather(*(table.upsert(chunks(f"/docs/{i}.txt", 2), vectors(2)) for i in range(4)))

    assert written == [2, 2, 2, 2]
    assert await table.row_count() == 8


@pytest.mark.asyncio
async def test_remove_by_source(tmp_path):
    table = make_table(tmp_path, make_state())
    await table.upsert(chunks("/docs/a.txt", 3), vectors(3))
    await table.upsert(chunks("/docs/b.txt", 2), vectors(2))

    assert await table.remove_by_source("/DOCS/A.txt") == 3
    assert await table.source_counts() == {"/docs/b.txt": 2}
    assert await table.remove_by_source("/docs/missing.txt") == 0


@pytest.mark.asyncio
async def test_remove_falls_back_to_scan_for_legacy_keys(tmp_path):
    table = make_table(tmp_path, make_state())
    await table.upsert(chunks("/docs/a.txt", 1), vectors(1))
    # A row written before keys were normalized
    legacy = {"vector": [9.0] * 4, "text": "legacy", "source": "/Docs/Legacy.TXT ", "page": None}
    table._state.table.add([legacy])

    assert await table.remove_by_source("/docs/legacy.txt") == 1
    assert await table.source_counts() == {"/docs/a.txt": 1}


@pytest.mark.asyncio
async def test_remove_matches_raw_path_shape(tmp_path):
    table = make_table(tmp_path, make_state())
    await table.upsert(chunks("/docs/a.txt", 1), vectors(1))
    table._state.table.add([{"vector": [9.0] * 4, "text": "raw", "source": "/Docs/Mixed.txt", "page": None}])

    with patch.object(table, "_delete_by_scan") as scan:
        assert await table.remove_by_source("/Docs/Mixed.txt") == 1
    scan.assert_not_called()
    assert await table.source_counts() == {"/docs/a.txt": 1}


@pytest.mark.asyncio
async def test_dimension_mismatch_on_write(tmp_path):
    table = make_table(tmp_path, make_state())
    await table.upsert(chunks("/docs/a.txt", 1), vectors(1))

    with pytest.raises(SchemaMismatchError):
        await table.upsert(chunks("/docs/b.txt", 1), vectors(1, dimension=8))


@pytest.mark.asyncio
async def test_reopen_with_other_dimension_flags_rebuild(tmp_path):
    await make_table(tmp_path, make_state(4)).upsert(chunks("/docs/a.txt", 1), vectors(1))

    state = make_state(8)
    table = make_table(tmp_path, state)
    assert await table.open() is False
    assert state.needs_rebuild is True

    # Writes are refused until the table is rebuilt
    with pytest.raises(SchemaMismatchError):
        await table.upsert(chunks("/docs/b.txt", 1), vectors(1, dimension=8))

    await table.reset()
    assert state.needs_rebuild is False
    assert await table.upsert(chunks("/docs/b.txt", 1), vectors(1, dimension=8)) == 1
    assert table.dimension == 8


@pytest.mark.asyncio
async def test_search_orders_by_distance(tmp_path):
    table = make_table(tmp_path, make_state())
    await table.upsert(chunks("/docs/a.txt", 3), vectors(3))

    hits = await table.search([2.0] * 4, limit=3)

    assert [h.text for h in hits][0] == "/docs/a.txt chunk 2"
    assert hits[0].distance == pytest.approx(0.0)
    assert hits == sorted(hits, key=lambda h: h.distance)


@pytest.mark.asyncio
async def test_search_with_source_filter(tmp_path):
    table = make_table(tmp_path, make_state())
    await table.upsert(chunks("/docs/a.txt", 2), vectors(2))
    await table.upsert(chunks("/docs/b.txt", 2), vectors(2))

    hits = await table.search([0.0] * 4, limit=10, where=source_predicate(["/docs/b.txt"]))

    assert {h.source for h in hits} == {"/docs/b.txt"}


@pytest.mark.asyncio
async def test_similarity_search_scan(tmp_path):
    table = make_table(tmp_path, make_state())
    await table.upsert(chunks("/docs/a.txt", 3), vectors(3))

    hits = await table.similarity_search([0.1] * 4, limit=2)

    assert [h.text for h in hits] == ["/docs/a.txt chunk 0", "/docs/a.txt chunk 1"]
    assert hits[0].page == 1


@pytest.mark.asyncio
async def test_row_count_is_cached(tmp_path):
    now = [0.0]
    state = make_state()
    table = VectorTableManager(tmp_path / "vectors", "chunks", state, row_count_ttl=60, clock=lambda: now[0])
    await table.upsert(chunks("/docs/a.txt", 2), vectors(2))
    assert await table.row_count() == 2

    # Written behind the manager's back: the cache still answers
    state.table.add([{"vector": [1.0] * 4, "text": "x", "source": "/x", "page": None}])
    assert await table.row_count() == 2
    now[0] = 61.0
    assert await table.row_count() == 3
