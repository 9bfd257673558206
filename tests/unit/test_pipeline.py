import pytest
from unittest.mock import AsyncMock, MagicMock

from kbengine.exceptions import ProviderUnavailableError, SchemaMismatchError
from kbengine.ingestion.pipeline import IngestionPipeline
from kbengine.progress import ProgressChannel, ProgressScope
from kbengine.schemas.chunks import DocumentChunk


def make_chunks(count, source="/Docs/A.txt"):
    return [DocumentChunk(content=f"chunk {i}", source=source) for i in range(count)]


@pytest.fixture
def embeddings():
    mock = MagicMock()
    mock.embed_documents = AsyncMock(side_effect=lambda texts: [[0.0, 1.0] for _ in texts])
    return mock


@pytest.fixture
def table():
    mock = MagicMock()
    mock.upsert = AsyncMock(side_effect=lambda chunks, vectors: len(chunks))
    return mock


@pytest.mark.asyncio
async def test_ingest_writes_in_batches(embeddings, table):
    pipeline = IngestionPipeline(embeddings, table, batch_size=2)

    outcome = await pipeline.ingest("/Docs/A.txt", make_chunks(5))

    assert outcome.chunk_count == 5
    assert outcome.source == "/docs/a.txt"
    assert not outcome.rebuild_needed
    assert embeddings.embed_documents.await_count == 3
    written = [c for call in table.upsert.await_args_list for c in call.args[0]]
    assert {c.source for c in written} == {"/docs/a.txt"}


@pytest.mark.asyncio
async def test_ingest_empty_is_noop(embeddings, table):
    outcome = await IngestionPipeline(embeddings, table).ingest("/docs/a.txt", [])
    assert outcome.chunk_count == 0
    embeddings.embed_documents.assert_not_called()


@pytest.mark.asyncio
async def test_schema_mismatch_is_reported_not_raised(embeddings, table):
    table.upsert = AsyncMock(side_effect=SchemaMismatchError("dimension"))
    outcome = await IngestionPipeline(embeddings, table).ingest("/docs/a.txt", make_chunks(2))
    assert outcome.rebuild_needed
    assert outcome.chunk_count == 0


@pytest.mark.asyncio
async def test_provider_failure_propagates(embeddings, table):
    embeddings.embed_documents = AsyncMock(side_effect=ProviderUnavailableError("down"))
    with pytest.raises(ProviderUnavailableError):
        await IngestionPipeline(embeddings, table).ingest("/docs/a.txt", make_chunks(2))
    table.upsert.assert_not_called()


@pytest.mark.asyncio
async def test_progress_spans_the_given_scope(embeddings, table):
    channel = ProgressChannel()
    scope = ProgressScope(channel).sub(0.30, 1.0)

    await IngestionPipeline(embeddings, table, batch_size=2).ingest("/docs/a.txt", make_chunks(4), scope)
    await channel.close()
    percents = [m.percent async for m in channel]

    assert percents == [65.0, 100.0]
