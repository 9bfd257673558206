import pytest
from langchain_core.documents import Document
from kbengine.ingestion.chunker import chunk_documents
from kbengine.exceptions import ChunkingError


def test_chunk_basic():
    text = "a" * 1000
    doc = Document(page_content=text, metadata={"source": "test"})
    chunks = chunk_documents([doc], chunk_size=100, chunk_overlap=0)

    assert len(chunks) == 10
    assert chunks[0].page_content == "a" * 100
    assert chunks[0].metadata["source"] == "test"


def test_chunk_records_start_index():
    doc = Document(page_content="a" * 250, metadata={})
    chunks = chunk_documents([doc], chunk_size=100, chunk_overlap=0)
    assert [c.metadata["start_index"] for c in chunks] == [0, 100, 200]


def test_chunk_overlap():
    text = "1234567890" * 2
    doc = Document(page_content=text, metadata={})
    chunks = chunk_documents([doc], chunk_size=10, chunk_overlap=5)
    assert len(chunks) > 1


def test_chunk_splits_on_cjk_full_stop():
    text = "。".join(["这是一个很长的句子" * 3] * 4)
    chunks = chunk_documents([Document(page_content=text, metadata={})], chunk_size=40, chunk_overlap=0)
    assert len(chunks) > 1
    assert all(len(c.page_content) <= 40 for c in chunks)


def test_chunk_empty():
    chunks = chunk_documents([], chunk_size=100)
    assert chunks == []


def test_chunk_error_handling():
    with pytest.raises(ChunkingError):
        # Passing None should raise our custom error (via underlying exception)
        chunk_documents(None)
