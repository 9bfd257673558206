import os

# No opik traces from the test suite
os.environ.setdefault("OPIK_TRACK_DISABLE", "true")

from pathlib import Path

import pytest
import pytest_asyncio
from langchain_core.embeddings import DeterministicFakeEmbedding

from kbengine.config import (
    EmbeddingSettings,
    IngestionSettings,
    LLMSettings,
    LockSettings,
    Settings,
    StorageSettings,
)
from kbengine.knowledge_base import KnowledgeBase

DIMENSION = 16


def fake_embedder_factory(binding, api_key="", timeout=30.0):
    """Hash-seeded vectors: equal texts embed identically, no model download."""
    return DeterministicFakeEmbedding(size=binding.dimension)


def paragraphs(label: str, count: int) -> str:
    """``count`` paragraphs that each end up in their own chunk with chunk_size=200."""
    return "\n\n".join(
        f"{label} paragraph {i}. " + "lorem ipsum dolor sit amet " * 5
        for i in range(count)
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        embedding=EmbeddingSettings(provider="huggingface", model="fake-model", dimension=DIMENSION),
        llm=LLMSettings(enabled=False),
        storage=StorageSettings(
            data_dir=tmp_path,
            vector_db_path=tmp_path / "vectors",
            catalog_url=f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}",
        ),
        ingestion=IngestionSettings(chunk_size=200, chunk_overlap=0),
        lock=LockSettings(max_wait_seconds=5.0),
    )


@pytest_asyncio.fixture
async def kb(settings):
    knowledge_base = KnowledgeBase(settings, embedder_factory=fake_embedder_factory)
    await knowledge_base.open()
    yield knowledge_base
    await knowledge_base.close()


@pytest.fixture
def docs_dir(tmp_path) -> Path:
    folder = tmp_path / "docs"
    folder.mkdir()
    return folder


@pytest.fixture
def make_doc(docs_dir):
    def _make(name: str, paragraph_count: int = 3, label: str = None) -> Path:
        path = docs_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(paragraphs(label or Path(name).stem, paragraph_count), encoding="utf-8")
        return path
    return _make
