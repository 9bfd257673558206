import pytest
from unittest.mock import MagicMock, patch
from langchain_core.embeddings import DeterministicFakeEmbedding

from kbengine.config import EmbeddingProvider
from kbengine.exceptions import ProviderUnavailableError
from kbengine.ingestion.embedder import EmbeddingProviderBinding, build_embedder
from kbengine.progress import ProgressChannel, ProgressScope
from kbengine.state import EmbeddingBinding, EngineState


def _binding(model="model-a", dimension=8, provider=EmbeddingProvider.HUGGINGFACE, endpoint=None):
    return EmbeddingBinding(provider=provider, model=model, dimension=dimension, endpoint=endpoint)


def test_build_embedder_huggingface():
    with patch("langchain_huggingface.HuggingFaceEmbeddings") as hf:
        build_embedder(_binding(model="all-MiniLM-L6-v2"))
    hf.assert_called_once_with(model_name="all-MiniLM-L6-v2")


def test_build_embedder_openai_compatible_endpoint():
    # Mock the actual import so we don't need API access
    with patch.dict("sys.modules", {"langchain_openai": MagicMock()}):
        from langchain_openai import OpenAIEmbeddings
        build_embedder(
            _binding(provider=EmbeddingProvider.OPENAI, model="nomic-embed", endpoint="http://localhost:1234/v1"),
        )

        OpenAIEmbeddings.assert_called_once()
        kwargs = OpenAIEmbeddings.call_args.kwargs
        assert kwargs["base_url"] == "http://localhost:1234/v1"
        assert kwargs["check_embedding_ctx_length"] is False
        assert kwargs["api_key"] == "not-needed"


def test_build_embedder_init_failure_is_provider_unavailable():
    with patch("langchain_huggingface.HuggingFaceEmbeddings", side_effect=RuntimeError("no weights")):
        with pytest.raises(ProviderUnavailableError) as exc:
            build_embedder(_binding())
    assert "EMBEDDING__MODEL" in str(exc.value)


class TestEmbeddingProviderBinding:
    """Instance caching, progress and rebinding."""

    @pytest.mark.asyncio
    async def test_ensure_ready_builds_once(self):
        """The factory runs once per binding fingerprint."""
        factory = MagicMock(side_effect=lambda b, key, timeout: DeterministicFakeEmbedding(size=b.dimension))
        embeddings = EmbeddingProviderBinding(EngineState(binding=_binding()), factory=factory)

        first = await embeddings.ensure_ready()
        second = await embeddings.ensure_ready()

        assert first is second
        assert factory.call_count == 1

    @pytest.mark.asyncio
    async def test_ensure_ready_reports_model_progress(self):
        channel = ProgressChannel()
        embeddings = EmbeddingProviderBinding(
            EngineState(binding=_binding()),
            factory=lambda b, key, timeout: DeterministicFakeEmbedding(size=b.dimension),
        )

        await embeddings.ensure_ready(ProgressScope(channel, span=5.0))
        await channel.close()
        messages = [m async for m in channel]

        assert messages[0].percent == 0.0
        assert messages[0].status.value == "downloading"
        assert messages[-1].percent == 5.0

    @pytest.mark.asyncio
    async def test_factory_failure_is_provider_unavailable(self):
        def broken(binding, key, timeout):
            raise ConnectionError("connection refused")

        embeddings = EmbeddingProviderBinding(EngineState(binding=_binding()), factory=broken)
        with pytest.raises(ProviderUnavailableError):
            await embeddings.ensure_ready()

    @pytest.mark.asyncio
    async def test_embed_documents_and_query(self):
        embeddings = EmbeddingProviderBinding(
            EngineState(binding=_binding(dimension=12)),
            factory=lambda b, key, timeout: DeterministicFakeEmbedding(size=b.dimension),
        )
        vectors = await embeddings.embed_documents(["one", "two"])
        query = await embeddings.embed_query("one")

        assert len(vectors) == 2
        assert len(vectors[0]) == 12
        assert query == vectors[0]

    def test_rebind_notifies_and_flags_dimension_change(self):
        state = EngineState(binding=_binding(dimension=8), table_dimension=8, row_count=10)
        embeddings = EmbeddingProviderBinding(state)
        seen = []
        embeddings.add_invalidation_listener(seen.append)

        assert embeddings.rebind(_binding(model="model-b", dimension=16)) is True
        assert state.needs_rebuild is True
        assert state.row_count is None
        assert [b.model for b in seen] == ["model-b"]

    def test_rebind_same_binding_is_noop(self):
        embeddings = EmbeddingProviderBinding(EngineState(binding=_binding()))
        assert embeddings.rebind(_binding()) is False
