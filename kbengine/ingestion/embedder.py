"""
Embedding provider binding.

Wraps a LangChain ``Embeddings`` instance for the active ``EmbeddingBinding``.
Instances are cached by binding fingerprint; switching the binding invalidates
the cache and notifies listeners (query-embedding cache, row counts).
"""
import asyncio
from typing import Callable, Dict, List, Optional

from langchain_core.embeddings import Embeddings
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from kbengine.config import EmbeddingProvider
from kbengine.exceptions import EmbeddingError, ProviderUnavailableError
from kbengine.logging_config import get_logger
from kbengine.observability import track, Phase
from kbengine.progress import ProgressScope
from kbengine.schemas.progress import ProgressStatus, TaskType
from kbengine.state import EmbeddingBinding, EngineState

log = get_logger(__name__)

EmbedderFactory = Callable[[EmbeddingBinding, str, float], Embeddings]


def build_embedder(binding: EmbeddingBinding, api_key: str = "", timeout: float = 30.0) -> Embeddings:
    """
    Construct the embedding model for ``binding``.
    Heavy for local models (may download weights); call off the event loop.
    """
    try:
        if binding.provider == EmbeddingProvider.HUGGINGFACE:
            # Lazy import to avoid hard dependency if using OpenAI
            from langchain_huggingface import HuggingFaceEmbeddings
            log.info("embedder_initialized", provider=binding.provider.value, model=binding.model)
            return HuggingFaceEmbeddings(model_name=binding.model)

        elif binding.provider == EmbeddingProvider.OPENAI:
            from langchain_openai import OpenAIEmbeddings
            log.info("embedder_initialized", provider=binding.provider.value, model=binding.model,
                     endpoint=binding.endpoint)
            kwargs = {}
            if binding.endpoint:
                kwargs["base_url"] = binding.endpoint
                # OpenAI-compatible servers take raw strings, not token ids
                kwargs["check_embedding_ctx_length"] = False
            return OpenAIEmbeddings(
                model=binding.model,
                api_key=api_key or "not-needed",
                request_timeout=timeout,
                **kwargs,
            )

        else:
            raise EmbeddingError(f"Unsupported embedding provider: {binding.provider}")

    except ImportError as e:
        log.error("embedder_import_failed", provider=binding.provider.value, error=str(e))
        raise ProviderUnavailableError(f"Missing dependency for {binding.provider.value}: {e}")
    except EmbeddingError:
        raise
    except Exception as e:
        log.error("embedder_init_failed", provider=binding.provider.value, error=str(e))
        raise ProviderUnavailableError(_diagnostic(binding, e))


def _diagnostic(binding: EmbeddingBinding, error: Exception) -> str:
    return (
        f"Embedding provider '{binding.provider.value}' (model '{binding.model}') is unavailable: {error}. "
        "Check EMBEDDING__PROVIDER, EMBEDDING__MODEL, EMBEDDING__ENDPOINT and EMBEDDING__API_KEY."
    )


@track(name="embed_documents", phase=Phase.INGESTION)
async def embed_documents(embedder: Embeddings, texts: List[str]) -> List[List[float]]:
    """
    Wrapper to embed documents with observability tracking.
    """
    return await embedder.aembed_documents(texts)


class EmbeddingProviderBinding:
    """Owns the embedding model for the binding stored in ``EngineState``."""

    def __init__(
        self,
        state: EngineState,
        api_key: str = "",
        timeout: float = 30.0,
        max_retries: int = 3,
        factory: EmbedderFactory = build_embedder,
    ):
        self._state = state
        self._api_key = api_key
        self._timeout = timeout
        self._max_retries = max_retries
        self._factory = factory
        self._instances: Dict[str, Embeddings] = {}
        self._init_lock = asyncio.Lock()
        self._listeners: List[Callable[[EmbeddingBinding], None]] = []

    @property
    def binding(self) -> EmbeddingBinding:
        return self._state.binding

    def add_invalidation_listener(self, listener: Callable[[EmbeddingBinding], None]) -> None:
        self._listeners.append(listener)

    def rebind(self, binding: EmbeddingBinding) -> bool:
        """Switch the active binding. Returns False when nothing changed."""
        previous = self._state.binding
        if binding == previous:
            return False
        self._state.binding = binding
        self._instances.clear()
        self._state.invalidate_row_count()
        if self._state.table_dimension is not None and self._state.table_dimension != binding.dimension:
            self._state.needs_rebuild = True
        for listener in self._listeners:
            listener(binding)
        log.info("embedding_binding_changed", previous=previous.fingerprint, current=binding.fingerprint,
                 needs_rebuild=self._state.needs_rebuild)
        return True

    async def ensure_ready(self, progress: Optional[ProgressScope] = None) -> Embeddings:
        """Initialize (and download, for local models) the embedding model, reporting progress."""
        binding = self.binding
        cached = self._instances.get(binding.fingerprint)
        if cached is not None:
            if progress:
                await progress.report(1.0, "Embedding model ready", task_type=TaskType.MODEL_DOWNLOAD)
            return cached

        async with self._init_lock:
            cached = self._instances.get(binding.fingerprint)
            if cached is not None:
                return cached

            if progress:
                local = binding.provider == EmbeddingProvider.HUGGINGFACE
                await progress.report(
                    0.0,
                    f"Loading embedding model {binding.model}" if local else f"Connecting to {binding.provider.value}",
                    status=ProgressStatus.DOWNLOADING if local else ProgressStatus.PROCESSING,
                    task_type=TaskType.MODEL_DOWNLOAD,
                )
            try:
                embedder = await asyncio.to_thread(self._factory, binding, self._api_key, self._timeout)
            except EmbeddingError:
                raise
            except Exception as e:
                raise ProviderUnavailableError(_diagnostic(binding, e)) from e
            self._instances[binding.fingerprint] = embedder
            if progress:
                await progress.report(1.0, "Embedding model ready", task_type=TaskType.MODEL_DOWNLOAD)
            return embedder

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        embedder = await self.ensure_ready()
        return await self._call(lambda: embed_documents(embedder, texts), "embed_documents")

    async def embed_query(self, text: str) -> List[float]:
        embedder = await self.ensure_ready()
        return await self._call(lambda: embedder.aembed_query(text), "embed_query")

    async def _call(self, make_call, operation: str):
        binding = self.binding
        attempts = 1 if binding.provider == EmbeddingProvider.HUGGINGFACE else self._max_retries
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(multiplier=1, min=1, max=8),
                retry=retry_if_exception_type((ConnectionError, asyncio.TimeoutError, OSError)),
                reraise=True,
            ):
                with attempt:
                    return await asyncio.wait_for(make_call(), timeout=self._timeout)
        except EmbeddingError:
            raise
        except Exception as e:
            log.error("embedding_call_failed", operation=operation, provider=binding.provider.value, error=str(e))
            raise ProviderUnavailableError(_diagnostic(binding, e)) from e
