"""
Model warmup for preloading the embedding model at startup.
Used by both the REST API and the MCP server to avoid cold-start latency.
"""
from kbengine.exceptions import ProviderUnavailableError
from kbengine.knowledge_base import KnowledgeBase
from kbengine.logging_config import get_logger

log = get_logger(__name__)


async def warmup_models(kb: KnowledgeBase) -> bool:
    """
    Load the embedding model for the active binding.

    A provider that is down at startup is not fatal: the first ingestion or
    search reports the diagnostic instead. Returns whether the model is ready.
    """
    log.info("warmup_started", binding=kb.state.binding.fingerprint)
    try:
        await kb.embeddings.ensure_ready()
    except ProviderUnavailableError as e:
        log.warning("warmup_embedder_unavailable", error=str(e))
        return False
    log.info("warmup_completed")
    return True
