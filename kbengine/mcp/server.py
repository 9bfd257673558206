"""
MCP server exposing knowledge-base search and ingestion as tools for AI assistants.

Provides the same functionality as the REST /search and /sources endpoints
with equivalent error handling, logging, and observability.
"""
import asyncio
import os
from typing import List, Optional

# Suppress Opik SDK console output (it prints to stdout which breaks MCP JSON protocol)
# Must be set BEFORE importing opik
os.environ["OPIK_CONSOLE_LOGGING_LEVEL"] = "CRITICAL"

# Configure logging FIRST, before any other imports that might log
from kbengine.config import get_settings
from kbengine.logging_config import configure_logging, get_logger

settings = get_settings()
configure_logging(
    log_level=settings.log_level,
    json_format=settings.json_logs,
    use_stderr=True,  # MCP uses stdout for JSON protocol
)

log = get_logger(__name__)

# Now import everything else (safe - logging goes to stderr)
from fastmcp import FastMCP
from kbengine.exceptions import KnowledgeBaseError
from kbengine.knowledge_base import KnowledgeBase
from kbengine.observability import configure_observability, track, set_evaluation_source
from kbengine.warmup import warmup_models

# Initialize observability
configure_observability()

mcp = FastMCP("kbengine")

_kb: Optional[KnowledgeBase] = None
_kb_lock = asyncio.Lock()


async def get_knowledge_base() -> KnowledgeBase:
    """Open the engine on first use; the stdio transport owns the event loop."""
    global _kb
    async with _kb_lock:
        if _kb is None:
            kb = await KnowledgeBase.from_settings(settings).open()
            # Preload the embedding model (avoids timeout on the first search)
            await warmup_models(kb)
            _kb = kb
    return _kb


def _error(error: KnowledgeBaseError) -> dict:
    return {
        "error": True,
        "error_type": error.__class__.__name__,
        "kind": error.kind.value,
        "message": str(error),
        "retryable": error.retryable,
    }


@mcp.tool()
@track(name="mcp_search_knowledge_base")
async def search_knowledge_base(
    query: str,
    k: int = 6,
    sources: Optional[List[str]] = None,
) -> dict:
    """
    Search the local knowledge base and return the most relevant passages.

    Args:
        query: The question or keywords, in any language
        k: Number of passages to return (1-30, default: 6)
        sources: Optional file paths or URLs to restrict the search to

    Returns:
        A dict with the ranked results (content, file name, page, score).
    """
    set_evaluation_source("mcp")
    log.info("mcp_search_tool_called", query=query, k=k, sources=sources)
    try:
        kb = await get_knowledge_base()
        results = await kb.search(query, k=k, sources=sources)
        log.info("mcp_search_tool_success", query=query, results_count=len(results))
        return {
            "query": query,
            "results": [r.model_dump() for r in results],
        }
    except KnowledgeBaseError as e:
        log.error("mcp_search_error", query=query, kind=e.kind.value, error=str(e))
        return _error(e)
    except Exception as e:
        log.exception("mcp_unexpected_error", query=query, error=str(e))
        return {
            "error": True,
            "error_type": "UnexpectedError",
            "kind": "internal",
            "message": "An unexpected error occurred.",
        }


@mcp.tool()
@track(name="mcp_ingest_source")
async def ingest_source(
    identifier: str,
    tags: Optional[List[str]] = None,
    collection_id: Optional[str] = None,
) -> dict:
    """
    Add a local file (PDF, text, Markdown) or a web page URL to the knowledge base.

    Args:
        identifier: Absolute file path or http(s) URL
        tags: Optional tags to attach to the source
        collection_id: Optional collection to add the source to

    Returns:
        A dict with success, chunk count and a content preview, or the error.
    """
    set_evaluation_source("mcp")
    log.info("mcp_ingest_tool_called", identifier=identifier)
    try:
        kb = await get_knowledge_base()
        result = await kb.ingest_source(identifier, tags=tags or (), collection_id=collection_id)
        return result.model_dump()
    except KnowledgeBaseError as e:
        log.error("mcp_ingest_error", identifier=identifier, kind=e.kind.value, error=str(e))
        return _error(e)
    except Exception as e:
        log.exception("mcp_unexpected_error", identifier=identifier, error=str(e))
        return {
            "error": True,
            "error_type": "UnexpectedError",
            "kind": "internal",
            "message": "An unexpected error occurred.",
        }
