"""
Search endpoint.
"""
from fastapi import APIRouter, Depends

from kbengine.api.dependencies import get_knowledge_base
from kbengine.knowledge_base import KnowledgeBase
from kbengine.logging_config import get_logger
from kbengine.observability import set_evaluation_source, track
from kbengine.schemas.api import SearchRequest
from kbengine.schemas.retrieval import SearchResponse

log = get_logger(__name__)

router = APIRouter(prefix="/search", tags=["Search"])


@router.post("", response_model=SearchResponse)
@track(name="rest_search")
async def search(
    request: SearchRequest,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> SearchResponse:
    """
    Ranked chunks for a query.

    - **query**: the question (required)
    - **k**: number of results (default 6, capped at 30)
    - **sources**: restrict the search to these files or URLs
    """
    set_evaluation_source("rest")
    log.info("search_endpoint_called", query=request.query, k=request.k, sources=request.sources)
    k = request.k or kb.settings.search.default_k
    results = await kb.search(request.query, k=k, sources=request.sources)
    return SearchResponse(query=request.query, k=min(k, kb.settings.search.max_k), results=results)
