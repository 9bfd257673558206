"""
Maintenance endpoints: rebuild (optionally streamed as NDJSON), stats,
embedding model switch and lock recovery.
"""
import json

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from kbengine.api.dependencies import get_knowledge_base
from kbengine.exceptions import KnowledgeBaseError
from kbengine.knowledge_base import KnowledgeBase
from kbengine.locking import GLOBAL_LOCK
from kbengine.logging_config import get_logger
from kbengine.observability import set_evaluation_source
from kbengine.schemas.api import EmbeddingBindingRequest, LockReleaseResponse, RebuildResponse
from kbengine.schemas.ingest import RebuildMode
from kbengine.schemas.stats import EngineStats

log = get_logger(__name__)

router = APIRouter(prefix="/maintenance", tags=["Maintenance"])


@router.post("/rebuild", response_model=RebuildResponse)
async def rebuild(
    mode: RebuildMode = Query(RebuildMode.FULL),
    stream: bool = Query(False, description="Stream progress messages as NDJSON"),
    kb: KnowledgeBase = Depends(get_knowledge_base),
):
    """
    Rebuild the vector table from the catalog.

    With ``stream=true`` the body is one JSON progress message per line,
    followed by a final ``{"result": ...}`` or ``{"error": ...}`` line.
    The rebuild keeps running if the client disconnects.
    """
    set_evaluation_source("rest")
    log.info("rebuild_endpoint_called", mode=mode.value, stream=stream)
    if not stream:
        snapshot = await kb.rebuild(mode)
        return RebuildResponse(snapshot=snapshot, report=kb.last_rebuild)

    progress = kb.stream(lambda channel: kb.rebuild(mode, progress=channel))

    async def body():
        try:
            async for message in progress:
                yield message.model_dump_json() + "\n"
            snapshot = await progress.result()
            result = RebuildResponse(snapshot=snapshot, report=kb.last_rebuild)
            yield json.dumps({"result": result.model_dump(mode="json")}) + "\n"
        except KnowledgeBaseError as e:
            yield json.dumps({"error": e.to_dict()}) + "\n"
        finally:
            await progress.aclose()

    return StreamingResponse(body(), media_type="application/x-ndjson")


@router.get("/stats", response_model=EngineStats)
async def stats(kb: KnowledgeBase = Depends(get_knowledge_base)) -> EngineStats:
    return await kb.stats()


@router.put("/embedding", response_model=EngineStats)
async def set_embedding(
    request: EmbeddingBindingRequest,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> EngineStats:
    """Switch the embedding model. A full rebuild is required afterwards."""
    set_evaluation_source("rest")
    return await kb.set_embedding_binding(request.provider, request.model, request.dimension, request.endpoint)


@router.post("/lock/force-release", response_model=LockReleaseResponse)
async def force_release_lock(
    lock_id: str = Query(GLOBAL_LOCK),
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> LockReleaseResponse:
    """Crash recovery: drop the holder and reject every queued operation."""
    rejected = kb.force_release_lock(lock_id)
    return LockReleaseResponse(lock_id=lock_id, waiters_rejected=rejected)
