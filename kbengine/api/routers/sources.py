"""
Source endpoints: ingest, batch ingest, folder import, removal and reindex.
"""
from fastapi import APIRouter, Depends, Query

from kbengine.api.dependencies import get_knowledge_base
from kbengine.knowledge_base import KnowledgeBase
from kbengine.logging_config import get_logger
from kbengine.observability import set_evaluation_source, track
from kbengine.schemas.api import BatchIngestRequest, FolderImportRequest, IngestSourceRequest, SourceRequest
from kbengine.schemas.catalog import KnowledgeBaseSnapshot
from kbengine.schemas.ingest import BatchIngestResult, IngestResult

log = get_logger(__name__)

router = APIRouter(prefix="/sources", tags=["Sources"])


@router.post("", response_model=IngestResult)
@track(name="rest_ingest_source")
async def ingest_source(
    request: IngestSourceRequest,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> IngestResult:
    """
    Index one file path or URL.

    Failures are reported in the body (``success=false`` with an error kind),
    not as an HTTP error.
    """
    set_evaluation_source("rest")
    log.info("ingest_endpoint_called", identifier=request.identifier)
    return await kb.ingest_source(request.identifier, tags=request.tags, collection_id=request.collection_id)


@router.post("/batch", response_model=BatchIngestResult)
@track(name="rest_ingest_batch")
async def ingest_batch(
    request: BatchIngestRequest,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> BatchIngestResult:
    set_evaluation_source("rest")
    log.info("batch_ingest_endpoint_called", sources=len(request.identifiers))
    return await kb.ingest_sources(request.identifiers, tags=request.tags, collection_id=request.collection_id)


@router.post("/folder", response_model=BatchIngestResult)
@track(name="rest_import_folder")
async def import_folder(
    request: FolderImportRequest,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> BatchIngestResult:
    set_evaluation_source("rest")
    log.info("folder_import_endpoint_called", folder=request.folder_path)
    return await kb.import_folder(request.folder_path, collection_id=request.collection_id,
                                  auto_tag=request.auto_tag)


@router.delete("", response_model=KnowledgeBaseSnapshot)
async def remove_source(
    identifier: str = Query(..., min_length=1, description="File path or URL to remove"),
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> KnowledgeBaseSnapshot:
    set_evaluation_source("rest")
    return await kb.remove_source(identifier)


@router.post("/reindex", response_model=KnowledgeBaseSnapshot)
async def reindex_source(
    request: SourceRequest,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> KnowledgeBaseSnapshot:
    """Re-load and re-embed one indexed source. Unreachable sources are an error here."""
    set_evaluation_source("rest")
    return await kb.reindex_source(request.identifier)
