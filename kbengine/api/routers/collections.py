"""
Collection endpoints. Every mutation returns the updated snapshot.
"""
from fastapi import APIRouter, Depends

from kbengine.api.dependencies import get_knowledge_base
from kbengine.knowledge_base import KnowledgeBase
from kbengine.observability import set_evaluation_source
from kbengine.schemas.api import CollectionCreateRequest, CollectionUpdateRequest
from kbengine.schemas.catalog import KnowledgeBaseSnapshot

router = APIRouter(prefix="/collections", tags=["Collections"])


@router.post("", response_model=KnowledgeBaseSnapshot)
async def create_collection(
    request: CollectionCreateRequest,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> KnowledgeBaseSnapshot:
    set_evaluation_source("rest")
    return await kb.create_collection(request.name, request.description, request.files)


@router.patch("/{collection_id}", response_model=KnowledgeBaseSnapshot)
async def update_collection(
    collection_id: str,
    request: CollectionUpdateRequest,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> KnowledgeBaseSnapshot:
    set_evaluation_source("rest")
    return await kb.update_collection(collection_id, request.name, request.description, request.files)


@router.delete("/{collection_id}", response_model=KnowledgeBaseSnapshot)
async def delete_collection(
    collection_id: str,
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> KnowledgeBaseSnapshot:
    """Deletes the collection and every member source no other collection references."""
    set_evaluation_source("rest")
    return await kb.delete_collection(collection_id)
