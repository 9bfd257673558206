"""Request bodies for the REST API."""
from typing import List, Optional

from pydantic import BaseModel, Field

from kbengine.config import EmbeddingProvider
from kbengine.schemas.catalog import KnowledgeBaseSnapshot
from kbengine.schemas.ingest import RebuildReport


class IngestSourceRequest(BaseModel):
    identifier: str = Field(..., description="File path or http(s) URL.")
    tags: List[str] = Field(default_factory=list)
    collection_id: Optional[str] = None


class BatchIngestRequest(BaseModel):
    identifiers: List[str] = Field(..., min_length=1)
    tags: List[str] = Field(default_factory=list)
    collection_id: Optional[str] = None


class FolderImportRequest(BaseModel):
    folder_path: str = Field(..., description="Path to folder to import")
    collection_id: Optional[str] = None
    auto_tag: bool = True


class SourceRequest(BaseModel):
    identifier: str


class SearchRequest(BaseModel):
    """
    - **query**: the question (required)
    - **k**: number of results (defaults to the configured default)
    - **sources**: restrict the search to these sources
    """
    query: str = Field(..., min_length=1)
    k: Optional[int] = Field(default=None, ge=1)
    sources: Optional[List[str]] = None


class CollectionCreateRequest(BaseModel):
    name: Optional[str] = None
    description: str = ""
    files: List[str] = Field(default_factory=list)


class CollectionUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    files: Optional[List[str]] = None


class EmbeddingBindingRequest(BaseModel):
    provider: EmbeddingProvider
    model: str
    dimension: int = Field(..., ge=1)
    endpoint: Optional[str] = None


class RebuildResponse(BaseModel):
    snapshot: KnowledgeBaseSnapshot
    report: Optional[RebuildReport] = None


class LockReleaseResponse(BaseModel):
    lock_id: str
    waiters_rejected: int
