"""Schemas for ingestion, batch import and rebuild results."""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from kbengine.schemas.catalog import SourceKind
from kbengine.schemas.chunks import DocumentChunk


class LoadedSource(BaseModel):
    """Output of the document loader for one source."""
    identifier: str
    key: str
    kind: SourceKind
    name: str
    chunks: List[DocumentChunk] = Field(default_factory=list)
    site_name: Optional[str] = None
    site_url: Optional[str] = None
    size: Optional[int] = None
    modified_at: Optional[datetime] = None
    content_hash: Optional[str] = None


class ErrorInfo(BaseModel):
    kind: str
    message: str


class IngestResult(BaseModel):
    """Outcome of ingesting a single source."""
    success: bool
    source: str
    chunk_count: int = 0
    preview: str = ""
    error: Optional[ErrorInfo] = None


class SourceError(BaseModel):
    source: str
    kind: str
    message: str


class BatchIngestResult(BaseModel):
    """
    Outcome of a multi-source ingestion.

    ``success`` is True when at least one source was added.
    """
    success: bool
    count: int = Field(0, description="Sum of chunk counts of successful sources.")
    added: List[str] = Field(default_factory=list)
    errors: List[SourceError] = Field(default_factory=list)


class RebuildMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class RebuildReport(BaseModel):
    """What a rebuild did to each source key."""
    mode: RebuildMode
    kept: List[str] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    dropped: List[str] = Field(default_factory=list)
    failed: List[SourceError] = Field(default_factory=list)
    total_chunks: int = 0
    escalated: bool = Field(False, description="Incremental request promoted to full (schema mismatch).")
