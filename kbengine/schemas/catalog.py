"""Catalog documents: indexed-source records and collections."""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceKind(str, Enum):
    FILE = "file"
    URL = "url"


class SourceVersion(BaseModel):
    """One past ingestion of a source."""
    updated_at: datetime
    chunk_count: int
    content_hash: Optional[str] = None


class SourceRecord(BaseModel):
    """
    One indexed origin (a file path or a URL).

    ``key`` is the normalized path and is unique within the catalog.
    """
    path: str = Field(..., description="Canonical identifier as given by the caller.")
    key: str = Field(..., description="Normalized path used for every lookup.")
    name: str
    chunk_count: int = 0
    preview: str = ""
    updated_at: datetime = Field(default_factory=utcnow)
    kind: SourceKind = SourceKind.FILE
    site_name: Optional[str] = None
    site_url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    size: Optional[int] = None
    content_hash: Optional[str] = None
    # Set when the record has no rows in the table (e.g. kept through a transient fetch failure)
    stale: bool = False
    versions: List[SourceVersion] = Field(default_factory=list)


class Collection(BaseModel):
    """A named grouping of source keys."""
    id: str
    name: str
    description: str = ""
    files: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TagCount(BaseModel):
    name: str
    count: int


class SourceEntry(SourceRecord):
    """A record as presented in a snapshot."""
    status: str = "ready"


class KnowledgeBaseSnapshot(BaseModel):
    """Everything a host needs to render the knowledge base."""
    files: List[SourceEntry] = Field(default_factory=list)
    collections: List[Collection] = Field(default_factory=list)
    available_tags: List[TagCount] = Field(default_factory=list)
