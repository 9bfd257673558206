"""Pydantic schemas for search results."""
from typing import List, Optional
from pydantic import BaseModel, Field


class SearchResult(BaseModel):
    """A single ranked chunk."""
    content: str
    file_name: str
    source: str
    page: Optional[int] = None
    score: float = Field(ge=0, le=1, description="clamp01(1 / (1 + distance)), or a rank-based pseudo-score.")


class SearchResponse(BaseModel):
    query: str
    k: int
    results: List[SearchResult]
