from typing import Optional
from pydantic import BaseModel, Field


class DocumentChunk(BaseModel):
    """A unit of embeddable text produced by the loader."""
    content: str
    source: str = Field(..., description="Normalized source key.")
    page: Optional[int] = None
    offset: Optional[int] = Field(default=None, description="Character offset in the extracted text.")


class VectorHit(BaseModel):
    """A raw nearest-neighbour row from the vector table."""
    text: str
    source: str
    page: Optional[int] = None
    distance: float = 0.0
