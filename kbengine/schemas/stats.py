"""Engine diagnostics returned by ``KnowledgeBase.stats()``."""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from kbengine.locking import LockStatus


class EngineStats(BaseModel):
    table_exists: bool
    table_name: str
    vector_db_path: str
    row_count: int = 0
    table_dimension: Optional[int] = None
    needs_rebuild: bool = False
    binding: Dict[str, Optional[str]] = Field(default_factory=dict)
    catalog_sources: int = 0
    catalog_chunks: int = 0
    stale_sources: int = 0
    caches: Dict[str, dict] = Field(default_factory=dict)
    lock: Optional[LockStatus] = None
    warnings: List[str] = Field(default_factory=list)
