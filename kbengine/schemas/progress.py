"""Progress messages streamed to callers during long-running operations."""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class ProgressStatus(str, Enum):
    PROCESSING = "processing"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    ERROR = "error"


class TaskType(str, Enum):
    MODEL_DOWNLOAD = "model_download"
    DOCUMENT_PARSE = "document_parse"
    DOCUMENT_SPLIT = "document_split"
    EMBEDDING_GENERATION = "embedding_generation"
    INDEX_REBUILD = "index_rebuild"
    KNOWLEDGE_BASE_BUILD = "knowledge_base_build"


class ProgressMessage(BaseModel):
    """One progress update. Ephemeral, never persisted."""
    status: ProgressStatus
    percent: float = Field(ge=0, le=100)
    message: str
    task_type: TaskType
    source: Optional[str] = Field(default=None, description="Source key the update refers to, if any.")
    current: Optional[int] = None
    total: Optional[int] = None

    @field_validator("percent", mode="before")
    @classmethod
    def clamp_percent(cls, v):
        return round(min(100.0, max(0.0, float(v))), 2)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ProgressStatus.COMPLETED, ProgressStatus.ERROR)
