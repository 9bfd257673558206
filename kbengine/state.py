"""Process-wide engine state, owned by one ``KnowledgeBase`` instance and passed to its components."""
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from kbengine.config import EmbeddingProvider, EmbeddingSettings


class EmbeddingBinding(BaseModel):
    """The active (provider, model, endpoint) triple plus the vector size it produces."""
    model_config = ConfigDict(frozen=True)

    provider: EmbeddingProvider
    model: str
    endpoint: Optional[str] = None
    dimension: int

    @property
    def fingerprint(self) -> str:
        return f"{self.provider.value}|{self.model}|{self.endpoint or ''}"

    @classmethod
    def from_settings(cls, settings: EmbeddingSettings) -> "EmbeddingBinding":
        return cls(
            provider=settings.provider,
            model=settings.model,
            endpoint=settings.endpoint,
            dimension=settings.dimension,
        )


@dataclass
class EngineState:
    """
    Shared mutable state: the open table handle, the cached row count and the
    active embedding binding. Any write path must call ``invalidate_row_count``.
    """
    binding: EmbeddingBinding
    table: Optional[Any] = None             # lancedb Table once opened or created
    table_dimension: Optional[int] = None
    needs_rebuild: bool = False             # on-disk table incompatible with the binding
    row_count: Optional[int] = None
    row_count_at: float = field(default=0.0)

    def invalidate_row_count(self) -> None:
        self.row_count = None
        self.row_count_at = 0.0

    def cache_row_count(self, count: int, now: Optional[float] = None) -> None:
        self.row_count = count
        self.row_count_at = time.monotonic() if now is None else now

    def detach_table(self, needs_rebuild: bool = False) -> None:
        self.table = None
        self.table_dimension = None
        self.needs_rebuild = needs_rebuild
        self.invalidate_row_count()
