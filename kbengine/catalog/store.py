"""
Durable key-value document store for the catalog.

Values are whole lists (all records, all collections). There are no partial
updates: callers read, modify and write back.
"""
from typing import Any, List, Optional

from sqlalchemy import select

from kbengine.db.db_manager import DatabaseManager
from kbengine.exceptions import CatalogError
from kbengine.logging_config import get_logger
from kbengine.models.catalog_document import CatalogDocument
from kbengine.schemas.catalog import Collection, SourceRecord
from kbengine.state import EmbeddingBinding

log = get_logger(__name__)

FILES_KEY = "files"
COLLECTIONS_KEY = "collections"
BINDING_KEY = "embedding_binding"


class CatalogStore:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def _get(self, key: str, default: Any = None) -> Any:
        try:
            async with self.db.get_session() as session:
                result = await session.execute(select(CatalogDocument.value).where(CatalogDocument.key == key))
                value = result.scalar_one_or_none()
        except Exception as e:
            log.error("catalog_read_failed", key=key, error=str(e))
            raise CatalogError(f"Failed to read catalog '{key}': {e}") from e
        return default if value is None else value

    async def _set(self, key: str, value: Any) -> None:
        try:
            async with self.db.get_session() as session:
                await session.merge(CatalogDocument(key=key, value=value))
        except Exception as e:
            log.error("catalog_write_failed", key=key, error=str(e))
            raise CatalogError(f"Failed to write catalog '{key}': {e}") from e

    async def get_files(self) -> List[SourceRecord]:
        return [SourceRecord.model_validate(item) for item in await self._get(FILES_KEY, [])]

    async def set_files(self, records: List[SourceRecord]) -> None:
        await self._set(FILES_KEY, [r.model_dump(mode="json") for r in records])

    async def get_collections(self) -> List[Collection]:
        return [Collection.model_validate(item) for item in await self._get(COLLECTIONS_KEY, [])]

    async def set_collections(self, collections: List[Collection]) -> None:
        await self._set(COLLECTIONS_KEY, [c.model_dump(mode="json") for c in collections])

    async def get_binding(self) -> Optional[EmbeddingBinding]:
        """The embedding binding the vector table was last written with."""
        value = await self._get(BINDING_KEY)
        return EmbeddingBinding.model_validate(value) if value else None

    async def set_binding(self, binding: EmbeddingBinding) -> None:
        await self._set(BINDING_KEY, binding.model_dump(mode="json"))
