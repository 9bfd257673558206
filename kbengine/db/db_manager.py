import contextlib
from pathlib import Path
from typing import AsyncIterator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from kbengine.models.base import Base
# Import models so they are registered with Base metadata
from kbengine.models.catalog_document import CatalogDocument  # noqa: F401


class DatabaseManager:
    """Async engine and session scope for the catalog database."""

    def __init__(self, url: str):
        self.url = url
        self._ensure_sqlite_dir(url)
        self.engine = create_async_engine(url, echo=False)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            autoflush=False
        )

    @staticmethod
    def _ensure_sqlite_dir(url: str) -> None:
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
            Path(parsed.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    async def init_db(self) -> None:
        """Create tables if missing."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def reset_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)

    @contextlib.asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def dispose(self) -> None:
        await self.engine.dispose()


def database_for(url: Optional[str] = None) -> DatabaseManager:
    """Manager for ``url``, defaulting to the configured catalog database."""
    if url is None:
        from kbengine.config import get_settings
        url = get_settings().storage.catalog_url
    return DatabaseManager(url)
