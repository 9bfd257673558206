"""
Vector table lifecycle on top of LanceDB.

Rows are ``{vector, text, source, page}``. ``source`` always holds the
normalized source key, so a single equality predicate finds a source's rows.
A scan-based delete remains for tables written before keys were normalized.

LanceDB's synchronous API is used from worker threads so table I/O never
blocks the event loop.
"""
import asyncio
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import lancedb
import numpy as np
import pyarrow as pa

from kbengine.exceptions import SchemaMismatchError, StorageException
from kbengine.logging_config import get_logger
from kbengine.paths import normalize_path
from kbengine.schemas.chunks import DocumentChunk, VectorHit
from kbengine.state import EngineState

log = get_logger(__name__)

_SCHEMA_ERROR_MARKERS = ("dimension", "fixedsizelist", "fixed_size_list", "schema", "cast")


def table_schema(dimension: int) -> pa.Schema:
    return pa.schema([
        pa.field("vector", pa.list_(pa.float32(), dimension)),
        pa.field("text", pa.string()),
        pa.field("source", pa.string()),
        pa.field("page", pa.int32(), nullable=True),
    ])


def quote_literal(value: str) -> str:
    """SQL string literal for LanceDB filters."""
    return "'" + value.replace("'", "''") + "'"


def source_predicate(keys: Sequence[str]) -> str:
    if len(keys) == 1:
        return f"source = {quote_literal(keys[0])}"
    return "source IN (" + ", ".join(quote_literal(k) for k in keys) + ")"


def _key_variants(source: str, key: str) -> List[str]:
    """Normalized key plus the raw and separator-unified shapes older rows may carry."""
    raw = source.strip()
    variants = [key]
    for candidate in (raw, raw.replace("\\", "/")):
        # Backslashes are left to the scan fallback
        if candidate not in variants and "\\" not in candidate:
            variants.append(candidate)
    return variants


def _vector_dimension(table) -> Optional[int]:
    try:
        vector_type = table.schema.field("vector").type
    except KeyError:
        return None
    return getattr(vector_type, "list_size", None)


def _looks_like_schema_error(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _SCHEMA_ERROR_MARKERS)


def _to_hit(row: dict) -> VectorHit:
    return VectorHit(
        text=row.get("text") or "",
        source=row.get("source") or "",
        page=row.get("page"),
        distance=float(row.get("_distance", 0.0) or 0.0),
    )


class VectorTableManager:
    """Owns the on-disk vector table referenced by ``EngineState.table``."""

    def __init__(
        self,
        db_path: Path,
        table_name: str,
        state: EngineState,
        row_count_ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db_path = Path(db_path)
        self.table_name = table_name
        self._state = state
        self._row_count_ttl = row_count_ttl
        self._clock = clock
        self._db = None
        self._connect_lock = asyncio.Lock()
        # One writer at a time: concurrent first writes would all try to create the table
        self._write_lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self._state.table is not None

    @property
    def needs_rebuild(self) -> bool:
        return self._state.needs_rebuild

    @property
    def dimension(self) -> Optional[int]:
        return self._state.table_dimension

    async def _connection(self):
        if self._db is None:
            async with self._connect_lock:
                if self._db is None:
                    self.db_path.mkdir(parents=True, exist_ok=True)
                    self._db = await asyncio.to_thread(lancedb.connect, str(self.db_path))
        return self._db

    async def table_exists(self) -> bool:
        db = await self._connection()
        names = await asyncio.to_thread(db.table_names)
        return self.table_name in names

    async def open(self) -> bool:
        """
        Connect and bind to the existing table if it is compatible with the
        active embedding binding. Never raises for an incompatible table: the
        state is marked as needing a rebuild instead. Returns readiness.
        """
        if self._state.table is not None:
            return True
        if self._state.needs_rebuild:
            return False
        if not await self.table_exists():
            log.info("vector_table_absent", table=self.table_name, path=str(self.db_path))
            return False

        expected = self._state.binding.dimension
        try:
            db = await self._connection()
            table = await asyncio.to_thread(db.open_table, self.table_name)
            dimension = _vector_dimension(table)
        except Exception as e:
            log.warning("vector_table_open_failed", table=self.table_name, error=str(e))
            self._state.detach_table(needs_rebuild=True)
            return False

        if dimension != expected:
            log.warning("vector_table_dimension_mismatch", table=self.table_name,
                        stored=dimension, expected=expected)
            self._state.detach_table(needs_rebuild=True)
            return False

        self._state.table = table
        self._state.table_dimension = dimension
        self._state.needs_rebuild = False
        self._state.invalidate_row_count()
        log.info("vector_table_opened", table=self.table_name, dimension=dimension)
        return True

    async def upsert(self, chunks: Sequence[DocumentChunk], vectors: Sequence[Sequence[float]]) -> int:
        """
        Append rows, creating the table on first write.

        Raises:
            SchemaMismatchError: the stored table cannot hold these vectors.
            StorageException: any other write failure.
        """
        if len(chunks) != len(vectors):
            raise StorageException(f"Got {len(vectors)} vectors for {len(chunks)} chunks")
        if not chunks:
            return 0

        dimension = len(vectors[0])
        rows = [
            {
                "vector": [float(x) for x in vector],
                "text": chunk.content,
                "source": normalize_path(chunk.source),
                "page": chunk.page,
            }
            for chunk, vector in zip(chunks, vectors)
        ]

        try:
            async with self._write_lock:
                if self._state.table is None:
                    await self._create_with(rows, dimension)
                else:
                    if self._state.table_dimension != dimension:
                        raise SchemaMismatchError(
                            f"Vector table holds {self._state.table_dimension}-d vectors, got {dimension}-d",
                            expected=self._state.table_dimension, actual=dimension,
                        )
                    await asyncio.to_thread(self._state.table.add, rows)
        except SchemaMismatchError:
            raise
        except Exception as e:
            if _looks_like_schema_error(e):
                raise SchemaMismatchError(f"Vector write rejected by table schema: {e}") from e
            raise StorageException(f"Failed to write {len(rows)} rows: {e}") from e
        finally:
            self._state.invalidate_row_count()

        log.debug("vector_rows_written", rows=len(rows), source=rows[0]["source"])
        return len(rows)

    async def _create_with(self, rows: List[dict], dimension: int) -> None:
        if await self.table_exists():
            # Exists on disk but was not bound by open(): incompatible until rebuilt
            db = await self._connection()
            table = await asyncio.to_thread(db.open_table, self.table_name)
            stored = _vector_dimension(table)
            if stored != dimension or self._state.needs_rebuild:
                self._state.needs_rebuild = True
                raise SchemaMismatchError(
                    f"Vector table holds {stored}-d vectors, got {dimension}-d",
                    expected=stored, actual=dimension,
                )
            await asyncio.to_thread(table.add, rows)
        else:
            db = await self._connection()
            table = await asyncio.to_thread(
                db.create_table, self.table_name, data=rows, schema=table_schema(dimension)
            )
            log.info("vector_table_created", table=self.table_name, dimension=dimension)
        self._state.table = table
        self._state.table_dimension = dimension
        self._state.needs_rebuild = False

    async def _any_table(self):
        """The bound table, or the raw on-disk table even if incompatible (for deletes)."""
        if self._state.table is not None:
            return self._state.table
        if not await self.table_exists():
            return None
        db = await self._connection()
        return await asyncio.to_thread(db.open_table, self.table_name)

    async def remove_by_source(self, source: str) -> int:
        """
        Delete every row of one source. Returns the number of rows removed.

        Tries the normalized key and the raw path shapes first, then falls back
        to a full scan to catch rows stored under any other shape.
        """
        key = normalize_path(source)
        table = await self._any_table()
        if table is None:
            return 0
        try:
            predicate = source_predicate(_key_variants(source, key))
            matched = await asyncio.to_thread(table.count_rows, predicate)
            if matched:
                await asyncio.to_thread(table.delete, predicate)
                log.info("vector_rows_deleted", source=key, rows=matched)
                return matched
            return await self._delete_by_scan(table, key)
        except Exception as e:
            raise StorageException(f"Failed to delete rows for {key}: {e}") from e
        finally:
            self._state.invalidate_row_count()

    async def _delete_by_scan(self, table, key: str) -> int:
        sources = await asyncio.to_thread(lambda: table.to_arrow().column("source").to_pylist())
        variants = sorted({s for s in sources if s is not None and s != key and normalize_path(s) == key})
        if not variants:
            return 0
        removed = sum(1 for s in sources if s in variants)
        await asyncio.to_thread(table.delete, source_predicate(variants))
        log.warning("vector_delete_fallback_scan", source=key, variants=variants, rows=removed)
        return removed

    async def row_count(self) -> int:
        """Row count, cached for ``row_count_ttl`` seconds."""
        state = self._state
        now = self._clock()
        if state.row_count is not None and now - state.row_count_at < self._row_count_ttl:
            return state.row_count
        if state.table is None:
            return 0
        count = await asyncio.to_thread(state.table.count_rows)
        state.cache_row_count(count, now)
        return count

    async def search(self, vector: Sequence[float], limit: int, where: Optional[str] = None) -> List[VectorHit]:
        """Native nearest-neighbour search, ascending distance."""
        table = self._state.table
        if table is None:
            return []

        def _run() -> List[dict]:
            query = table.search(list(vector)).limit(limit)
            if where:
                query = query.where(where, prefilter=True)
            return query.to_list()

        rows = await asyncio.to_thread(_run)
        return [_to_hit(row) for row in rows]

    async def similarity_search(self, vector: Sequence[float], limit: int) -> List[VectorHit]:
        """
        Brute-force scan in memory, ordered by L2 distance. Used when the
        native search path fails.
        """
        table = self._state.table
        if table is None:
            return []

        def _run() -> List[VectorHit]:
            data = table.to_arrow()
            if data.num_rows == 0:
                return []
            matrix = np.asarray(data.column("vector").to_pylist(), dtype=np.float32)
            distances = np.linalg.norm(matrix - np.asarray(vector, dtype=np.float32), axis=1)
            order = np.argsort(distances)[:limit]
            texts = data.column("text").to_pylist()
            sources = data.column("source").to_pylist()
            pages = data.column("page").to_pylist()
            return [
                VectorHit(text=texts[i] or "", source=sources[i] or "", page=pages[i])
                for i in order
            ]

        return await asyncio.to_thread(_run)

    async def source_counts(self) -> Dict[str, int]:
        """Rows per stored source key."""
        table = await self._any_table()
        if table is None:
            return {}
        sources = await asyncio.to_thread(lambda: table.to_arrow().column("source").to_pylist())
        counts: Dict[str, int] = {}
        for source in sources:
            counts[source] = counts.get(source, 0) + 1
        return counts

    async def reset(self) -> None:
        """Drop the table. The next ``upsert`` recreates it with the active dimension."""
        if await self.table_exists():
            db = await self._connection()
            await asyncio.to_thread(db.drop_table, self.table_name)
            log.info("vector_table_dropped", table=self.table_name)
        self._state.detach_table(needs_rebuild=False)
