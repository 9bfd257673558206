from typing import Optional, Sequence

from kbengine.schemas.catalog import SourceRecord, utcnow
from kbengine.schemas.ingest import LoadedSource


def build_record(
    loaded: LoadedSource,
    chunk_count: int,
    preview_chars: int = 160,
    tags: Optional[Sequence[str]] = None,
    previous: Optional[SourceRecord] = None,
) -> SourceRecord:
    """Catalog record for a freshly ingested source. Preview is the start of the first chunk."""
    preview = loaded.chunks[0].content[:preview_chars] if loaded.chunks else ""
    if tags:
        record_tags = list(dict.fromkeys(tags))
    else:
        record_tags = list(previous.tags) if previous else []
    return SourceRecord(
        path=previous.path if previous else loaded.identifier,
        key=loaded.key,
        name=loaded.name,
        chunk_count=chunk_count,
        preview=preview,
        updated_at=utcnow(),
        kind=loaded.kind,
        site_name=loaded.site_name,
        site_url=loaded.site_url,
        tags=record_tags,
        size=loaded.size,
        content_hash=loaded.content_hash,
        stale=False,
        versions=list(previous.versions) if previous else [],
    )


def mark_stale(record: SourceRecord) -> SourceRecord:
    """The record is kept but has no rows in the vector table."""
    return record.model_copy(update={"stale": True, "chunk_count": 0, "updated_at": utcnow()})
