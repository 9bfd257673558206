from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, JSON
from kbengine.models.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CatalogDocument(Base):
    """
    One named, whole-document value of the catalog ("files", "collections").
    Always read and written in full; merging happens in the catalog service.
    """
    __tablename__ = "catalog_documents"

    key = Column(String(64), primary_key=True)
    value = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
