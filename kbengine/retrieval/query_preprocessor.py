from typing import List, Optional

from kbengine.ingestion.text_normalizer import normalize_text
from kbengine.logging_config import get_logger
from kbengine.exceptions import QueryPreprocessingError
from kbengine.paths import normalize_path

log = get_logger(__name__)


def preprocess_query(query: str, max_length: int = 2000) -> str:
    """Normalize whitespace and validate a query."""
    if not isinstance(query, str):
        raise QueryPreprocessingError("Query must be a string")
    normalized_query = " ".join(normalize_text(query).split())
    if not normalized_query:
        raise QueryPreprocessingError("Query is empty")
    if len(normalized_query) > max_length:
        raise QueryPreprocessingError(f"Query exceeds {max_length} characters")
    log.debug("query_preprocessed", original_length=len(query), processed_length=len(normalized_query))
    return normalized_query


def preprocess_sources(sources: Optional[List[str]], max_sources: int = 100) -> Optional[List[str]]:
    """Normalized, de-duplicated source keys; ``None`` for a global search."""
    if not sources:
        return None
    if len(sources) > max_sources:
        raise QueryPreprocessingError(f"At most {max_sources} sources may be given")
    keys: List[str] = []
    for source in sources:
        key = normalize_path(source)
        if key and key not in keys:
            keys.append(key)
    return keys or None
