"""
Custom exception classes for the knowledge-base engine.

Every error carries a machine-readable ``kind`` so hosts (REST, MCP) can map it
to a structured response without matching on class names.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Machine-readable error categories."""
    SCHEMA_MISMATCH = "schema_mismatch"
    RESOURCE_UNREACHABLE = "resource_unreachable"
    UNPARSEABLE = "unparseable"
    EMPTY_CONTENT = "empty_content"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    LOCK_TIMEOUT = "lock_timeout"
    LOCK_RELEASED = "lock_released"
    NOT_FOUND = "not_found"
    INVALID_QUERY = "invalid_query"
    STORAGE = "storage"
    PARTIAL_FAILURE = "partial_failure"
    INTERNAL = "internal"


class KnowledgeBaseError(Exception):
    """Base exception for all engine errors."""
    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": str(self), "retryable": self.retryable}


"""
Ingestion errors.
"""
class IngestionException(KnowledgeBaseError):
    """Base exception for all ingestion-related errors."""
    pass

class FileDiscoveryError(IngestionException):
    """Raised when file discovery fails."""
    kind = ErrorKind.RESOURCE_UNREACHABLE

class DocumentLoadError(IngestionException):
    """Raised when a source was read but could not be parsed."""
    kind = ErrorKind.UNPARSEABLE

class SourceUnreachableError(DocumentLoadError):
    """Raised when a file is missing or a URL cannot be fetched."""
    kind = ErrorKind.RESOURCE_UNREACHABLE

    def __init__(self, message: str, permanent: bool = True):
        super().__init__(message)
        # False for timeouts, connection errors and 5xx responses
        self.permanent = permanent
        self.retryable = not permanent

class ChunkingError(IngestionException):
    """Raised when text chunking fails."""
    kind = ErrorKind.UNPARSEABLE

class EmptyContentError(DocumentLoadError):
    """Source parsed but yielded no text."""
    kind = ErrorKind.EMPTY_CONTENT

class EmbeddingError(IngestionException):
    """Raised when embedding generation fails."""
    pass

class ProviderUnavailableError(EmbeddingError):
    """Embedding provider could not be reached or initialized."""
    kind = ErrorKind.PROVIDER_UNAVAILABLE
    retryable = True


"""
Storage errors.
"""
class StorageException(KnowledgeBaseError):
    """Base exception for all storage-related errors."""
    kind = ErrorKind.STORAGE

class SchemaMismatchError(StorageException):
    """Stored vector dimension no longer matches the active embedding model."""
    kind = ErrorKind.SCHEMA_MISMATCH

    def __init__(self, message: str, expected: Optional[int] = None, actual: Optional[int] = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual

class CatalogError(StorageException):
    """Raised when the catalog store cannot be read or written."""
    pass

class SourceNotFoundError(KnowledgeBaseError):
    """No catalog record for the given source."""
    kind = ErrorKind.NOT_FOUND

class CollectionNotFoundError(KnowledgeBaseError):
    """No collection with the given id."""
    kind = ErrorKind.NOT_FOUND


"""
Query errors.
"""
class RetrievalException(KnowledgeBaseError):
    """Base exception for all retrieval-related errors."""
    pass

class QueryPreprocessingError(RetrievalException):
    """Raised when a query is empty or fails validation."""
    kind = ErrorKind.INVALID_QUERY

class SimilaritySearchError(RetrievalException):
    """Raised when both the native and the fallback search paths fail."""
    kind = ErrorKind.STORAGE
    retryable = True


"""
Operation lock errors.
"""
class LockTimeoutError(KnowledgeBaseError):
    """A structural mutation could not acquire the lock in time."""
    kind = ErrorKind.LOCK_TIMEOUT
    retryable = True

class LockReleasedError(KnowledgeBaseError):
    """The lock was force-released while this caller was waiting."""
    kind = ErrorKind.LOCK_RELEASED
    retryable = True


"""
Custom exception classes for LLM usage.
"""
class LLMError(KnowledgeBaseError):
    """Base exception for LLM-related errors."""
    kind = ErrorKind.PROVIDER_UNAVAILABLE

class LLMRateLimitError(LLMError):
    """LLM API rate limit exceeded."""
    def __init__(self, message: str, retry_after: float = None):
        super().__init__(message)
        self.retry_after = retry_after

class LLMTimeoutError(LLMError):
    """LLM API call timed out."""
    pass
