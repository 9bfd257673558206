"""
Document loader: turns a source identifier (file path or URL) into chunks.

The loader only reads. It never touches the catalog or the vector table, so a
failed load leaves no partial state behind.
"""
import asyncio
import hashlib
from pathlib import Path
from typing import Iterable, List, Optional

from langchain_community.document_loaders import TextLoader, PyMuPDFLoader
from langchain_core.documents import Document

from kbengine.config import Settings
from kbengine.exceptions import DocumentLoadError, FileDiscoveryError, SourceUnreachableError
from kbengine.ingestion.chunker import chunk_documents
from kbengine.ingestion.file_discovery import DEFAULT_EXTENSIONS, describe_file
from kbengine.ingestion.text_normalizer import normalize_text
from kbengine.ingestion.web_loader import fetch_page
from kbengine.logging_config import get_logger
from kbengine.paths import display_name, is_url, normalize_path
from kbengine.schemas.catalog import SourceKind
from kbengine.schemas.chunks import DocumentChunk
from kbengine.schemas.files import FileInfo
from kbengine.schemas.ingest import LoadedSource

log = get_logger(__name__)

_TEXT_EXTENSIONS = {".txt", ".md", ".markdown"}


def load_document(file_info: FileInfo) -> List[Document]:
    """
    Load a file and return a list of LangChain Document objects.
    Each page of a PDF becomes a separate Document.
    """
    try:
        log.debug("document_loading", file_path=str(file_info.file_path))
        if file_info.file_extension == ".pdf":
            documents = PyMuPDFLoader(str(file_info.file_path)).load()
        elif file_info.file_extension in _TEXT_EXTENSIONS:
            documents = TextLoader(str(file_info.file_path), autodetect_encoding=True).load()
        else:
            raise DocumentLoadError(f"Unsupported file type: {file_info.file_extension}")
    except DocumentLoadError:
        raise
    except Exception as e:
        raise DocumentLoadError(f"Failed to load {file_info.file_path}: {e}") from e

    for doc in documents:
        doc.metadata["source"] = str(file_info.file_path)
        doc.metadata["file_hash"] = file_info.file_hash
        doc.metadata["file_size"] = file_info.file_size

    log.info("document_loaded", file_name=file_info.file_path.name, pages=len(documents))
    return documents


class DocumentLoader:
    """Loads files and web pages into ``DocumentChunk`` lists."""

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        fetch_timeout: float = 30.0,
        max_fetch_bytes: int = 5 * 1024 * 1024,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
    ):
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.fetch_timeout = fetch_timeout
        self.max_fetch_bytes = max_fetch_bytes
        self.extensions = {ext.lower() for ext in extensions}

    @classmethod
    def from_settings(cls, settings: Settings) -> "DocumentLoader":
        return cls(
            chunk_size=settings.ingestion.chunk_size,
            chunk_overlap=settings.ingestion.chunk_overlap,
            fetch_timeout=settings.timeout.fetch_seconds,
            max_fetch_bytes=settings.ingestion.max_fetch_bytes,
            extensions=settings.ingestion.extensions,
        )

    async def load(self, identifier: str) -> LoadedSource:
        """
        Raises:
            SourceUnreachableError: file missing or URL not fetchable
            DocumentLoadError: content present but not parseable
        """
        identifier = identifier.strip()
        if is_url(identifier):
            return await self._load_url(identifier)
        return await asyncio.to_thread(self._load_file, identifier)

    def _load_file(self, identifier: str) -> LoadedSource:
        path = Path(identifier).expanduser()
        if not path.is_file():
            raise SourceUnreachableError(f"File not found: {identifier}", permanent=True)
        if path.suffix.lower() not in self.extensions:
            raise DocumentLoadError(f"Unsupported file type: {path.suffix or path.name}")

        try:
            file_info = describe_file(path)
        except (OSError, FileDiscoveryError) as e:
            raise SourceUnreachableError(f"Cannot read {identifier}: {e}", permanent=True) from e

        documents = load_document(file_info)
        key = normalize_path(identifier)
        chunks = self._split(documents, key, paged=file_info.file_extension == ".pdf")
        return LoadedSource(
            identifier=identifier,
            key=key,
            kind=SourceKind.FILE,
            name=path.name,
            chunks=chunks,
            size=file_info.file_size,
            modified_at=file_info.modified_at,
            content_hash=file_info.file_hash,
        )

    async def _load_url(self, url: str) -> LoadedSource:
        page = await fetch_page(url, timeout=self.fetch_timeout, max_bytes=self.max_fetch_bytes)
        key = normalize_path(url)
        documents = [Document(page_content=page.text, metadata={"source": url})]
        chunks = self._split(documents, key, paged=False)
        return LoadedSource(
            identifier=url,
            key=key,
            kind=SourceKind.URL,
            name=page.title or display_name(url),
            chunks=chunks,
            site_name=page.site_name,
            site_url=url,
            size=page.size,
            content_hash=hashlib.sha256(page.text.encode("utf-8")).hexdigest(),
        )

    def _split(self, documents: List[Document], key: str, paged: bool) -> List[DocumentChunk]:
        for doc in documents:
            doc.page_content = normalize_text(doc.page_content)
        documents = [doc for doc in documents if doc.page_content]
        if not documents:
            return []

        chunks: List[DocumentChunk] = []
        for doc in chunk_documents(documents, self.chunk_size, self.chunk_overlap):
            page: Optional[int] = doc.metadata.get("page")
            chunks.append(DocumentChunk(
                content=doc.page_content,
                source=key,
                # PyMuPDF pages are 0-based
                page=page + 1 if paged and isinstance(page, int) else None,
                offset=doc.metadata.get("start_index"),
            ))
        return chunks
