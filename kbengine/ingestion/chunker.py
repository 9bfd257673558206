from typing import List
from langchain_text_splitters import RecursiveCharacterTextSplitter
from langchain_core.documents import Document
from kbengine.exceptions import ChunkingError
from kbengine.logging_config import get_logger

log = get_logger(__name__)


def chunk_documents(documents: List[Document], chunk_size: int = 1000, chunk_overlap: int = 200) -> List[Document]:
    """
    Split documents into smaller chunks while preserving metadata.

    Each chunk gets a ``start_index`` metadata entry: its character offset
    within the source document it was cut from.

    Args:
        documents: List of normalized LangChain Documents
        chunk_size: Target size of each chunk in characters
        chunk_overlap: Number of characters to overlap between chunks

    Returns:
        List of chunked LangChain Documents (empty chunks dropped)
    """
    try:
        splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            length_function=len,
            add_start_index=True,
            separators=["\n\n", "\n", "。", ". ", " ", ""]
        )

        chunks = [c for c in splitter.split_documents(documents) if c.page_content.strip()]
        log.debug("chunking_complete", input_docs=len(documents), chunks_created=len(chunks))
        return chunks

    except Exception as e:
        raise ChunkingError(f"Failed to chunk documents: {e}") from e
