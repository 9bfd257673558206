import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from pathlib import Path
from kbengine.ingestion.document_loader import DocumentLoader, load_document
from kbengine.ingestion.web_loader import FetchedPage
from kbengine.schemas.catalog import SourceKind
from kbengine.schemas.files import FileInfo
from kbengine.exceptions import DocumentLoadError, SourceUnreachableError
from langchain_core.documents import Document

@pytest.fixture
def mock_file_info():
    return FileInfo(
        file_path=Path("/tmp/test.pdf"),
        file_hash="abc123hash",
        file_extension=".pdf",
        file_size=1024
    )

@patch('kbengine.ingestion.document_loader.PyMuPDFLoader')
def test_load_pdf_success(mock_loader_cls, mock_file_info):
    # Setup mock
    mock_loader = MagicMock()
    mock_loader.load.return_value = [
        Document(page_content="Page 1", metadata={"page": 0}),
        Document(page_content="Page 2", metadata={"page": 1})
    ]
    mock_loader_cls.return_value = mock_loader

    docs = load_document(mock_file_info)

    mock_loader_cls.assert_called_with(str(mock_file_info.file_path))
    assert len(docs) == 2
    assert docs[0].page_content == "Page 1"

    # Metadata injection
    assert docs[0].metadata["source"] == str(mock_file_info.file_path)
    assert docs[0].metadata["file_hash"] == "abc123hash"
    assert docs[0].metadata["page"] == 0

@patch('kbengine.ingestion.document_loader.TextLoader')
def test_load_text_success(mock_loader_cls):
    info = FileInfo(
        file_path=Path("/tmp/test.txt"),
        file_hash="txt123",
        file_extension=".txt",
        file_size=500
    )

    mock_loader = MagicMock()
    mock_loader.load.return_value = [Document(page_content="Full text content", metadata={})]
    mock_loader_cls.return_value = mock_loader

    docs = load_document(info)

    assert len(docs) == 1
    assert docs[0].page_content == "Full text content"
    assert docs[0].metadata["source"] == str(info.file_path)

def test_unsupported_extension():
    info = FileInfo(
        file_path=Path("/tmp/test.jpg"),
        file_hash="hash",
        file_extension=".jpg", # Not supported
        file_size=100
    )

    with pytest.raises(DocumentLoadError) as exc:
        load_document(info)

    assert "Unsupported file type" in str(exc.value)

@patch('kbengine.ingestion.document_loader.PyMuPDFLoader')
def test_load_failure(mock_loader_cls, mock_file_info):
    # Simulate loader crash
    mock_loader_cls.side_effect = Exception("Corrupted file")

    with pytest.raises(DocumentLoadError) as exc:
        load_document(mock_file_info)

    assert "Failed to load" in str(exc.value)


class TestDocumentLoader:
    """Identifier in, normalized chunks out."""

    @pytest.mark.asyncio
    async def test_text_file_is_chunked_with_normalized_key(self, tmp_path):
        """Chunks carry the normalized key, offsets, and no page for text files."""
        path = tmp_path / "Guide.TXT"
        path.write_text("First part.\n\n\n\nSecond   part.", encoding="utf-8")
        loader = DocumentLoader(chunk_size=1000, chunk_overlap=0, extensions=[".txt"])

        loaded = await loader.load(str(path))

        assert loaded.kind == SourceKind.FILE
        assert loaded.name == "Guide.TXT"
        assert loaded.key == str(path).replace("\\", "/").lower()
        assert loaded.content_hash is not None
        assert len(loaded.chunks) == 1
        chunk = loaded.chunks[0]
        assert chunk.content == "First part.\n\nSecond part."
        assert chunk.source == loaded.key
        assert chunk.page is None
        assert chunk.offset == 0

    @pytest.mark.asyncio
    @patch('kbengine.ingestion.document_loader.PyMuPDFLoader')
    async def test_pdf_pages_are_one_based(self, mock_loader_cls, tmp_path):
        """PyMuPDF's 0-based page metadata becomes 1-based."""
        path = tmp_path / "manual.pdf"
        path.write_bytes(b"%PDF-1.4 fake")
        mock_loader_cls.return_value.load.return_value = [
            Document(page_content="Intro page", metadata={"page": 0}),
            Document(page_content="Second page", metadata={"page": 1}),
        ]

        loaded = await DocumentLoader(chunk_size=500, chunk_overlap=0).load(str(path))

        assert [c.page for c in loaded.chunks] == [1, 2]

    @pytest.mark.asyncio
    async def test_missing_file_is_permanently_unreachable(self, tmp_path):
        with pytest.raises(SourceUnreachableError) as exc:
            await DocumentLoader().load(str(tmp_path / "gone.txt"))
        assert exc.value.permanent is True

    @pytest.mark.asyncio
    async def test_unsupported_extension_is_unparseable(self, tmp_path):
        path = tmp_path / "image.png"
        path.write_bytes(b"png")
        with pytest.raises(DocumentLoadError) as exc:
            await DocumentLoader().load(str(path))
        assert not isinstance(exc.value, SourceUnreachableError)

    @pytest.mark.asyncio
    async def test_whitespace_only_file_yields_no_chunks(self, tmp_path):
        path = tmp_path / "blank.txt"
        path.write_text("   \n\n\t  ", encoding="utf-8")
        loaded = await DocumentLoader().load(str(path))
        assert loaded.chunks == []

    @pytest.mark.asyncio
    async def test_url_uses_page_title_and_content_hash(self):
        page = FetchedPage(
            url="https://example.com/docs",
            text="Welcome to the docs.",
            title="Docs Home",
            site_name="Example",
            size=120,
        )
        with patch("kbengine.ingestion.document_loader.fetch_page", AsyncMock(return_value=page)) as fetch:
            loaded = await DocumentLoader(fetch_timeout=5).load(" https://Example.com/docs ")

        fetch.assert_awaited_once()
        assert loaded.kind == SourceKind.URL
        assert loaded.key == "https://example.com/docs"
        assert loaded.name == "Docs Home"
        assert loaded.site_name == "Example"
        assert loaded.chunks[0].content == "Welcome to the docs."
        assert len(loaded.content_hash) == 64

    @pytest.mark.asyncio
    async def test_url_failure_propagates(self):
        failing = AsyncMock(side_effect=SourceUnreachableError("HTTP 503", permanent=False))
        with patch("kbengine.ingestion.document_loader.fetch_page", failing):
            with pytest.raises(SourceUnreachableError) as exc:
                await DocumentLoader().load("https://example.com/down")
        assert exc.value.permanent is False
