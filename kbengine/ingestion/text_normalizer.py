import re

_ZERO_WIDTH = re.compile("[\u200b\u200c\u200d\ufeff]")


def normalize_text(text: str) -> str:
    """
    Clean and normalize extracted text before chunking and embedding.
    """
    if not text:
        return ""

    # Remove null bytes and zero-width characters left behind by PDF/HTML extraction
    text = text.replace("\x00", "")
    text = _ZERO_WIDTH.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")

    # Collapse runs of non-newline whitespace into a single space
    text = re.sub(r'[^\S\n]+', ' ', text)

    # Collapse explicit multiple newlines to max 2 (paragraph separation)
    text = re.sub(r'\n{3,}', '\n\n', text)

    return text.strip()
