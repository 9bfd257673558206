"""Path and URL helpers. ``normalize_path`` produces the canonical source key."""
import re
from pathlib import PurePosixPath
from urllib.parse import urlparse

_URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)


def is_url(identifier: str) -> bool:
    return bool(_URL_PATTERN.match(identifier.strip()))


def normalize_path(path: str) -> str:
    """Unify separators, lower-case and trim. Used for every key comparison."""
    return path.replace("\\", "/").strip().lower()


def display_name(identifier: str) -> str:
    """Human-readable name: basename for files, host + path for URLs."""
    identifier = identifier.strip()
    if is_url(identifier):
        parsed = urlparse(identifier)
        tail = parsed.path.rstrip("/")
        return f"{parsed.netloc}{tail}" if tail else parsed.netloc
    name = PurePosixPath(identifier.replace("\\", "/")).name
    return name or identifier


def sources_match(stored: str, wanted: str) -> bool:
    """Suffix/prefix match tolerating relative vs absolute path drift. Both sides must be normalized."""
    if not stored or not wanted:
        return False
    return stored == wanted or stored.endswith(wanted) or wanted.endswith(stored)
