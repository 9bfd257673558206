import os
import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List
from kbengine.exceptions import FileDiscoveryError
from kbengine.schemas.files import FileInfo
from kbengine.logging_config import get_logger

log = get_logger(__name__)

DEFAULT_EXTENSIONS = (".pdf", ".txt", ".md", ".markdown")


def get_file_hash(file_path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    sha256_hash = hashlib.sha256()
    try:
        with open(file_path, "rb") as f:
            for byte_block in iter(lambda: f.read(65536), b""):
                sha256_hash.update(byte_block)
        return sha256_hash.hexdigest()
    except OSError as e:
        raise FileDiscoveryError(f"Failed to hash file {file_path}: {e}")


def describe_file(file_path: Path) -> FileInfo:
    """Stat and hash a single file."""
    stat = file_path.stat()
    return FileInfo(
        file_path=file_path.absolute(),
        file_hash=get_file_hash(file_path),
        file_extension=file_path.suffix.lower(),
        file_size=stat.st_size,
        modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
    )


def discover_files(folder_path: Path, extensions: Iterable[str] = DEFAULT_EXTENSIONS) -> List[FileInfo]:
    """
    Recursively find files with given extensions in a folder, skipping hidden
    files and directories.

    Returns:
        FileInfo objects sorted by path
    """
    if not folder_path.exists() or not folder_path.is_dir():
        raise FileDiscoveryError(f"Directory not found: {folder_path}")

    discovered_files = []
    allowed_exts = {ext.lower() for ext in extensions}

    try:
        for root, dirs, files in os.walk(folder_path):
            dirs[:] = [d for d in dirs if not d.startswith(".")]
            for file_name in files:
                if file_name.startswith("."):
                    continue
                file_path = Path(root) / file_name
                if file_path.suffix.lower() not in allowed_exts:
                    continue
                try:
                    discovered_files.append(describe_file(file_path))
                except Exception as e:
                    # Skip the file, keep discovering
                    log.warning("file_discovery_skipped", file_name=file_name, error=str(e))

        discovered_files.sort(key=lambda info: str(info.file_path))
        log.info("discovery_complete", folder=str(folder_path), files_found=len(discovered_files))
        return discovered_files

    except OSError as e:
        raise FileDiscoveryError(f"Failed to scan directory {folder_path}: {e}")
